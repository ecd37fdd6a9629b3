from datetime import timedelta

import pytest

from flowkeeper.definition import (
    AutoRetryConfig,
    FailureResolutionConfig,
    ResolutionStrategy,
    StepDefinition,
    WorkflowDefinition,
)
from flowkeeper.domain.events import (
    AutoRetryExhausted,
    AutoRetryScheduled,
    DomainEvent,
    ResolutionDecisionMade,
    WorkflowAwaitingResolution,
)
from flowkeeper.domain.models import ResolutionDecisionType
from flowkeeper.domain.states import StepStatus, WorkflowState
from flowkeeper.errors import StepNotFoundError, WorkflowLockedError, WorkflowNotFailedError
from flowkeeper.utils.time import utcnow


def _record(engine):
    seen = []

    async def handler(event):
        seen.append(event)

    engine.events.subscribe(DomainEvent, handler)
    return seen


def _orders(resolution: FailureResolutionConfig | None = None) -> WorkflowDefinition:
    return WorkflowDefinition(
        key="orders",
        steps=[
            StepDefinition(key="reserve", job="reserve_job", compensation="release_job"),
            StepDefinition(key="charge", job="charge_job", compensation="refund_job"),
            StepDefinition(key="ship", job="ship_job"),
        ],
        failure_resolution=resolution or FailureResolutionConfig(),
    )


async def _fail_at_ship(engine, w):
    wf = await engine.manager.start("orders")
    await w.run_step()
    await w.run_step({"charge_id": "ch_1"})
    await w.fail_step()
    return await engine.manager.get(wf.id)


@pytest.mark.asyncio
async def test_auto_retry_schedules_then_falls_back(make_engine, worker):
    engine = make_engine(
        _orders(
            FailureResolutionConfig(
                strategy=ResolutionStrategy.AUTO_RETRY,
                auto_retry=AutoRetryConfig(max_retries=1, delay_seconds=10),
            )
        )
    )
    events = _record(engine)
    w = worker(engine)

    wf = await _fail_at_ship(engine, w)
    assert wf.state == WorkflowState.FAILED
    assert wf.auto_retry_count == 1
    assert wf.next_auto_retry_at is not None
    [scheduled] = [e for e in events if isinstance(e, AutoRetryScheduled)]
    assert (scheduled.retry_number, scheduled.delay_seconds) == (1, 10)

    assert await engine.resolution.process_auto_retries() == []
    retried = await engine.resolution.process_auto_retries(utcnow() + timedelta(seconds=11))
    assert retried == [wf.id]

    [message] = await w.take()
    assert (message.step_key, message.attempt) == ("ship", 2)
    await w.fail([message])

    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.FAILED
    assert wf.next_auto_retry_at is None
    assert len([e for e in events if isinstance(e, AutoRetryExhausted)]) == 1
    assert len([e for e in events if isinstance(e, WorkflowAwaitingResolution)]) == 1


@pytest.mark.asyncio
async def test_auto_retry_without_fallback_stays_failed(make_engine, worker):
    engine = make_engine(
        _orders(
            FailureResolutionConfig(
                strategy=ResolutionStrategy.AUTO_RETRY,
                auto_retry=AutoRetryConfig(max_retries=0, fallback=None),
            )
        )
    )
    events = _record(engine)
    wf = await _fail_at_ship(engine, worker(engine))

    assert wf.state == WorkflowState.FAILED
    assert len([e for e in events if isinstance(e, AutoRetryExhausted)]) == 1
    assert not [e for e in events if isinstance(e, WorkflowAwaitingResolution)]


@pytest.mark.asyncio
async def test_auto_compensate_fallback(make_engine, worker):
    engine = make_engine(
        _orders(
            FailureResolutionConfig(
                strategy=ResolutionStrategy.AUTO_RETRY,
                auto_retry=AutoRetryConfig(
                    max_retries=0, fallback=ResolutionStrategy.AUTO_COMPENSATE
                ),
            )
        )
    )
    wf = await _fail_at_ship(engine, worker(engine))
    assert wf.state == WorkflowState.COMPENSATING


@pytest.mark.asyncio
async def test_retry_decision_dispatches_failed_step_again(make_engine, worker):
    engine = make_engine(_orders())
    events = _record(engine)
    w = worker(engine)
    wf = await _fail_at_ship(engine, w)

    wf = await engine.manager.resolve_failure(
        wf.id, ResolutionDecisionType.RETRY, decided_by="ops", reason="carrier is back"
    )
    assert wf.state == WorkflowState.RUNNING
    assert wf.failure_code is None
    [message] = await w.take()
    assert (message.step_key, message.attempt) == ("ship", 2)

    [record] = await engine.repositories.decisions.find_by_workflow_id(wf.id)
    assert record.decision == ResolutionDecisionType.RETRY
    assert record.decided_by == "ops"
    assert [e.decision for e in events if isinstance(e, ResolutionDecisionMade)] == ["retry"]


@pytest.mark.asyncio
async def test_partial_compensate_decision(make_engine, worker):
    engine = make_engine(_orders())
    w = worker(engine)
    wf = await _fail_at_ship(engine, w)

    wf = await engine.manager.resolve_failure(
        wf.id, ResolutionDecisionType.COMPENSATE, compensate_step_keys=["reserve"]
    )
    assert wf.state == WorkflowState.COMPENSATING
    runs = await engine.repositories.compensations.find_by_workflow_id(wf.id)
    assert [r.step_key for r in runs] == ["reserve"]
    [record] = await engine.repositories.decisions.find_by_workflow_id(wf.id)
    assert record.compensate_step_keys == ("reserve",)


@pytest.mark.asyncio
async def test_cancel_decision(make_engine, worker):
    engine = make_engine(_orders())
    wf = await _fail_at_ship(engine, worker(engine))

    wf = await engine.manager.resolve_failure(wf.id, ResolutionDecisionType.CANCEL)
    assert wf.state == WorkflowState.CANCELLED
    assert wf.cancelled_at is not None


@pytest.mark.asyncio
async def test_mark_resolved_only_records_decision(make_engine, worker):
    engine = make_engine(_orders())
    w = worker(engine)
    wf = await _fail_at_ship(engine, w)

    wf = await engine.manager.resolve_failure(
        wf.id, ResolutionDecisionType.MARK_RESOLVED, reason="shipped by hand"
    )
    assert wf.state == WorkflowState.FAILED
    assert await w.take() == []
    assert len(await engine.repositories.decisions.find_by_workflow_id(wf.id)) == 1


@pytest.mark.asyncio
async def test_retry_from_step_decision(make_engine, worker):
    engine = make_engine(_orders())
    w = worker(engine)
    wf = await _fail_at_ship(engine, w)

    wf = await engine.manager.resolve_failure(
        wf.id, ResolutionDecisionType.RETRY_FROM_STEP, retry_from_step_key="charge"
    )
    assert wf.state == WorkflowState.RUNNING
    assert wf.current_step_key == "charge"
    ship = await engine.repositories.step_runs.find_latest_by_workflow_id_and_step_key(
        wf.id, "ship"
    )
    assert ship is None
    superseded = await engine.repositories.step_runs.find_latest_by_workflow_id_and_step_key(
        wf.id, "ship", include_superseded=True
    )
    assert superseded.status == StepStatus.SUPERSEDED


@pytest.mark.asyncio
async def test_decision_requires_failed_workflow(make_engine):
    engine = make_engine(_orders())
    wf = await engine.manager.start("orders")

    with pytest.raises(WorkflowNotFailedError):
        await engine.manager.resolve_failure(wf.id, ResolutionDecisionType.RETRY)
    assert await engine.repositories.decisions.find_by_workflow_id(wf.id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "decision", [ResolutionDecisionType.RETRY, ResolutionDecisionType.COMPENSATE]
)
async def test_decision_is_not_recorded_while_workflow_is_locked(make_engine, worker, decision):
    engine = make_engine(_orders())
    events = _record(engine)
    w = worker(engine)
    wf = await _fail_at_ship(engine, w)

    async with engine.advancer.locked(wf.id):
        with pytest.raises(WorkflowLockedError):
            await engine.manager.resolve_failure(wf.id, decision, decided_by="ops")

    assert await engine.repositories.decisions.find_by_workflow_id(wf.id) == []
    assert not [e for e in events if isinstance(e, ResolutionDecisionMade)]
    assert (await engine.manager.get(wf.id)).state == WorkflowState.FAILED
    assert await engine.repositories.compensations.find_by_workflow_id(wf.id) == []

    wf = await engine.manager.resolve_failure(wf.id, decision, decided_by="ops")
    assert len(await engine.repositories.decisions.find_by_workflow_id(wf.id)) == 1


@pytest.mark.asyncio
async def test_retry_from_unknown_step_records_nothing(make_engine, worker):
    engine = make_engine(_orders())
    wf = await _fail_at_ship(engine, worker(engine))

    with pytest.raises(StepNotFoundError):
        await engine.manager.resolve_failure(
            wf.id, ResolutionDecisionType.RETRY_FROM_STEP, retry_from_step_key="gift_wrap"
        )
    assert await engine.repositories.decisions.find_by_workflow_id(wf.id) == []
    assert (await engine.manager.get(wf.id)).state == WorkflowState.FAILED


@pytest.mark.asyncio
async def test_apply_strategy_takes_the_evaluation_lock(make_engine, worker):
    engine = make_engine(_orders())
    events = _record(engine)
    wf = await _fail_at_ship(engine, worker(engine))

    async with engine.advancer.locked(wf.id):
        with pytest.raises(WorkflowLockedError):
            await engine.resolution.apply_strategy(wf.id)

    wf = await engine.resolution.apply_strategy(wf.id)
    assert wf.state == WorkflowState.FAILED
    assert len([e for e in events if isinstance(e, WorkflowAwaitingResolution)]) == 2
