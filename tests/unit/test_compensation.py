import pytest

from flowkeeper.definition import (
    FailureResolutionConfig,
    ResolutionStrategy,
    RetryConfig,
    StepDefinition,
    WorkflowDefinition,
)
from flowkeeper.domain.events import (
    CompensationCompleted,
    CompensationFailed,
    CompensationStepStarted,
    DomainEvent,
)
from flowkeeper.domain.models import CompensationScope, WorkflowInstance
from flowkeeper.domain.states import CompensationRunStatus, WorkflowState
from flowkeeper.errors import WorkflowLockedError
from flowkeeper.orchestration import CompensationExecutor


def _record(engine):
    seen = []

    async def handler(event):
        seen.append(event)

    engine.events.subscribe(DomainEvent, handler)
    return seen


def _booking(strategy=ResolutionStrategy.AUTO_COMPENSATE) -> WorkflowDefinition:
    return WorkflowDefinition(
        key="booking",
        steps=[
            StepDefinition(key="flight", job="book_flight", compensation="cancel_flight"),
            StepDefinition(
                key="hotel",
                job="book_hotel",
                compensation="cancel_hotel",
                compensation_retry=RetryConfig(max_attempts=2),
            ),
            StepDefinition(key="car", job="book_car", compensation="cancel_car"),
            StepDefinition(key="notify", job="send_itinerary"),
        ],
        failure_resolution=FailureResolutionConfig(strategy=strategy),
    )


async def _fail_last_step(engine, w):
    wf = await engine.manager.start("booking")
    for _ in range(3):
        await w.run_step()
    await w.fail_step()
    return await engine.manager.get(wf.id)


def test_plan_is_reverse_definition_order():
    definition = _booking()
    workflow = WorkflowInstance(
        definition_key="booking", definition_version="1.0.0", current_step_key="car"
    )
    plan = CompensationExecutor.build_plan(definition, workflow, CompensationScope.ALL)
    assert [s.key for s in plan] == ["car", "hotel", "flight"]

    failed_only = CompensationExecutor.build_plan(
        definition, workflow, CompensationScope.FAILED_STEP_ONLY
    )
    assert [s.key for s in failed_only] == ["car"]

    partial = CompensationExecutor.build_plan(
        definition, workflow, CompensationScope.PARTIAL, step_keys=["flight", "car", "notify"]
    )
    assert [s.key for s in partial] == ["car", "flight"]

    # without explicit keys a partial or from-step plan covers every compensable step
    for scope in (CompensationScope.PARTIAL, CompensationScope.FROM_STEP):
        keyless = CompensationExecutor.build_plan(definition, workflow, scope)
        assert [s.key for s in keyless] == ["car", "hotel", "flight"]


@pytest.mark.asyncio
async def test_compensation_runs_in_reverse_order_until_done(make_engine, worker):
    engine = make_engine(_booking())
    events = _record(engine)
    w = worker(engine)

    wf = await _fail_last_step(engine, w)
    assert wf.state == WorkflowState.COMPENSATING

    compensated = []
    while True:
        messages = await w.compensate()
        if not messages:
            break
        compensated.extend(m.job_name for m in messages)

    assert compensated == ["cancel_car", "cancel_hotel", "cancel_flight"]
    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.COMPENSATED
    assert wf.compensated_at is not None
    assert [e.step_key for e in events if isinstance(e, CompensationStepStarted)] == [
        "car",
        "hotel",
        "flight",
    ]
    assert len([e for e in events if isinstance(e, CompensationCompleted)]) == 1


@pytest.mark.asyncio
async def test_exhausted_compensation_blocks_remaining_then_retry(make_engine, worker):
    engine = make_engine(_booking())
    events = _record(engine)
    w = worker(engine)
    wf = await _fail_last_step(engine, w)

    await w.compensate()  # car
    [first] = await w.compensate(succeed=False)
    assert first.step_key == "hotel"
    [second] = await w.compensate(succeed=False)
    assert second.step_key == "hotel"
    assert second.attempt == 2

    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.COMPENSATION_FAILED
    assert wf.failure_message == 'Compensation of step "hotel" failed: undo failed'
    assert await w.take() == []
    runs = {r.step_key: r for r in await engine.repositories.compensations.find_by_workflow_id(wf.id)}
    assert runs["hotel"].status == CompensationRunStatus.FAILED
    assert runs["flight"].status == CompensationRunStatus.PENDING
    assert [e.step_key for e in events if isinstance(e, CompensationFailed)] == ["hotel"]

    wf = await engine.compensation.retry_compensation(wf.id)
    assert wf.state == WorkflowState.COMPENSATING
    assert [m.step_key for m in await w.compensate()] == ["hotel"]
    assert [m.step_key for m in await w.compensate()] == ["flight"]
    assert (await engine.manager.get(wf.id)).state == WorkflowState.COMPENSATED


@pytest.mark.asyncio
async def test_stale_compensation_report_is_ignored(make_engine, worker):
    engine = make_engine(_booking())
    w = worker(engine)
    wf = await _fail_last_step(engine, w)

    [message] = await w.take("compensation")
    await engine.compensation.record_success(message.compensation_run_id, "older-attempt")

    run = await engine.repositories.compensations.find(message.compensation_run_id)
    assert run.status == CompensationRunStatus.RUNNING
    assert (await engine.manager.get(wf.id)).state == WorkflowState.COMPENSATING


@pytest.mark.asyncio
async def test_skip_remaining_finishes_episode(make_engine, worker):
    engine = make_engine(_booking())
    w = worker(engine)
    wf = await _fail_last_step(engine, w)

    await w.compensate()
    await w.compensate(succeed=False)
    await w.compensate(succeed=False)

    wf = await engine.compensation.skip_remaining(wf.id)
    assert wf.state == WorkflowState.COMPENSATED
    statuses = {
        r.step_key: r.status
        for r in await engine.repositories.compensations.find_by_workflow_id(wf.id)
    }
    assert statuses == {
        "car": CompensationRunStatus.SUCCEEDED,
        "hotel": CompensationRunStatus.SKIPPED,
        "flight": CompensationRunStatus.SKIPPED,
    }


@pytest.mark.asyncio
async def test_nothing_to_compensate_completes_immediately(make_engine, worker):
    definition = WorkflowDefinition(
        key="booking",
        steps=[StepDefinition(key="notify", job="send_itinerary")],
        failure_resolution=FailureResolutionConfig(
            strategy=ResolutionStrategy.AUTO_COMPENSATE
        ),
    )
    engine = make_engine(definition)
    w = worker(engine)
    wf = await engine.manager.start("booking")
    await w.fail_step()

    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.COMPENSATED
    assert await engine.repositories.compensations.find_by_workflow_id(wf.id) == []


@pytest.mark.asyncio
async def test_initiate_waits_for_the_evaluation_lock(make_engine, worker):
    engine = make_engine(_booking(ResolutionStrategy.AWAIT_DECISION))
    w = worker(engine)
    wf = await _fail_last_step(engine, w)
    assert wf.state == WorkflowState.FAILED

    async with engine.advancer.locked(wf.id):
        with pytest.raises(WorkflowLockedError):
            await engine.compensation.initiate(wf.id)

    assert (await engine.manager.get(wf.id)).state == WorkflowState.FAILED
    assert await engine.repositories.compensations.find_by_workflow_id(wf.id) == []
    assert await w.take("compensation") == []

    wf = await engine.compensation.initiate(wf.id)
    assert wf.state == WorkflowState.COMPENSATING


@pytest.mark.asyncio
async def test_compensation_reports_wait_for_the_evaluation_lock(make_engine, worker):
    engine = make_engine(_booking())
    w = worker(engine)
    wf = await _fail_last_step(engine, w)
    [message] = await w.take("compensation")

    async with engine.advancer.locked(wf.id):
        with pytest.raises(WorkflowLockedError):
            await engine.compensation.record_success(
                message.compensation_run_id, message.job_uuid
            )
        with pytest.raises(WorkflowLockedError):
            await engine.compensation.skip_remaining(wf.id)

    run = await engine.repositories.compensations.find(message.compensation_run_id)
    assert run.status == CompensationRunStatus.RUNNING

    # the worker redelivers once the lock is free
    await engine.compensation.record_success(message.compensation_run_id, message.job_uuid)
    run = await engine.repositories.compensations.find(message.compensation_run_id)
    assert run.status == CompensationRunStatus.SUCCEEDED
    assert [m.step_key for m in await w.take("compensation")] == ["hotel"]
