from datetime import timedelta

import pytest

from flowkeeper.definition import StepDefinition, WorkflowDefinition
from flowkeeper.domain.events import (
    DomainEvent,
    WorkflowCancelled,
    WorkflowCreated,
    WorkflowPaused,
    WorkflowResumed,
)
from flowkeeper.domain.states import WorkflowState
from flowkeeper.errors import (
    DefinitionNotFoundError,
    InvalidStateTransitionError,
    WorkflowAlreadyCancelledError,
    WorkflowLockedError,
    WorkflowNotFoundError,
)
from flowkeeper.utils.time import utcnow


def _record(engine):
    seen = []

    async def handler(event):
        seen.append(event)

    engine.events.subscribe(DomainEvent, handler)
    return seen


def _orders(version: str = "1.0.0") -> WorkflowDefinition:
    return WorkflowDefinition(
        key="orders",
        version=version,
        steps=[
            StepDefinition(key="reserve", job=f"reserve_job_v{version[0]}"),
            StepDefinition(key="ship", job="ship_job"),
        ],
    )


@pytest.mark.asyncio
async def test_start_uses_requested_id_and_version(make_engine, worker):
    engine = make_engine(_orders("1.0.0"), _orders("2.0.0"))
    events = _record(engine)
    w = worker(engine)

    latest = await engine.manager.start("orders", {"order_id": 1}, workflow_id="order-1")
    assert latest.id == "order-1"
    assert latest.definition_version == "2.0.0"
    assert latest.payload == {"order_id": 1}

    pinned = await engine.manager.start("orders", version="1.0.0")
    assert pinned.definition_version == "1.0.0"

    assert sorted(m.job_name for m in await w.take()) == ["reserve_job_v1", "reserve_job_v2"]
    assert [e.definition_version for e in events if isinstance(e, WorkflowCreated)] == [
        "2.0.0",
        "1.0.0",
    ]


@pytest.mark.asyncio
async def test_start_unknown_definition(make_engine):
    engine = make_engine(_orders())
    with pytest.raises(DefinitionNotFoundError):
        await engine.manager.start("refunds")
    with pytest.raises(WorkflowNotFoundError):
        await engine.manager.get("missing")


@pytest.mark.asyncio
async def test_pause_and_resume(make_engine, worker):
    engine = make_engine(_orders())
    events = _record(engine)
    w = worker(engine)
    wf = await engine.manager.start("orders")

    wf = await engine.manager.pause(wf.id, reason="Fraud review")
    assert wf.state == WorkflowState.PAUSED
    assert wf.paused_reason == "Fraud review"

    # job reports while paused are recorded but do not advance the workflow
    await w.run_step()
    wf = await engine.manager.get(wf.id)
    assert wf.current_step_key == "reserve"
    assert await w.take() == []

    wf = await engine.manager.resume(wf.id)
    assert wf.state == WorkflowState.RUNNING
    assert wf.paused_reason is None
    assert wf.current_step_key == "ship"
    assert [m.step_key for m in await w.take()] == ["ship"]
    assert [type(e) for e in events if isinstance(e, (WorkflowPaused, WorkflowResumed))] == [
        WorkflowPaused,
        WorkflowResumed,
    ]


@pytest.mark.asyncio
async def test_cancel(make_engine):
    engine = make_engine(_orders())
    events = _record(engine)
    wf = await engine.manager.start("orders")

    wf = await engine.manager.cancel(wf.id)
    assert wf.state == WorkflowState.CANCELLED
    assert wf.current_step_key is None
    assert len([e for e in events if isinstance(e, WorkflowCancelled)]) == 1

    with pytest.raises(WorkflowAlreadyCancelledError):
        await engine.manager.cancel(wf.id)
    with pytest.raises(InvalidStateTransitionError):
        await engine.manager.resume(wf.id)


@pytest.mark.asyncio
async def test_retry_requires_failed_workflow(make_engine):
    engine = make_engine(_orders())
    wf = await engine.manager.start("orders")
    with pytest.raises(InvalidStateTransitionError):
        await engine.manager.retry(wf.id)


@pytest.mark.asyncio
async def test_retry_failed_workflow(make_engine, worker):
    engine = make_engine(_orders())
    w = worker(engine)
    wf = await engine.manager.start("orders")
    await w.fail_step()
    assert (await engine.manager.get(wf.id)).state == WorkflowState.FAILED

    wf = await engine.manager.retry(wf.id)
    assert wf.state == WorkflowState.RUNNING
    [message] = await w.take()
    assert (message.step_key, message.attempt) == ("reserve", 2)


@pytest.mark.asyncio
async def test_operations_respect_evaluation_lock(make_engine):
    engine = make_engine(_orders())
    wf = await engine.manager.start("orders")
    now = utcnow()
    await engine.repositories.workflows.acquire_lock(
        wf.id, "other-evaluator", now, now - timedelta(seconds=30)
    )

    with pytest.raises(WorkflowLockedError):
        await engine.manager.pause(wf.id)
    assert (await engine.manager.get(wf.id)).state == WorkflowState.RUNNING
