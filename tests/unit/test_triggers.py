from datetime import timedelta

import pytest

from flowkeeper.definition import (
    PauseTrigger,
    StepDefinition,
    TriggerTimeoutPolicy,
    WorkflowDefinition,
)
from flowkeeper.domain.events import DomainEvent, TriggerReceived, TriggerTimedOut
from flowkeeper.domain.states import WorkflowState
from flowkeeper.orchestration import TriggerOutcome
from flowkeeper.utils.time import utcnow


def _record(engine):
    seen = []

    async def handler(event):
        seen.append(event)

    engine.events.subscribe(DomainEvent, handler)
    return seen


def _approval(**trigger_kwargs) -> WorkflowDefinition:
    trigger_kwargs.setdefault("trigger_key", "approved")
    return WorkflowDefinition(
        key="publish",
        steps=[
            StepDefinition(
                key="draft",
                job="write_draft",
                pause_trigger=PauseTrigger(**trigger_kwargs),
            ),
            StepDefinition(key="release", job="release_article"),
        ],
    )


async def _paused(engine, w):
    wf = await engine.manager.start("publish")
    await w.run_step()
    return await engine.manager.get(wf.id)


@pytest.mark.asyncio
async def test_step_pauses_until_trigger_arrives(make_engine, worker):
    engine = make_engine(_approval(payload_output="approval"))
    events = _record(engine)
    w = worker(engine)
    wf = await _paused(engine, w)

    assert wf.state == WorkflowState.PAUSED
    assert wf.awaiting_trigger_key == "approved"
    assert wf.paused_reason == 'Awaiting trigger "approved" after step "draft"'
    assert await w.take() == []

    wrong = await engine.triggers.process_trigger(wf.id, "rejected")
    assert wrong.outcome == TriggerOutcome.NOT_AWAITING
    assert wrong.workflow.state == WorkflowState.PAUSED

    result = await engine.triggers.process_trigger(wf.id, "approved", {"editor": "sam"})
    assert result.resumed
    assert result.workflow.state == WorkflowState.RUNNING
    assert result.workflow.current_step_key == "release"
    assert await engine.repositories.outputs.read(wf.id) == {"approval": {"editor": "sam"}}
    assert [e.trigger_key for e in events if isinstance(e, TriggerReceived)] == ["approved"]
    assert [m.step_key for m in await w.take()] == ["release"]

    again = await engine.triggers.process_trigger(wf.id, "approved")
    assert again.outcome == TriggerOutcome.NOT_AWAITING


@pytest.mark.asyncio
async def test_trigger_for_finished_workflow(make_engine, worker):
    engine = make_engine(_approval())
    wf = await _paused(engine, worker(engine))
    await engine.manager.cancel(wf.id)

    result = await engine.triggers.process_trigger(wf.id, "approved")
    assert result.outcome == TriggerOutcome.WORKFLOW_TERMINAL


@pytest.mark.asyncio
async def test_timeout_fails_workflow(make_engine, worker):
    engine = make_engine(_approval(timeout_seconds=3600))
    events = _record(engine)
    wf = await _paused(engine, worker(engine))
    assert wf.trigger_timeout_at is not None

    assert await engine.triggers.check_trigger_timeouts() == []
    handled = await engine.triggers.check_trigger_timeouts(utcnow() + timedelta(hours=2))
    assert handled == [wf.id]

    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.FAILED
    assert wf.failure_code == "TRIGGER_TIMEOUT"
    assert wf.failure_message == 'Trigger "approved" was not received in time'
    [timed_out] = [e for e in events if isinstance(e, TriggerTimedOut)]
    assert timed_out.policy == "fail_workflow"


@pytest.mark.asyncio
async def test_timeout_auto_resumes(make_engine, worker):
    engine = make_engine(
        _approval(timeout_seconds=60, timeout_policy=TriggerTimeoutPolicy.AUTO_RESUME)
    )
    w = worker(engine)
    wf = await _paused(engine, w)

    await engine.triggers.check_trigger_timeouts(utcnow() + timedelta(minutes=2))
    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.RUNNING
    assert wf.current_step_key == "release"
    assert [m.step_key for m in await w.take()] == ["release"]


@pytest.mark.asyncio
async def test_timeout_extends_wait(make_engine, worker):
    engine = make_engine(
        _approval(timeout_seconds=60, timeout_policy=TriggerTimeoutPolicy.EXTEND_TIMEOUT)
    )
    wf = await _paused(engine, worker(engine))

    now = utcnow() + timedelta(minutes=2)
    await engine.triggers.check_trigger_timeouts(now)
    wf = await engine.manager.get(wf.id)
    assert wf.state == WorkflowState.PAUSED
    assert wf.awaiting_trigger_key == "approved"
    assert wf.trigger_timeout_at == now + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_scheduled_resume(make_engine, worker):
    engine = make_engine(_approval(trigger_key="cooldown", scheduled_resume_seconds=300))
    w = worker(engine)
    wf = await _paused(engine, w)

    assert await engine.triggers.process_scheduled_resumes() == []
    resumed = await engine.triggers.process_scheduled_resumes(utcnow() + timedelta(minutes=6))
    assert resumed == [wf.id]
    assert (await engine.manager.get(wf.id)).state == WorkflowState.RUNNING
    assert [m.step_key for m in await w.take()] == ["release"]


@pytest.mark.asyncio
async def test_retry_after_trigger_timeout_does_not_pause_again(make_engine, worker):
    engine = make_engine(_approval(timeout_seconds=60))
    w = worker(engine)
    wf = await _paused(engine, w)
    await engine.triggers.check_trigger_timeouts(utcnow() + timedelta(minutes=2))

    wf = await engine.manager.retry(wf.id)
    assert wf.state == WorkflowState.RUNNING
    assert wf.current_step_key == "release"
