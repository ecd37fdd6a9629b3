from datetime import timedelta

import pytest

from flowkeeper.definition import StepDefinition, StepKind, WorkflowDefinition
from flowkeeper.domain.events import DomainEvent, JobSucceeded
from flowkeeper.domain.states import JobState, StepStatus, WorkflowState
from flowkeeper.errors import JobNotFoundError
from flowkeeper.utils.time import utcnow


def _record(engine):
    seen = []

    async def handler(event):
        seen.append(event)

    engine.events.subscribe(DomainEvent, handler)
    return seen


def _batch() -> WorkflowDefinition:
    return WorkflowDefinition(
        key="batch",
        steps=[
            StepDefinition(
                key="process",
                job="process_item",
                kind=StepKind.FAN_OUT,
                items=lambda payload, outputs: [1, 2],
            )
        ],
    )


@pytest.mark.asyncio
async def test_job_reports_update_ledger(make_engine, worker):
    engine = make_engine(_batch())
    w = worker(engine)
    await engine.manager.start("batch")
    first, second = await w.take()

    job = await engine.job_lifecycle.job_started(first.job_uuid, "worker-7")
    assert job.state == JobState.RUNNING
    assert job.worker_id == "worker-7"

    job = await engine.job_lifecycle.job_succeeded(first.job_uuid, {"processed": 1})
    assert job.state == JobState.SUCCEEDED
    assert job.runtime_ms is not None

    # success reported without a start report
    job = await engine.job_lifecycle.job_succeeded(second.job_uuid)
    assert job.state == JobState.SUCCEEDED
    assert job.started_at is not None


@pytest.mark.asyncio
async def test_duplicate_reports_are_ignored(make_engine, worker):
    engine = make_engine(_batch())
    events = _record(engine)
    w = worker(engine)
    wf = await engine.manager.start("batch")
    first, second = await w.take()

    await w.succeed([first])
    await w.succeed([first])
    await engine.job_lifecycle.job_failed(first.job_uuid, "RuntimeError", "late failure")
    await engine.job_lifecycle.job_started(first.job_uuid)

    stored = await engine.repositories.jobs.find_by_job_uuid(first.job_uuid)
    assert stored.state == JobState.SUCCEEDED
    assert len([e for e in events if isinstance(e, JobSucceeded)]) == 1

    await w.succeed([second])
    assert (await engine.manager.get(wf.id)).state == WorkflowState.SUCCEEDED


@pytest.mark.asyncio
async def test_failure_before_start(make_engine, worker):
    engine = make_engine(_batch())
    w = worker(engine)
    await engine.manager.start("batch")
    first, _ = await w.take()

    job = await engine.job_lifecycle.job_failed(first.job_uuid, "TimeoutError", "never picked up")
    assert job.state == JobState.FAILED
    assert job.started_at is None
    assert job.failure_class == "TimeoutError"


@pytest.mark.asyncio
async def test_unknown_job_raises(make_engine):
    engine = make_engine(_batch())
    with pytest.raises(JobNotFoundError):
        await engine.job_lifecycle.job_succeeded("no-such-job")
    with pytest.raises(JobNotFoundError):
        await engine.job_lifecycle.job_started("no-such-job")


@pytest.mark.asyncio
async def test_zombie_jobs_are_failed(make_engine, worker):
    engine = make_engine(_batch())
    w = worker(engine)
    wf = await engine.manager.start("batch")
    first, second = await w.take()
    await engine.job_lifecycle.job_started(first.job_uuid)
    await w.succeed([second])

    assert await engine.job_lifecycle.detect_zombie_jobs() == []

    zombies = await engine.job_lifecycle.detect_zombie_jobs(now=utcnow() + timedelta(hours=1))
    assert [z.job_uuid for z in zombies] == [first.job_uuid]

    stored = await engine.repositories.jobs.find_by_job_uuid(first.job_uuid)
    assert stored.state == JobState.FAILED
    assert stored.failure_class == "ZombieJobError"
    assert stored.failure_message == "Job exceeded 30 minutes without reporting"

    run = await engine.repositories.step_runs.find_latest_by_workflow_id_and_step_key(
        wf.id, "process"
    )
    assert run.status == StepStatus.FAILED
    assert (await engine.manager.get(wf.id)).state == WorkflowState.FAILED


@pytest.mark.asyncio
async def test_zombie_threshold_override(make_engine, worker):
    engine = make_engine(_batch())
    w = worker(engine)
    await engine.manager.start("batch")
    first, _ = await w.take()
    await engine.job_lifecycle.job_started(first.job_uuid)

    now = utcnow() + timedelta(minutes=10)
    assert await engine.job_lifecycle.detect_zombie_jobs(now=now) == []
    assert len(await engine.job_lifecycle.detect_zombie_jobs(threshold_minutes=5, now=now)) == 1
