"""Worker reports about the units of work they execute."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..domain.events import JobFailed, JobStarted, JobSucceeded
from ..domain.models import JobRecord, StepOutput
from ..domain.states import JobState, StepStatus
from ..errors import JobNotFoundError
from ..events import EventBus
from ..persistence.repository import (
    JobRepository,
    StepOutputRepository,
    StepRunRepository,
)
from ..utils.time import utcnow
from .advancer import WorkflowAdvancer

logger = logging.getLogger(__name__)

POLL_FAILED = "POLL_FAILED"
ZOMBIE_FAILURE_CLASS = "ZombieJobError"


class JobLifecycleService:
    """Keep the job ledger in step with worker reports and nudge the advancer.

    The ledger only moves forward: a report for a job that already reached a
    terminal state is logged and ignored.
    """

    def __init__(
        self,
        jobs: JobRepository,
        step_runs: StepRunRepository,
        outputs: StepOutputRepository,
        advancer: WorkflowAdvancer,
        events: EventBus,
        zombie_threshold_minutes: int = 30,
    ) -> None:
        self._jobs = jobs
        self._step_runs = step_runs
        self._outputs = outputs
        self._advancer = advancer
        self._events = events
        self.zombie_threshold_minutes = zombie_threshold_minutes

    async def _find_or_fail(self, job_uuid: str) -> JobRecord:
        job = await self._jobs.find_by_job_uuid(job_uuid)
        if job is None:
            raise JobNotFoundError(job_uuid)
        return job

    async def job_started(self, job_uuid: str, worker_id: Optional[str] = None) -> JobRecord:
        job = await self._find_or_fail(job_uuid)
        if job.state != JobState.DISPATCHED:
            logger.debug(f"Ignoring start report for job {job_uuid} in state {job.state.value}")
            return job
        job.start(worker_id)
        await self._jobs.save(job)
        logger.debug(f"Job {job.job_name} ({job_uuid}) started on {worker_id or 'unknown worker'}")
        await self._events.dispatch(
            JobStarted(workflow_id=job.workflow_id, job_uuid=job_uuid, worker_id=worker_id)
        )
        return job

    async def job_succeeded(
        self, job_uuid: str, outputs: Optional[Dict[str, Any]] = None
    ) -> JobRecord:
        """Record a successful job, store its outputs and evaluate the workflow."""
        job = await self._find_or_fail(job_uuid)
        if job.state.is_terminal:
            logger.debug(f"Ignoring duplicate success report for job {job_uuid}")
            return job
        if job.state == JobState.DISPATCHED:
            job.start()
        job.succeed()
        await self._jobs.save(job)

        for name, value in (outputs or {}).items():
            await self._outputs.put(
                StepOutput(
                    workflow_id=job.workflow_id,
                    step_key=job.step_key,
                    name=name,
                    value=value,
                )
            )
        logger.info(
            f"Job {job.job_name} ({job_uuid}) succeeded in {job.runtime_ms or 0}ms "
            f"for workflow_id={job.workflow_id}"
        )
        await self._events.dispatch(
            JobSucceeded(workflow_id=job.workflow_id, job_uuid=job_uuid, outputs=outputs or {})
        )
        await self._advancer.evaluate(job.workflow_id)
        return job

    async def job_failed(
        self,
        job_uuid: str,
        failure_class: Optional[str] = None,
        message: Optional[str] = None,
        trace: Optional[str] = None,
    ) -> JobRecord:
        """Record a failed job and evaluate the workflow."""
        job = await self._find_or_fail(job_uuid)
        if job.state.is_terminal:
            logger.debug(f"Ignoring duplicate failure report for job {job_uuid}")
            return job
        await self._fail(job, failure_class, message, trace)
        await self._advancer.evaluate(job.workflow_id)
        return job

    async def _fail(
        self,
        job: JobRecord,
        failure_class: Optional[str],
        message: Optional[str],
        trace: Optional[str],
    ) -> None:
        job.fail(failure_class, message, trace)
        await self._jobs.save(job)
        logger.warning(
            f"Job {job.job_name} ({job.job_uuid}) failed for workflow_id={job.workflow_id}: "
            f"{failure_class or 'Error'}: {message or 'Unknown error'}"
        )
        await self._events.dispatch(
            JobFailed(
                workflow_id=job.workflow_id,
                job_uuid=job.job_uuid,
                failure_class=failure_class,
                failure_message=message,
            )
        )

        # a crashed poll job ends the polling run, nothing else would
        run = await self._step_runs.find(job.step_run_id)
        if run is not None and run.status == StepStatus.POLLING:
            run.fail(POLL_FAILED, message or "Poll job failed")
            await self._step_runs.finalize(run)

    async def detect_zombie_jobs(
        self, threshold_minutes: Optional[int] = None, now: Optional[datetime] = None
    ) -> list[JobRecord]:
        """Fail running jobs that have not reported for longer than the threshold.

        Returns the jobs that were marked as failed.
        """
        now = now or utcnow()
        minutes = threshold_minutes if threshold_minutes is not None else self.zombie_threshold_minutes
        threshold = now - timedelta(minutes=minutes)

        zombies = await self._jobs.find_running_started_before(threshold)
        for job in zombies:
            await self._fail(
                job,
                ZOMBIE_FAILURE_CLASS,
                f"Job exceeded {minutes} minutes without reporting",
                None,
            )
        for workflow_id in sorted({job.workflow_id for job in zombies}):
            await self._advancer.evaluate(workflow_id)
        if zombies:
            logger.warning(f"Marked {len(zombies)} zombie jobs as failed")
        return zombies
