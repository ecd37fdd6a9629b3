"""Deciding a step's outcome once all of its jobs have reported."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel

from ..definition.criteria import AllCriteria
from ..definition.models import StepDefinition, StepKind
from ..domain.events import StepFailed, StepSucceeded
from ..domain.models import JobRecord, StepRun
from ..domain.states import JobState, StepStatus
from ..events import EventBus
from ..persistence.repository import JobRepository, StepRunRepository

logger = logging.getLogger(__name__)

STEP_FAILED = "STEP_FAILED"


class StepJobStats(BaseModel):
    total: int
    succeeded: int = 0
    failed: int = 0
    running: int = 0
    dispatched: int = 0

    @classmethod
    def from_jobs(cls, jobs: Iterable[JobRecord], total: Optional[int] = None) -> "StepJobStats":
        jobs = list(jobs)
        counts = {state: 0 for state in JobState}
        for job in jobs:
            counts[job.state] += 1
        return cls(
            total=len(jobs) if total is None else total,
            succeeded=counts[JobState.SUCCEEDED],
            failed=counts[JobState.FAILED],
            running=counts[JobState.RUNNING],
            dispatched=counts[JobState.DISPATCHED],
        )

    @property
    def is_ready(self) -> bool:
        return self.succeeded + self.failed >= self.total


class FinalizationOutcome(str, Enum):
    NOT_READY = "not_ready"
    FINALIZED = "finalized"
    ALREADY_FINALIZED = "already_finalized"


class FinalizationResult(BaseModel):
    outcome: FinalizationOutcome
    step_run: StepRun
    stats: Optional[StepJobStats] = None

    @property
    def succeeded(self) -> bool:
        return self.step_run.status == StepStatus.SUCCEEDED


class StepFinalizer:
    """Close a running step run as succeeded or failed.

    Safe to call repeatedly and concurrently: the terminal status is written
    with a compare-and-swap, and the loser of a race gets
    ``ALREADY_FINALIZED``.
    """

    def __init__(
        self, step_runs: StepRunRepository, jobs: JobRepository, events: EventBus
    ) -> None:
        self._step_runs = step_runs
        self._jobs = jobs
        self._events = events

    async def get_stats(self, step_run: StepRun) -> StepJobStats:
        jobs = await self._jobs.find_by_step_run_id(step_run.id)
        return StepJobStats.from_jobs(jobs, step_run.total_job_count)

    async def try_finalize(
        self, step_run: StepRun, step: StepDefinition
    ) -> FinalizationResult:
        if step_run.status != StepStatus.RUNNING:
            outcome = (
                FinalizationOutcome.ALREADY_FINALIZED
                if step_run.status.is_terminal
                else FinalizationOutcome.NOT_READY
            )
            return FinalizationResult(outcome=outcome, step_run=step_run)

        stats = await self.get_stats(step_run)
        if not stats.is_ready:
            return FinalizationResult(
                outcome=FinalizationOutcome.NOT_READY, step_run=step_run, stats=stats
            )

        criteria = step.success_criteria if step.kind == StepKind.FAN_OUT else AllCriteria()
        passed = stats.total == 0 or criteria.evaluate(stats.succeeded, stats.total)

        finalized = step_run.model_copy(deep=True)
        finalized.total_job_count = stats.total
        finalized.failed_job_count = stats.failed
        if passed:
            finalized.succeed()
        else:
            finalized.fail(STEP_FAILED, f"{stats.failed} of {stats.total} jobs failed")

        if not await self._step_runs.finalize(finalized):
            logger.debug(
                f"Step run {step_run.id} was finalized concurrently for workflow_id={step_run.workflow_id}"
            )
            current = await self._step_runs.find(step_run.id)
            return FinalizationResult(
                outcome=FinalizationOutcome.ALREADY_FINALIZED,
                step_run=current or step_run,
                stats=stats,
            )

        if passed:
            logger.info(
                f"Step {step_run.step_key} succeeded ({stats.succeeded}/{stats.total}) "
                f"for workflow_id={step_run.workflow_id}"
            )
            await self._events.dispatch(
                StepSucceeded(
                    workflow_id=step_run.workflow_id,
                    step_key=step_run.step_key,
                    step_run_id=step_run.id,
                )
            )
        else:
            logger.info(
                f"Step {step_run.step_key} failed ({finalized.failure_message}) "
                f"for workflow_id={step_run.workflow_id}"
            )
            await self._events.dispatch(
                StepFailed(
                    workflow_id=step_run.workflow_id,
                    step_key=step_run.step_key,
                    step_run_id=step_run.id,
                    failure_code=finalized.failure_code,
                    failure_message=finalized.failure_message,
                )
            )
        return FinalizationResult(
            outcome=FinalizationOutcome.FINALIZED, step_run=finalized, stats=stats
        )
