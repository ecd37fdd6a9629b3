"""Polling steps: repeated checks until an external condition is met."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..definition.models import PollingConfig, PollTimeoutPolicy
from ..domain.events import StepFailed, StepPollScheduled, StepSucceeded
from ..domain.models import StepOutput, StepRun
from ..domain.states import JobState, StepStatus
from ..errors import JobNotFoundError
from ..events import EventBus
from ..persistence.repository import (
    JobRepository,
    StepOutputRepository,
    StepRunRepository,
    WorkflowRepository,
)
from ..utils.time import utcnow
from .advancer import WorkflowAdvancer
from .dispatcher import StepDispatcher
from .failure_policy import POLL_TIMEOUT

logger = logging.getLogger(__name__)

POLL_ABORTED = "POLL_ABORTED"


class PollStatus(str, Enum):
    COMPLETE = "complete"
    ABORT = "abort"
    CONTINUE = "continue"


class PollResult(BaseModel):
    """What a poll job found."""

    status: PollStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None

    @classmethod
    def completed(cls, outputs: Optional[Dict[str, Any]] = None) -> "PollResult":
        return cls(status=PollStatus.COMPLETE, outputs=outputs or {})

    @classmethod
    def aborted(cls, message: Optional[str] = None) -> "PollResult":
        return cls(status=PollStatus.ABORT, message=message)

    @classmethod
    def continuing(cls, message: Optional[str] = None) -> "PollResult":
        return cls(status=PollStatus.CONTINUE, message=message)


class PollResultHandler:
    """Apply poll results to polling step runs and schedule the next poll."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        step_runs: StepRunRepository,
        jobs: JobRepository,
        outputs: StepOutputRepository,
        dispatcher: StepDispatcher,
        advancer: WorkflowAdvancer,
        events: EventBus,
    ) -> None:
        self._workflows = workflows
        self._step_runs = step_runs
        self._jobs = jobs
        self._outputs = outputs
        self._dispatcher = dispatcher
        self._advancer = advancer
        self._events = events

    async def handle_poll_result(
        self, job_uuid: str, result: PollResult, now: Optional[datetime] = None
    ) -> StepRun:
        """Record one poll attempt and act on its result.

        Raises:
            JobNotFoundError: If no poll job with ``job_uuid`` was dispatched.
        """
        now = now or utcnow()
        job = await self._jobs.find_by_job_uuid(job_uuid)
        if job is None:
            raise JobNotFoundError(job_uuid)
        if not job.state.is_terminal:
            if job.state == JobState.DISPATCHED:
                job.start()
            job.succeed()
            await self._jobs.save(job)

        run = await self._step_runs.find_or_fail(job.step_run_id)
        if run.status != StepStatus.POLLING:
            logger.debug(f"Ignoring poll result for step run {run.id} in state {run.status.value}")
            return run

        workflow = await self._workflows.find_or_fail(run.workflow_id)
        step = self._advancer.definition_for(workflow).get_step_or_fail(run.step_key)
        polling = step.polling or PollingConfig()

        run.poll_attempt_count += 1
        if result.status == PollStatus.COMPLETE:
            await self._write_outputs(run, result.outputs)
            await self._succeed(run)
        elif result.status == PollStatus.ABORT:
            await self._fail(run, POLL_ABORTED, result.message or "Polling aborted")
        elif polling.has_exceeded_limits(run.poll_attempt_count, run.poll_started_at, now):
            await self._time_out(run, polling)
        else:
            delay = polling.interval_for_attempt(run.poll_attempt_count)
            run.next_poll_at = now + timedelta(seconds=delay)
            await self._step_runs.save(run)
            logger.debug(
                f"Poll {run.poll_attempt_count} of step {run.step_key} not complete, "
                f"next poll in {delay}s for workflow_id={run.workflow_id}"
            )
            await self._events.dispatch(
                StepPollScheduled(
                    workflow_id=run.workflow_id,
                    step_key=run.step_key,
                    step_run_id=run.id,
                    poll_attempt=run.poll_attempt_count,
                    next_poll_at=run.next_poll_at,
                )
            )
            return run

        await self._advancer.evaluate(run.workflow_id)
        return await self._step_runs.find_or_fail(run.id)

    async def dispatch_due_polls(self, now: Optional[datetime] = None) -> list[StepRun]:
        """Publish the next poll job of every polling run that is due."""
        now = now or utcnow()
        dispatched: list[StepRun] = []
        for run in await self._step_runs.find_due_polls(now):
            workflow = await self._workflows.find(run.workflow_id)
            if workflow is None or not workflow.state.is_active:
                continue
            step = self._advancer.definition_for(workflow).get_step_or_fail(run.step_key)
            dispatched.append(await self._dispatcher.dispatch_poll(workflow, step, run))
        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} due polls")
        return dispatched

    async def _time_out(self, run: StepRun, polling: PollingConfig) -> None:
        logger.warning(
            f"Polling of step {run.step_key} exceeded its limits after "
            f"{run.poll_attempt_count} attempts for workflow_id={run.workflow_id}"
        )
        if polling.timeout_policy == PollTimeoutPolicy.CONTINUE_WITH_DEFAULT:
            await self._write_outputs(run, polling.default_output)
            await self._succeed(run)
            return
        # pause_workflow is mapped to the pause policy when the failure is handled
        await self._fail(
            run,
            POLL_TIMEOUT,
            f"Polling timed out after {run.poll_attempt_count} attempts",
        )

    async def _write_outputs(self, run: StepRun, outputs: Dict[str, Any]) -> None:
        for name, value in outputs.items():
            await self._outputs.put(
                StepOutput(
                    workflow_id=run.workflow_id,
                    step_key=run.step_key,
                    name=name,
                    value=value,
                )
            )

    async def _succeed(self, run: StepRun) -> None:
        run.next_poll_at = None
        run.succeed()
        if await self._step_runs.finalize(run):
            logger.info(f"Polling step {run.step_key} completed for workflow_id={run.workflow_id}")
            await self._events.dispatch(
                StepSucceeded(
                    workflow_id=run.workflow_id, step_key=run.step_key, step_run_id=run.id
                )
            )

    async def _fail(self, run: StepRun, code: str, message: str) -> None:
        run.next_poll_at = None
        run.fail(code, message)
        if await self._step_runs.finalize(run):
            logger.info(f"Polling step {run.step_key} failed ({message}) for workflow_id={run.workflow_id}")
            await self._events.dispatch(
                StepFailed(
                    workflow_id=run.workflow_id,
                    step_key=run.step_key,
                    step_run_id=run.id,
                    failure_code=code,
                    failure_message=message,
                )
            )
