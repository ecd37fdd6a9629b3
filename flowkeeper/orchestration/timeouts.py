"""Failing steps that have been running for longer than allowed."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..definition.models import StepDefinition
from ..domain.events import StepFailed
from ..domain.models import StepRun, WorkflowInstance
from ..domain.states import StepStatus, WorkflowState
from ..errors import WorkflowLockedError
from ..events import EventBus
from ..persistence.repository import StepRunRepository, WorkflowRepository
from ..utils.time import utcnow
from .advancer import WorkflowAdvancer

logger = logging.getLogger(__name__)

STEP_TIMEOUT = "STEP_TIMEOUT"


class StepTimeoutHandler:
    """Fail running steps past their deadline and let the failure policy decide.

    A step's own ``timeout.step_timeout_seconds`` wins over the default. A
    timeout of zero disables the check for that step.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        step_runs: StepRunRepository,
        advancer: WorkflowAdvancer,
        events: EventBus,
        default_timeout_seconds: int = 3600,
    ) -> None:
        self._workflows = workflows
        self._step_runs = step_runs
        self._advancer = advancer
        self._events = events
        self.default_timeout_seconds = default_timeout_seconds

    def timeout_for(self, step: StepDefinition, default: Optional[int] = None) -> int:
        if step.timeout.has_step_timeout:
            return step.timeout.step_timeout_seconds
        return self.default_timeout_seconds if default is None else default

    async def check_step_timeouts(
        self,
        default_timeout_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Fail the current step of every running workflow that ran out of time.

        Returns the ids of the workflows whose step was failed.
        """
        now = now or utcnow()
        timed_out: list[str] = []
        for candidate in await self._workflows.list_workflows(WorkflowState.RUNNING):
            try:
                async with self._advancer.locked(candidate.id) as workflow:
                    if await self._time_out(workflow, default_timeout_seconds, now):
                        timed_out.append(workflow.id)
            except WorkflowLockedError:
                logger.debug(f"Step timeout check deferred, workflow_id={candidate.id} is locked")
        return timed_out

    async def _time_out(
        self,
        workflow: WorkflowInstance,
        default_timeout_seconds: Optional[int],
        now: datetime,
    ) -> bool:
        if workflow.state != WorkflowState.RUNNING or workflow.current_step_key is None:
            return False
        step = self._advancer.definition_for(workflow).get_step(workflow.current_step_key)
        if step is None:
            return False
        run = await self._step_runs.find_latest_by_workflow_id_and_step_key(
            workflow.id, step.key
        )
        timeout = self.timeout_for(step, default_timeout_seconds)
        if not self._expired(run, timeout, now):
            return False

        run.fail(STEP_TIMEOUT, "Step execution exceeded timeout")
        if not await self._step_runs.finalize(run):
            # the step finished on its own in the meantime
            return False
        logger.warning(
            f"Step {step.key} timed out after {timeout}s "
            f"for workflow_id={workflow.id}"
        )
        await self._events.dispatch(
            StepFailed(
                workflow_id=workflow.id,
                step_key=step.key,
                step_run_id=run.id,
                failure_code=run.failure_code,
                failure_message=run.failure_message,
            )
        )
        await self._advancer.advance(workflow)
        return True

    @staticmethod
    def _expired(run: Optional[StepRun], timeout_seconds: int, now: datetime) -> bool:
        if run is None or run.status != StepStatus.RUNNING or run.started_at is None:
            return False
        if timeout_seconds <= 0:
            return False
        return run.started_at + timedelta(seconds=timeout_seconds) < now
