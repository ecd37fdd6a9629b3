"""Creation of step runs and dispatch of their units of work."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from ..definition.models import StepDefinition, StepKind
from ..dispatch import JobDispatchService
from ..domain.events import StepRetried, StepSkipped, StepStarted
from ..domain.models import SkipReason, StepRun, WorkflowInstance
from ..domain.states import StepStatus
from ..errors import StepDependencyError
from ..events import EventBus
from ..persistence.repository import StepOutputRepository, StepRunRepository

logger = logging.getLogger(__name__)


class StepDispatchOutcome(str, Enum):
    DISPATCHED = "dispatched"
    SKIPPED = "skipped"


class StepDispatchResult(BaseModel):
    outcome: StepDispatchOutcome
    step_run: StepRun

    @property
    def was_skipped(self) -> bool:
        return self.outcome == StepDispatchOutcome.SKIPPED


class StepDispatcher:
    """Turns a step definition into a persisted step run plus its jobs."""

    def __init__(
        self,
        step_runs: StepRunRepository,
        outputs: StepOutputRepository,
        jobs: JobDispatchService,
        events: EventBus,
    ) -> None:
        self._step_runs = step_runs
        self._outputs = outputs
        self._jobs = jobs
        self._events = events

    async def dispatch_step(
        self,
        workflow: WorkflowInstance,
        step: StepDefinition,
        step_run_id: Optional[str] = None,
    ) -> StepRun:
        result = await self.dispatch_step_with_result(workflow, step, step_run_id)
        return result.step_run

    async def retry_step(
        self,
        workflow: WorkflowInstance,
        step: StepDefinition,
        step_run_id: Optional[str] = None,
        delay_seconds: Optional[int] = None,
    ) -> StepRun:
        """Dispatch ``step`` again as a new attempt."""
        result = await self.dispatch_step_with_result(
            workflow, step, step_run_id, delay_seconds=delay_seconds
        )
        run = result.step_run
        await self._events.dispatch(
            StepRetried(
                workflow_id=workflow.id,
                step_key=step.key,
                step_run_id=run.id,
                attempt=run.attempt,
            )
        )
        return run

    async def dispatch_step_with_result(
        self,
        workflow: WorkflowInstance,
        step: StepDefinition,
        step_run_id: Optional[str] = None,
        delay_seconds: Optional[int] = None,
    ) -> StepDispatchResult:
        """Validate dependencies, create the next attempt and dispatch its jobs.

        Raises:
            StepDependencyError: If outputs the step requires have not been produced.
        """
        outputs = await self._outputs.read(workflow.id)
        missing = [name for name in step.requires if name not in outputs]
        if missing:
            raise StepDependencyError(step.key, missing)

        latest = await self._step_runs.find_latest_by_workflow_id_and_step_key(
            workflow.id, step.key, include_superseded=True
        )
        run = StepRun(
            workflow_id=workflow.id,
            step_key=step.key,
            attempt=latest.attempt + 1 if latest else 1,
        )
        if step_run_id is not None:
            run.id = step_run_id

        if step.condition is not None and not step.condition(workflow.payload, outputs):
            run.skip(SkipReason.CONDITION_FALSE, "Step condition evaluated to false")
            await self._step_runs.save(run)
            logger.info(
                f"Skipped step {step.key} for workflow_id={workflow.id}: condition false"
            )
            await self._events.dispatch(
                StepSkipped(
                    workflow_id=workflow.id,
                    step_key=step.key,
                    step_run_id=run.id,
                    reason=SkipReason.CONDITION_FALSE.value,
                )
            )
            return StepDispatchResult(outcome=StepDispatchOutcome.SKIPPED, step_run=run)

        if step.kind == StepKind.POLLING:
            await self._dispatch_polling(workflow, step, run)
        elif step.kind == StepKind.FAN_OUT:
            await self._dispatch_fan_out(workflow, step, run, outputs, delay_seconds)
        else:
            run.start()
            run.total_job_count = 1
            await self._step_runs.save(run)
            await self._jobs.dispatch_step_job(
                run,
                step.job,
                dict(step.arguments),
                step.queue,
                delay_seconds=delay_seconds,
                timeout_seconds=step.timeout.job_timeout_seconds,
            )

        logger.info(
            f"Dispatched step {step.key} attempt {run.attempt} "
            f"({run.total_job_count} jobs) for workflow_id={workflow.id}"
        )
        await self._events.dispatch(
            StepStarted(
                workflow_id=workflow.id,
                step_key=step.key,
                step_run_id=run.id,
                attempt=run.attempt,
                total_job_count=run.total_job_count,
            )
        )
        return StepDispatchResult(outcome=StepDispatchOutcome.DISPATCHED, step_run=run)

    async def _dispatch_fan_out(
        self,
        workflow: WorkflowInstance,
        step: StepDefinition,
        run: StepRun,
        outputs: dict[str, Any],
        delay_seconds: Optional[int],
    ) -> None:
        items = list(step.items(workflow.payload, outputs))
        run.start()
        run.total_job_count = len(items)
        await self._step_runs.save(run)
        for item in items:
            if step.args_factory is not None:
                arguments = step.args_factory(item, workflow.payload, outputs)
            else:
                arguments = {"item": item}
            await self._jobs.dispatch_step_job(
                run,
                step.job,
                {**step.arguments, **arguments},
                step.queue,
                delay_seconds=delay_seconds,
                timeout_seconds=step.timeout.job_timeout_seconds,
            )

    async def _dispatch_polling(
        self, workflow: WorkflowInstance, step: StepDefinition, run: StepRun
    ) -> None:
        run.start_polling()
        run.total_job_count = 1
        await self._step_runs.save(run)
        await self.dispatch_poll(workflow, step, run)

    async def dispatch_poll(
        self, workflow: WorkflowInstance, step: StepDefinition, run: StepRun
    ) -> StepRun:
        """Publish one poll job for a polling run and mark the poll as in flight."""
        if run.status != StepStatus.POLLING:
            return run
        run.next_poll_at = None
        await self._step_runs.save(run)
        await self._jobs.dispatch_step_job(
            run,
            step.job,
            {**step.arguments, "poll_attempt": run.poll_attempt_count + 1},
            step.queue,
            kind="poll",
            timeout_seconds=step.timeout.job_timeout_seconds,
        )
        return run
