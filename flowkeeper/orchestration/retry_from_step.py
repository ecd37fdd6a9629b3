"""Rewinding a workflow to an arbitrary step."""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field

from ..definition.models import WorkflowDefinition
from ..domain.events import (
    RetryFromStepCompleted,
    RetryFromStepInitiated,
    StepRunSuperseded,
)
from ..domain.models import CompensationScope, RetryMode, WorkflowInstance
from ..domain.states import WorkflowState
from ..errors import InvalidStateTransitionError, WorkflowLockedError
from ..events import EventBus
from ..persistence.repository import (
    StepOutputRepository,
    StepRunRepository,
    WorkflowRepository,
)
from .advancer import WorkflowAdvancer
from .compensation import CompensationExecutor
from .dispatcher import StepDispatcher

logger = logging.getLogger(__name__)

_REWINDABLE = (WorkflowState.FAILED, WorkflowState.COMPENSATED)


class RetryFromStepRequest(BaseModel):
    workflow_id: str
    retry_from_step_key: str
    retry_mode: RetryMode = RetryMode.RETRY_ONLY
    initiated_by: Optional[str] = None
    reason: Optional[str] = None


class RetryFromStepResult(BaseModel):
    workflow: WorkflowInstance
    retry_from_step_key: str
    new_step_run_id: Optional[str] = None
    superseded_step_run_ids: List[str] = Field(default_factory=list)
    cleared_step_keys: List[str] = Field(default_factory=list)
    cleared_output_count: int = 0
    compensation_executed: bool = False
    awaiting_compensation: bool = False

    @property
    def superseded_count(self) -> int:
        return len(self.superseded_step_run_ids)


class RetryFromStepService:
    """Supersede the runs of a step and everything after it, then run it again.

    The rewind happens under the workflow's evaluation lock so it never
    interleaves with an advancer evaluation. With ``compensate_then_retry``
    the affected steps are compensated first; when that needs compensation
    jobs to run, the rewind finishes once the workflow reaches
    ``compensated``.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        step_runs: StepRunRepository,
        outputs: StepOutputRepository,
        advancer: WorkflowAdvancer,
        dispatcher: StepDispatcher,
        compensation: CompensationExecutor,
        events: EventBus,
    ) -> None:
        self._workflows = workflows
        self._step_runs = step_runs
        self._outputs = outputs
        self._advancer = advancer
        self._dispatcher = dispatcher
        self._compensation = compensation
        self._events = events

    async def execute(self, request: RetryFromStepRequest) -> RetryFromStepResult:
        """Rewind ``request.workflow_id`` to ``request.retry_from_step_key``.

        Raises:
            StepNotFoundError: If the step is not part of the definition.
            InvalidStateTransitionError: If the workflow is neither failed nor compensated.
            WorkflowLockedError: If another evaluator holds the workflow lock.
        """
        async with self._advancer.locked(request.workflow_id) as workflow:
            result = await self.execute_locked(workflow, request)
        if not result.awaiting_compensation:
            return result
        # compensation may have finished while the lock was still held here
        resumed = await self.resume_pending_rewind(request.workflow_id)
        return resumed or result

    async def execute_locked(
        self, workflow: WorkflowInstance, request: RetryFromStepRequest
    ) -> RetryFromStepResult:
        """Same as :meth:`execute` for a caller that already holds the lock.

        A result with ``awaiting_compensation`` set is finished by
        :meth:`resume_pending_rewind` once the lock has been released.
        """
        definition = self._advancer.definition_for(workflow)
        affected = [s.key for s in definition.steps_from(request.retry_from_step_key)]
        if workflow.state not in _REWINDABLE:
            raise InvalidStateTransitionError(
                "workflow", workflow.state.value, WorkflowState.RUNNING.value
            )

        logger.info(
            f"Retrying workflow_id={workflow.id} from step {request.retry_from_step_key} "
            f"({request.retry_mode.value})"
        )
        await self._events.dispatch(
            RetryFromStepInitiated(
                workflow_id=workflow.id,
                step_key=request.retry_from_step_key,
                retry_mode=request.retry_mode.value,
                affected_step_keys=affected,
                initiated_by=request.initiated_by,
                reason=request.reason,
            )
        )

        if (
            request.retry_mode != RetryMode.COMPENSATE_THEN_RETRY
            or workflow.state != WorkflowState.FAILED
        ):
            return await self._rewind(
                workflow, definition, request.retry_from_step_key, affected, False
            )

        workflow.pending_rewind_step_key = request.retry_from_step_key
        await self._workflows.save(workflow)
        workflow = await self._compensation.initiate_locked(
            workflow,
            CompensationScope.FROM_STEP,
            step_keys=affected,
            initiated_by=request.initiated_by,
            reason=request.reason,
        )
        if workflow.state == WorkflowState.COMPENSATED:
            return await self._rewind(
                workflow, definition, request.retry_from_step_key, affected, True
            )

        logger.info(f"Rewind of workflow_id={workflow.id} waits for compensation to finish")
        return RetryFromStepResult(
            workflow=workflow,
            retry_from_step_key=request.retry_from_step_key,
            compensation_executed=True,
            awaiting_compensation=True,
        )

    async def on_compensation_completed(self, workflow: WorkflowInstance) -> None:
        if workflow.pending_rewind_step_key:
            await self.resume_pending_rewind(workflow.id)

    async def resume_pending_rewind(self, workflow_id: str) -> Optional[RetryFromStepResult]:
        """Finish a rewind that was waiting for its compensation episode."""
        try:
            async with self._advancer.locked(workflow_id) as workflow:
                if (
                    workflow.state != WorkflowState.COMPENSATED
                    or not workflow.pending_rewind_step_key
                ):
                    return None
                definition = self._advancer.definition_for(workflow)
                step_key = workflow.pending_rewind_step_key
                affected = [s.key for s in definition.steps_from(step_key)]
                return await self._rewind(workflow, definition, step_key, affected, True)
        except WorkflowLockedError:
            logger.debug(
                f"Pending rewind of workflow_id={workflow_id} left to the current lock holder"
            )
            return None

    async def _rewind(
        self,
        workflow: WorkflowInstance,
        definition: WorkflowDefinition,
        step_key: str,
        affected: List[str],
        compensation_executed: bool,
    ) -> RetryFromStepResult:
        new_step_run_id = str(uuid.uuid4())

        superseded: List[str] = []
        for run in await self._step_runs.find_active_by_step_keys(workflow.id, affected):
            run.supersede(new_step_run_id)
            if await self._step_runs.supersede(run):
                superseded.append(run.id)
                await self._events.dispatch(
                    StepRunSuperseded(
                        workflow_id=workflow.id,
                        step_key=run.step_key,
                        step_run_id=run.id,
                        superseded_by_id=new_step_run_id,
                    )
                )

        cleared = await self._outputs.delete_by_step_keys(workflow.id, affected)

        workflow.pending_rewind_step_key = None
        workflow.trigger_resumed_step_key = None
        workflow.advance_to_step(step_key)
        workflow.retry()
        await self._workflows.save(workflow)

        step = definition.get_step_or_fail(step_key)
        run = await self._dispatcher.retry_step(workflow, step, step_run_id=new_step_run_id)
        # a skipped or empty run is passed over right away
        await self._advancer.advance(workflow)

        logger.info(
            f"Rewound workflow_id={workflow.id} to step {step_key}: "
            f"{len(superseded)} runs superseded, {cleared} outputs cleared"
        )
        await self._events.dispatch(
            RetryFromStepCompleted(
                workflow_id=workflow.id,
                step_key=step_key,
                new_step_run_id=run.id,
                superseded_count=len(superseded),
                cleared_output_count=cleared,
            )
        )
        return RetryFromStepResult(
            workflow=await self._workflows.find_or_fail(workflow.id),
            retry_from_step_key=step_key,
            new_step_run_id=run.id,
            superseded_step_run_ids=superseded,
            cleared_step_keys=affected,
            cleared_output_count=cleared,
            compensation_executed=compensation_executed,
        )
