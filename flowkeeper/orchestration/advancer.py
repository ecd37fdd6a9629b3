"""Single-writer evaluation loop that moves a workflow forward."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from enum import Enum
from typing import AsyncIterator, Optional

from pydantic import BaseModel

from ..definition.models import StepDefinition, WorkflowDefinition
from ..definition.registry import WorkflowDefinitionRegistry
from ..domain.events import WorkflowPaused, WorkflowStarted, WorkflowSucceeded
from ..domain.models import StepRun, WorkflowInstance
from ..domain.states import StepStatus, WorkflowState
from ..errors import WorkflowLockedError
from ..events import EventBus
from ..persistence.repository import StepRunRepository, WorkflowRepository
from ..utils.time import utcnow
from .dispatcher import StepDispatcher
from .failure_policy import FailurePolicyAction, FailurePolicyHandler
from .finalizer import FinalizationOutcome, StepFinalizer

logger = logging.getLogger(__name__)


class EvaluationOutcome(str, Enum):
    LOCKED = "locked"
    NO_OP = "no_op"
    WAITING = "waiting"
    STEP_DISPATCHED = "step_dispatched"
    PAUSED = "paused"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


class EvaluationResult(BaseModel):
    outcome: EvaluationOutcome
    workflow: WorkflowInstance

    @property
    def acquired_lock(self) -> bool:
        return self.outcome != EvaluationOutcome.LOCKED


class WorkflowAdvancer:
    """React to any stimulus by evaluating a workflow under its lock.

    At most one evaluator works on a workflow at a time. A caller that finds
    the lock held returns ``LOCKED`` immediately and relies on the holder, or
    a later nudge, to make progress.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        step_runs: StepRunRepository,
        registry: WorkflowDefinitionRegistry,
        dispatcher: StepDispatcher,
        finalizer: StepFinalizer,
        failure_policy: FailurePolicyHandler,
        events: EventBus,
        lock_timeout_seconds: int = 30,
    ) -> None:
        self._workflows = workflows
        self._step_runs = step_runs
        self._registry = registry
        self._dispatcher = dispatcher
        self._finalizer = finalizer
        self._failure_policy = failure_policy
        self._events = events
        self._lock_timeout = timedelta(seconds=lock_timeout_seconds)

    # ------------------------------------------------------------------
    # Evaluation lock
    async def _acquire(self, workflow: WorkflowInstance, token: str) -> bool:
        now = utcnow()
        acquired = await self._workflows.acquire_lock(
            workflow.id, token, now, now - self._lock_timeout
        )
        if acquired and workflow.locked_by not in (None, token):
            logger.warning(
                f"Took over stale evaluation lock held by {workflow.locked_by} "
                f"for workflow_id={workflow.id}"
            )
        return acquired

    @asynccontextmanager
    async def locked(
        self, workflow_id: str, token: Optional[str] = None
    ) -> AsyncIterator[WorkflowInstance]:
        """Hold the evaluation lock for the duration of the block.

        Yields the workflow as loaded after the lock was taken.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            WorkflowLockedError: If another evaluator holds the lock.
        """
        token = token or str(uuid.uuid4())
        workflow = await self._workflows.find_or_fail(workflow_id)
        if not await self._acquire(workflow, token):
            raise WorkflowLockedError(workflow_id)
        try:
            yield await self._workflows.find_or_fail(workflow_id)
        finally:
            await self._workflows.release_lock(workflow_id, token)

    # ------------------------------------------------------------------
    async def evaluate(
        self, workflow_id: str, retry_failed_step: bool = False
    ) -> EvaluationResult:
        """Evaluate the workflow once, unless another evaluator is active.

        Args:
            workflow_id: Workflow to evaluate.
            retry_failed_step: Dispatch a failed current step again instead of
                applying its failure policy. Used after a manual retry or resume.
        """
        token = str(uuid.uuid4())
        workflow = await self._workflows.find_or_fail(workflow_id)
        if not await self._acquire(workflow, token):
            logger.debug(f"Evaluation skipped, workflow_id={workflow_id} is locked")
            return EvaluationResult(outcome=EvaluationOutcome.LOCKED, workflow=workflow)
        try:
            workflow = await self._workflows.find_or_fail(workflow_id)
            outcome = await self.advance(workflow, retry_failed_step)
        finally:
            await self._workflows.release_lock(workflow_id, token)
        return EvaluationResult(
            outcome=outcome, workflow=await self._workflows.find_or_fail(workflow_id)
        )

    async def advance(
        self, workflow: WorkflowInstance, retry_failed_step: bool = False
    ) -> EvaluationOutcome:
        """Move ``workflow`` as far forward as it can go right now.

        The caller must hold the evaluation lock.
        """
        if not workflow.state.is_active:
            return EvaluationOutcome.NO_OP

        definition = self._registry.get(
            workflow.definition_key, workflow.definition_version
        )

        if workflow.state == WorkflowState.PENDING:
            first = definition.first_step()
            workflow.start()
            if first is not None:
                workflow.advance_to_step(first.key)
            await self._workflows.save(workflow)
            logger.info(f"Started workflow_id={workflow.id} ({definition.key})")
            await self._events.dispatch(WorkflowStarted(workflow_id=workflow.id))
            if first is None:
                return await self._succeed(workflow)

        while True:
            step = definition.get_step_or_fail(workflow.current_step_key)
            run = await self._step_runs.find_latest_by_workflow_id_and_step_key(
                workflow.id, step.key
            )

            if run is None:
                result = await self._dispatcher.dispatch_step_with_result(workflow, step)
                if result.was_skipped or self._completes_immediately(result.step_run):
                    continue
                return EvaluationOutcome.STEP_DISPATCHED

            if run.status in (StepStatus.PENDING, StepStatus.POLLING):
                return EvaluationOutcome.WAITING

            if run.status == StepStatus.RUNNING:
                finalization = await self._finalizer.try_finalize(run, step)
                if finalization.outcome == FinalizationOutcome.NOT_READY:
                    return EvaluationOutcome.WAITING
                run = finalization.step_run

            if run.status == StepStatus.FAILED:
                if retry_failed_step:
                    retry_failed_step = False
                    new_run = await self._dispatcher.retry_step(workflow, step)
                    if self._completes_immediately(new_run):
                        continue
                    return EvaluationOutcome.STEP_DISPATCHED

                handled = await self._failure_policy.handle(workflow, run, step)
                if handled.action == FailurePolicyAction.STEP_RETRIED:
                    if self._completes_immediately(handled.step_run):
                        continue
                    return EvaluationOutcome.STEP_DISPATCHED
                if handled.action == FailurePolicyAction.WORKFLOW_PAUSED:
                    return EvaluationOutcome.PAUSED
                if handled.action == FailurePolicyAction.WORKFLOW_FAILED:
                    return EvaluationOutcome.FAILED
            elif (
                run.status == StepStatus.SUCCEEDED
                and step.pause_trigger is not None
                and workflow.trigger_resumed_step_key != step.key
            ):
                await self._pause_for_trigger(workflow, step)
                return EvaluationOutcome.PAUSED

            # succeeded, skipped or failure absorbed by policy
            next_step = definition.next_step(step.key)
            if next_step is None:
                return await self._succeed(workflow)
            workflow.advance_to_step(next_step.key)
            workflow.trigger_resumed_step_key = None
            await self._workflows.save(workflow)
            logger.debug(f"Advanced workflow_id={workflow.id} to step {next_step.key}")

    @staticmethod
    def _completes_immediately(run: StepRun) -> bool:
        """A fan-out run without items needs no job reports to finish."""
        return run.status == StepStatus.RUNNING and run.total_job_count == 0

    async def _succeed(self, workflow: WorkflowInstance) -> EvaluationOutcome:
        workflow.succeed()
        await self._workflows.save(workflow)
        logger.info(f"Workflow succeeded workflow_id={workflow.id}")
        await self._events.dispatch(WorkflowSucceeded(workflow_id=workflow.id))
        return EvaluationOutcome.SUCCEEDED

    async def _pause_for_trigger(
        self, workflow: WorkflowInstance, step: StepDefinition
    ) -> None:
        trigger = step.pause_trigger
        now = utcnow()
        reason = f'Awaiting trigger "{trigger.trigger_key}" after step "{step.key}"'
        workflow.pause(
            reason,
            trigger_key=trigger.trigger_key,
            trigger_timeout_at=(
                now + timedelta(seconds=trigger.timeout_seconds)
                if trigger.timeout_seconds
                else None
            ),
            scheduled_resume_at=(
                now + timedelta(seconds=trigger.scheduled_resume_seconds)
                if trigger.scheduled_resume_seconds
                else None
            ),
        )
        await self._workflows.save(workflow)
        logger.info(f"Paused workflow_id={workflow.id}: {reason}")
        await self._events.dispatch(
            WorkflowPaused(
                workflow_id=workflow.id, reason=reason, trigger_key=trigger.trigger_key
            )
        )

    def definition_for(self, workflow: WorkflowInstance) -> WorkflowDefinition:
        return self._registry.get(workflow.definition_key, workflow.definition_version)
