"""Per-step failure policies."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ..definition.models import (
    FailurePolicy,
    PollTimeoutPolicy,
    RetryConfig,
    StepDefinition,
)
from ..domain.events import StepSkipped, WorkflowFailed, WorkflowPaused
from ..domain.models import SkipReason, StepRun, WorkflowInstance
from ..events import EventBus
from ..persistence.repository import StepRunRepository, WorkflowRepository
from .dispatcher import StepDispatcher
from .finalizer import STEP_FAILED

logger = logging.getLogger(__name__)

POLL_TIMEOUT = "POLL_TIMEOUT"


class FailurePolicyAction(str, Enum):
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_PAUSED = "workflow_paused"
    STEP_RETRIED = "step_retried"
    STEP_SKIPPED = "step_skipped"


class FailurePolicyOutcome(BaseModel):
    action: FailurePolicyAction
    workflow: WorkflowInstance
    step_run: StepRun

    @property
    def absorbed(self) -> bool:
        """The failure was absorbed and the workflow may move past the step."""
        return self.action == FailurePolicyAction.STEP_SKIPPED


class FailurePolicyHandler:
    """Apply a failed step's declared failure policy.

    ``skip_step`` and ``continue_with_partial`` close the failed run as
    ``skipped`` so the advancer passes over it instead of handling the
    failure again.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        step_runs: StepRunRepository,
        dispatcher: StepDispatcher,
        events: EventBus,
        default_retry: Optional[RetryConfig] = None,
    ) -> None:
        self._workflows = workflows
        self._step_runs = step_runs
        self._dispatcher = dispatcher
        self._events = events
        self._default_retry = default_retry or RetryConfig()

    def effective_policy(self, failed_run: StepRun, step: StepDefinition) -> FailurePolicy:
        if (
            failed_run.failure_code == POLL_TIMEOUT
            and step.polling is not None
            and step.polling.timeout_policy == PollTimeoutPolicy.PAUSE_WORKFLOW
        ):
            return FailurePolicy.PAUSE_WORKFLOW
        return step.failure_policy

    async def handle(
        self, workflow: WorkflowInstance, failed_run: StepRun, step: StepDefinition
    ) -> FailurePolicyOutcome:
        policy = self.effective_policy(failed_run, step)

        if policy == FailurePolicy.RETRY_STEP:
            retry = step.retry or self._default_retry
            if not retry.has_reached_max_attempts(failed_run.attempt):
                new_run = await self._dispatcher.retry_step(
                    workflow, step, delay_seconds=retry.delay_for_attempt(failed_run.attempt)
                )
                return FailurePolicyOutcome(
                    action=FailurePolicyAction.STEP_RETRIED,
                    workflow=workflow,
                    step_run=new_run,
                )
            logger.warning(
                f"Step {step.key} exhausted {retry.max_attempts} attempts "
                f"for workflow_id={workflow.id}"
            )
            policy = FailurePolicy.FAIL_WORKFLOW

        if policy == FailurePolicy.PAUSE_WORKFLOW:
            reason = f'Step "{step.key}" failed: {failed_run.failure_message or "Unknown error"}'
            workflow.pause(reason)
            await self._workflows.save(workflow)
            logger.info(f"Paused workflow_id={workflow.id}: {reason}")
            await self._events.dispatch(WorkflowPaused(workflow_id=workflow.id, reason=reason))
            return FailurePolicyOutcome(
                action=FailurePolicyAction.WORKFLOW_PAUSED,
                workflow=workflow,
                step_run=failed_run,
            )

        if policy in (FailurePolicy.SKIP_STEP, FailurePolicy.CONTINUE_WITH_PARTIAL):
            reason = (
                SkipReason.FAILURE_SKIPPED
                if policy == FailurePolicy.SKIP_STEP
                else SkipReason.PARTIAL_SUCCESS
            )
            skipped = failed_run.model_copy(deep=True)
            skipped.skip(reason, failed_run.failure_message)
            await self._step_runs.save(skipped)
            await self._workflows.save(workflow)
            logger.info(
                f"Absorbed failure of step {step.key} ({reason.value}) for workflow_id={workflow.id}"
            )
            await self._events.dispatch(
                StepSkipped(
                    workflow_id=workflow.id,
                    step_key=step.key,
                    step_run_id=skipped.id,
                    reason=reason.value,
                    message=failed_run.failure_message,
                )
            )
            return FailurePolicyOutcome(
                action=FailurePolicyAction.STEP_SKIPPED,
                workflow=workflow,
                step_run=skipped,
            )

        return await self.fail_workflow(workflow, failed_run)

    async def fail_workflow(
        self, workflow: WorkflowInstance, failed_run: StepRun
    ) -> FailurePolicyOutcome:
        code = failed_run.failure_code or STEP_FAILED
        message = failed_run.failure_message or f'Step "{failed_run.step_key}" failed'
        workflow.fail(code, message)
        await self._workflows.save(workflow)
        logger.info(f"Workflow failed workflow_id={workflow.id}: {message}")
        await self._events.dispatch(
            WorkflowFailed(
                workflow_id=workflow.id, failure_code=code, failure_message=message
            )
        )
        return FailurePolicyOutcome(
            action=FailurePolicyAction.WORKFLOW_FAILED,
            workflow=workflow,
            step_run=failed_run,
        )
