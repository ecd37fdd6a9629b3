"""External triggers that resume workflows paused after a step."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from ..definition.models import PauseTrigger, TriggerTimeoutPolicy
from ..domain.events import (
    TriggerReceived,
    TriggerTimedOut,
    WorkflowFailed,
    WorkflowResumed,
)
from ..domain.models import StepOutput, WorkflowInstance
from ..domain.states import WorkflowState
from ..errors import WorkflowLockedError
from ..events import EventBus
from ..persistence.repository import StepOutputRepository, WorkflowRepository
from ..utils.time import utcnow
from .advancer import WorkflowAdvancer

logger = logging.getLogger(__name__)

TRIGGER_TIMEOUT = "TRIGGER_TIMEOUT"


class TriggerOutcome(str, Enum):
    RESUMED = "resumed"
    NOT_AWAITING = "not_awaiting"
    WORKFLOW_TERMINAL = "workflow_terminal"


class TriggerResult(BaseModel):
    outcome: TriggerOutcome
    workflow: WorkflowInstance

    @property
    def resumed(self) -> bool:
        return self.outcome == TriggerOutcome.RESUMED


class TriggerHandler:
    """Resume, time out or reschedule workflows that wait for a trigger."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        outputs: StepOutputRepository,
        advancer: WorkflowAdvancer,
        events: EventBus,
    ) -> None:
        self._workflows = workflows
        self._outputs = outputs
        self._advancer = advancer
        self._events = events

    def _trigger_for(self, workflow: WorkflowInstance) -> Optional[PauseTrigger]:
        if workflow.current_step_key is None:
            return None
        step = self._advancer.definition_for(workflow).get_step(workflow.current_step_key)
        return step.pause_trigger if step is not None else None

    @staticmethod
    def _awaits(workflow: WorkflowInstance, trigger_key: str) -> bool:
        return (
            workflow.state == WorkflowState.PAUSED
            and workflow.awaiting_trigger_key == trigger_key
        )

    async def process_trigger(
        self,
        workflow_id: str,
        trigger_key: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> TriggerResult:
        """Deliver ``trigger_key`` to a workflow and resume it if it was waiting.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            WorkflowLockedError: If another evaluator holds the workflow lock.
        """
        workflow = await self._workflows.find_or_fail(workflow_id)
        if workflow.state.is_terminal:
            return TriggerResult(outcome=TriggerOutcome.WORKFLOW_TERMINAL, workflow=workflow)
        if not self._awaits(workflow, trigger_key):
            logger.info(
                f"Workflow workflow_id={workflow_id} is not awaiting trigger {trigger_key}"
            )
            return TriggerResult(outcome=TriggerOutcome.NOT_AWAITING, workflow=workflow)

        async with self._advancer.locked(workflow_id) as workflow:
            if not self._awaits(workflow, trigger_key):
                return TriggerResult(outcome=TriggerOutcome.NOT_AWAITING, workflow=workflow)

            trigger = self._trigger_for(workflow)
            if trigger is not None and trigger.payload_output and payload is not None:
                await self._outputs.put(
                    StepOutput(
                        workflow_id=workflow.id,
                        step_key=workflow.current_step_key,
                        name=trigger.payload_output,
                        value=payload,
                    )
                )
            logger.info(f"Trigger {trigger_key} received for workflow_id={workflow.id}")
            await self._events.dispatch(
                TriggerReceived(workflow_id=workflow.id, trigger_key=trigger_key)
            )
            await self._resume(workflow)

        return TriggerResult(
            outcome=TriggerOutcome.RESUMED,
            workflow=await self._workflows.find_or_fail(workflow_id),
        )

    async def check_trigger_timeouts(self, now: Optional[datetime] = None) -> list[str]:
        """Apply the timeout policy of every trigger wait that has expired.

        Returns the ids of the workflows that were handled.
        """
        now = now or utcnow()
        handled: list[str] = []
        for candidate in await self._workflows.find_trigger_timeouts_due(now):
            try:
                async with self._advancer.locked(candidate.id) as workflow:
                    if workflow.state != WorkflowState.PAUSED or workflow.awaiting_trigger_key is None:
                        continue
                    await self._time_out(workflow, now)
                    handled.append(workflow.id)
            except WorkflowLockedError:
                logger.debug(f"Trigger timeout deferred, workflow_id={candidate.id} is locked")
        return handled

    async def process_scheduled_resumes(self, now: Optional[datetime] = None) -> list[str]:
        """Resume paused workflows whose scheduled resume time has passed."""
        now = now or utcnow()
        resumed: list[str] = []
        for candidate in await self._workflows.find_scheduled_resumes_due(now):
            try:
                async with self._advancer.locked(candidate.id) as workflow:
                    if workflow.state != WorkflowState.PAUSED:
                        continue
                    logger.info(f"Scheduled resume of workflow_id={workflow.id}")
                    await self._resume(workflow)
                    resumed.append(workflow.id)
            except WorkflowLockedError:
                logger.debug(f"Scheduled resume deferred, workflow_id={candidate.id} is locked")
        return resumed

    async def _time_out(self, workflow: WorkflowInstance, now: datetime) -> None:
        trigger = self._trigger_for(workflow)
        policy = trigger.timeout_policy if trigger else TriggerTimeoutPolicy.FAIL_WORKFLOW
        trigger_key = workflow.awaiting_trigger_key
        logger.warning(
            f"Trigger {trigger_key} timed out for workflow_id={workflow.id} ({policy.value})"
        )
        await self._events.dispatch(
            TriggerTimedOut(workflow_id=workflow.id, trigger_key=trigger_key, policy=policy.value)
        )

        if policy == TriggerTimeoutPolicy.AUTO_RESUME:
            await self._resume(workflow)
        elif policy == TriggerTimeoutPolicy.EXTEND_TIMEOUT and trigger and trigger.timeout_seconds:
            workflow.trigger_timeout_at = now + timedelta(seconds=trigger.timeout_seconds)
            workflow.updated_at = now
            await self._workflows.save(workflow)
        else:
            message = f'Trigger "{trigger_key}" was not received in time'
            # paused workflows can only fail by way of running
            workflow.resume()
            workflow.fail(TRIGGER_TIMEOUT, message)
            await self._workflows.save(workflow)
            await self._events.dispatch(
                WorkflowFailed(
                    workflow_id=workflow.id,
                    failure_code=TRIGGER_TIMEOUT,
                    failure_message=message,
                )
            )

    async def _resume(self, workflow: WorkflowInstance) -> None:
        workflow.resume()
        await self._workflows.save(workflow)
        await self._events.dispatch(WorkflowResumed(workflow_id=workflow.id))
        await self._advancer.advance(workflow)
