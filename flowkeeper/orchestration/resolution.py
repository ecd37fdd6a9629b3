"""Workflow-level failure resolution: automatic strategies and manual decisions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..definition.models import FailureResolutionConfig, ResolutionStrategy
from ..definition.registry import WorkflowDefinitionRegistry
from ..domain.events import (
    AutoRetryExhausted,
    AutoRetryScheduled,
    ResolutionDecisionMade,
    WorkflowAwaitingResolution,
    WorkflowCancelled,
    WorkflowFailed,
    WorkflowRetried,
)
from ..domain.models import (
    CompensationScope,
    ResolutionDecisionRecord,
    ResolutionDecisionType,
    RetryMode,
    WorkflowInstance,
)
from ..domain.states import WorkflowState
from ..errors import WorkflowLockedError, WorkflowNotFailedError
from ..events import EventBus
from ..persistence.repository import ResolutionDecisionRepository, WorkflowRepository
from ..utils.time import utcnow
from .advancer import WorkflowAdvancer
from .compensation import CompensationExecutor
from .retry_from_step import RetryFromStepRequest, RetryFromStepService

logger = logging.getLogger(__name__)


class FailureResolutionHandler:
    """Decide what happens to a workflow once it has failed."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        decisions: ResolutionDecisionRepository,
        registry: WorkflowDefinitionRegistry,
        advancer: WorkflowAdvancer,
        compensation: CompensationExecutor,
        retry_from_step: RetryFromStepService,
        events: EventBus,
    ) -> None:
        self._workflows = workflows
        self._decisions = decisions
        self._registry = registry
        self._advancer = advancer
        self._compensation = compensation
        self._retry_from_step = retry_from_step
        self._events = events

    async def on_workflow_failed(self, event: WorkflowFailed) -> None:
        # dispatched by whoever failed the workflow, which holds its lock
        workflow = await self._workflows.find_or_fail(event.workflow_id)
        await self._apply_strategy_locked(workflow)

    def _config_for(self, workflow: WorkflowInstance) -> FailureResolutionConfig:
        definition = self._registry.get(
            workflow.definition_key, workflow.definition_version
        )
        return definition.failure_resolution

    async def apply_strategy(self, workflow_id: str) -> WorkflowInstance:
        """Apply the definition's configured strategy to a failed workflow.

        Raises:
            WorkflowLockedError: If another evaluator holds the workflow lock.
        """
        async with self._advancer.locked(workflow_id) as workflow:
            await self._apply_strategy_locked(workflow)
        workflow = await self._workflows.find_or_fail(workflow_id)
        await self._compensation.notify_completed(workflow)
        return await self._workflows.find_or_fail(workflow_id)

    async def _apply_strategy_locked(self, workflow: WorkflowInstance) -> WorkflowInstance:
        if workflow.state != WorkflowState.FAILED:
            return workflow

        config = self._config_for(workflow)
        if config.strategy == ResolutionStrategy.AUTO_RETRY:
            return await self._auto_retry(workflow, config)
        return await self._apply(workflow, config.strategy, config)

    async def _apply(
        self,
        workflow: WorkflowInstance,
        strategy: Optional[ResolutionStrategy],
        config: FailureResolutionConfig,
    ) -> WorkflowInstance:
        if strategy == ResolutionStrategy.AUTO_COMPENSATE:
            return await self._compensation.initiate_locked(
                workflow,
                config.compensation_scope,
                initiated_by="auto-compensate",
                reason=workflow.failure_message,
            )
        if strategy == ResolutionStrategy.AWAIT_DECISION:
            logger.info(f"Workflow awaiting resolution decision workflow_id={workflow.id}")
            await self._events.dispatch(
                WorkflowAwaitingResolution(
                    workflow_id=workflow.id,
                    failure_code=workflow.failure_code,
                    failure_message=workflow.failure_message,
                )
            )
        return workflow

    async def _auto_retry(
        self, workflow: WorkflowInstance, config: FailureResolutionConfig
    ) -> WorkflowInstance:
        auto_retry = config.auto_retry
        if workflow.auto_retry_count >= auto_retry.max_retries:
            logger.warning(
                f"Auto-retry exhausted after {workflow.auto_retry_count} retries "
                f"for workflow_id={workflow.id}"
            )
            await self._events.dispatch(
                AutoRetryExhausted(
                    workflow_id=workflow.id,
                    retry_count=workflow.auto_retry_count,
                    max_retries=auto_retry.max_retries,
                )
            )
            if auto_retry.fallback == ResolutionStrategy.AUTO_RETRY:
                return workflow
            return await self._apply(workflow, auto_retry.fallback, config)

        retry_number = workflow.auto_retry_count + 1
        delay = auto_retry.get_delay_for_retry(retry_number)
        scheduled_at = utcnow() + timedelta(seconds=delay)
        workflow.schedule_auto_retry(scheduled_at)
        await self._workflows.save(workflow)
        logger.info(
            f"Scheduled auto-retry {retry_number} in {delay}s for workflow_id={workflow.id}"
        )
        await self._events.dispatch(
            AutoRetryScheduled(
                workflow_id=workflow.id,
                retry_number=retry_number,
                delay_seconds=delay,
                scheduled_at=scheduled_at,
            )
        )
        return workflow

    async def process_auto_retries(self, now: Optional[datetime] = None) -> list[str]:
        """Retry every failed workflow whose auto-retry time has passed.

        Returns the ids of the workflows that were retried.
        """
        now = now or utcnow()
        retried: list[str] = []
        for candidate in await self._workflows.find_due_auto_retries(now):
            try:
                async with self._advancer.locked(candidate.id) as workflow:
                    if workflow.state != WorkflowState.FAILED or workflow.next_auto_retry_at is None:
                        continue
                    workflow.clear_auto_retry()
                    workflow.retry()
                    await self._workflows.save(workflow)
                    logger.info(f"Auto-retrying workflow_id={workflow.id}")
                    await self._events.dispatch(WorkflowRetried(workflow_id=workflow.id))
                    await self._advancer.advance(workflow, retry_failed_step=True)
                    retried.append(workflow.id)
            except WorkflowLockedError:
                logger.debug(f"Auto-retry deferred, workflow_id={candidate.id} is locked")
        return retried

    async def apply_decision(
        self,
        workflow_id: str,
        decision: ResolutionDecisionType,
        decided_by: Optional[str] = None,
        reason: Optional[str] = None,
        retry_from_step_key: Optional[str] = None,
        compensate_step_keys: Optional[Iterable[str]] = None,
    ) -> WorkflowInstance:
        """Apply a manual decision to a failed workflow.

        The decision is only recorded once the workflow lock is held and the
        decision can be carried out.

        Raises:
            WorkflowNotFailedError: If the workflow is not failed.
            WorkflowLockedError: If another evaluator holds the workflow lock.
            StepNotFoundError: If ``retry_from_step_key`` is not part of the definition.
        """
        async with self._advancer.locked(workflow_id) as workflow:
            if workflow.state != WorkflowState.FAILED:
                raise WorkflowNotFailedError(workflow_id, workflow.state.value)

            rewind_step_key = retry_from_step_key or workflow.current_step_key
            if decision == ResolutionDecisionType.RETRY_FROM_STEP:
                self._advancer.definition_for(workflow).get_step_or_fail(rewind_step_key)

            keys = tuple(compensate_step_keys or ())
            await self._decisions.save(
                ResolutionDecisionRecord(
                    workflow_id=workflow_id,
                    decision=decision,
                    decided_by=decided_by,
                    reason=reason,
                    retry_from_step_key=retry_from_step_key,
                    compensate_step_keys=keys,
                )
            )
            logger.info(
                f"Resolution decision {decision.value} by {decided_by or 'unknown'} "
                f"for workflow_id={workflow_id}"
            )
            await self._events.dispatch(
                ResolutionDecisionMade(
                    workflow_id=workflow_id,
                    decision=decision.value,
                    decided_by=decided_by,
                    reason=reason,
                )
            )

            if decision == ResolutionDecisionType.RETRY:
                workflow.reset_auto_retry()
                workflow.retry()
                await self._workflows.save(workflow)
                await self._events.dispatch(WorkflowRetried(workflow_id=workflow_id))
                await self._advancer.advance(workflow, retry_failed_step=True)
            elif decision == ResolutionDecisionType.RETRY_FROM_STEP:
                await self._retry_from_step.execute_locked(
                    workflow,
                    RetryFromStepRequest(
                        workflow_id=workflow_id,
                        retry_from_step_key=rewind_step_key,
                        retry_mode=RetryMode.RETRY_ONLY,
                        initiated_by=decided_by,
                        reason=reason,
                    ),
                )
            elif decision == ResolutionDecisionType.COMPENSATE:
                await self._compensation.initiate_locked(
                    workflow,
                    CompensationScope.PARTIAL if keys else CompensationScope.ALL,
                    step_keys=keys or None,
                    initiated_by=decided_by,
                    reason=reason,
                )
            elif decision == ResolutionDecisionType.CANCEL:
                workflow.cancel()
                await self._workflows.save(workflow)
                await self._events.dispatch(WorkflowCancelled(workflow_id=workflow_id))
            elif decision == ResolutionDecisionType.MARK_RESOLVED:
                workflow.reset_auto_retry()
                await self._workflows.save(workflow)

        await self._compensation.notify_completed(await self._workflows.find_or_fail(workflow_id))
        return await self._workflows.find_or_fail(workflow_id)
