"""Management operations exposed to API handlers and operators."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from ..definition.registry import WorkflowDefinitionRegistry
from ..domain.events import (
    WorkflowCancelled,
    WorkflowCreated,
    WorkflowPaused,
    WorkflowResumed,
    WorkflowRetried,
)
from ..domain.models import ResolutionDecisionType, WorkflowInstance
from ..events import EventBus
from ..persistence.repository import WorkflowRepository
from .advancer import WorkflowAdvancer
from .resolution import FailureResolutionHandler

logger = logging.getLogger(__name__)


class WorkflowManager:
    """Start, pause, resume, cancel and retry workflows.

    State changes happen under the evaluation lock; an operation that finds
    the lock held raises ``WorkflowLockedError`` and may simply be retried.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        registry: WorkflowDefinitionRegistry,
        advancer: WorkflowAdvancer,
        resolution: FailureResolutionHandler,
        events: EventBus,
    ) -> None:
        self._workflows = workflows
        self._registry = registry
        self._advancer = advancer
        self._resolution = resolution
        self._events = events

    async def start(
        self,
        definition_key: str,
        payload: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create a workflow for the definition and run its first evaluation."""
        definition = self._registry.get(definition_key, version)
        workflow = WorkflowInstance(
            definition_key=definition.key,
            definition_version=str(definition.version),
            payload=payload or {},
        )
        if workflow_id is not None:
            workflow.id = workflow_id
        await self._workflows.save(workflow)
        logger.info(
            f"Created workflow_id={workflow.id} for {definition.key}@{definition.version}"
        )
        await self._events.dispatch(
            WorkflowCreated(
                workflow_id=workflow.id,
                definition_key=workflow.definition_key,
                definition_version=workflow.definition_version,
            )
        )
        result = await self._advancer.evaluate(workflow.id)
        return result.workflow

    async def get(self, workflow_id: str) -> WorkflowInstance:
        return await self._workflows.find_or_fail(workflow_id)

    async def pause(self, workflow_id: str, reason: str = "Paused by operator") -> WorkflowInstance:
        async with self._advancer.locked(workflow_id) as workflow:
            workflow.pause(reason)
            await self._workflows.save(workflow)
            logger.info(f"Paused workflow_id={workflow_id}: {reason}")
            await self._events.dispatch(WorkflowPaused(workflow_id=workflow_id, reason=reason))
        return await self._workflows.find_or_fail(workflow_id)

    async def resume(self, workflow_id: str) -> WorkflowInstance:
        """Resume a paused workflow; a failed current step is dispatched again."""
        async with self._advancer.locked(workflow_id) as workflow:
            workflow.resume()
            await self._workflows.save(workflow)
            logger.info(f"Resumed workflow_id={workflow_id}")
            await self._events.dispatch(WorkflowResumed(workflow_id=workflow_id))
            await self._advancer.advance(workflow, retry_failed_step=True)
        return await self._workflows.find_or_fail(workflow_id)

    async def cancel(self, workflow_id: str) -> WorkflowInstance:
        """Cancel the workflow.

        Raises:
            WorkflowAlreadyCancelledError: If the workflow is already cancelled.
        """
        async with self._advancer.locked(workflow_id) as workflow:
            workflow.cancel()
            await self._workflows.save(workflow)
            logger.info(f"Cancelled workflow_id={workflow_id}")
            await self._events.dispatch(WorkflowCancelled(workflow_id=workflow_id))
        return await self._workflows.find_or_fail(workflow_id)

    async def retry(self, workflow_id: str) -> WorkflowInstance:
        """Move a failed workflow back to running and dispatch its failed step again."""
        async with self._advancer.locked(workflow_id) as workflow:
            workflow.retry()
            await self._workflows.save(workflow)
            logger.info(f"Retrying workflow_id={workflow_id}")
            await self._events.dispatch(WorkflowRetried(workflow_id=workflow_id))
            await self._advancer.advance(workflow, retry_failed_step=True)
        return await self._workflows.find_or_fail(workflow_id)

    async def resolve_failure(
        self,
        workflow_id: str,
        decision: ResolutionDecisionType,
        decided_by: Optional[str] = None,
        reason: Optional[str] = None,
        retry_from_step_key: Optional[str] = None,
        compensate_step_keys: Optional[Iterable[str]] = None,
    ) -> WorkflowInstance:
        return await self._resolution.apply_decision(
            workflow_id,
            decision,
            decided_by=decided_by,
            reason=reason,
            retry_from_step_key=retry_from_step_key,
            compensate_step_keys=compensate_step_keys,
        )
