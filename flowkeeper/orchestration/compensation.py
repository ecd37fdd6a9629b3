"""Saga rollback of previously executed steps."""

from __future__ import annotations

import logging
import uuid
from typing import Awaitable, Callable, Iterable, List, Optional

from ..definition.models import StepDefinition, WorkflowDefinition
from ..definition.registry import WorkflowDefinitionRegistry
from ..dispatch import JobDispatchService
from ..domain.events import (
    CompensationCompleted,
    CompensationFailed,
    CompensationStarted,
    CompensationStepFailed,
    CompensationStepStarted,
    CompensationStepSucceeded,
)
from ..domain.models import CompensationRun, CompensationScope, WorkflowInstance
from ..domain.states import CompensationRunStatus, WorkflowState
from ..events import EventBus
from ..persistence.repository import CompensationRunRepository, WorkflowRepository
from .advancer import WorkflowAdvancer

logger = logging.getLogger(__name__)

CompletionListener = Callable[[WorkflowInstance], Awaitable[None]]


class CompensationExecutor:
    """Run compensation jobs one at a time, most recent step first.

    Runs carry an ``execution_order``; the next run to execute is always the
    pending one with the lowest order, and nothing is dispatched while another
    run of the workflow is still running.

    Every public operation holds the workflow's evaluation lock while it
    changes state and raises :class:`WorkflowLockedError` when another
    evaluator has it; callers retry. Completion listeners run after the lock
    has been released.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        compensations: CompensationRunRepository,
        registry: WorkflowDefinitionRegistry,
        jobs: JobDispatchService,
        advancer: WorkflowAdvancer,
        events: EventBus,
    ) -> None:
        self._workflows = workflows
        self._compensations = compensations
        self._registry = registry
        self._jobs = jobs
        self._advancer = advancer
        self._events = events
        self._listeners: List[CompletionListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call ``listener`` whenever a workflow reaches ``compensated``."""
        self._listeners.append(listener)

    @staticmethod
    def build_plan(
        definition: WorkflowDefinition,
        workflow: WorkflowInstance,
        scope: CompensationScope,
        step_keys: Optional[Iterable[str]] = None,
    ) -> list[StepDefinition]:
        """Steps to compensate, in reverse definition order.

        Explicit ``step_keys`` narrow the plan for any scope. Without them a
        partial or from-step scope covers every compensable step.
        """
        compensable = [s for s in definition.steps if s.has_compensation]
        if step_keys is not None:
            selected = set(step_keys)
        elif scope == CompensationScope.FAILED_STEP_ONLY:
            selected = {workflow.current_step_key} if workflow.current_step_key else set()
        else:
            selected = {s.key for s in compensable}
        return [s for s in reversed(compensable) if s.key in selected]

    async def initiate(
        self,
        workflow_id: str,
        scope: CompensationScope = CompensationScope.ALL,
        step_keys: Optional[Iterable[str]] = None,
        initiated_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WorkflowInstance:
        """Start a compensation episode for a failed workflow.

        Raises:
            WorkflowLockedError: If another evaluator holds the workflow lock.
            InvalidStateTransitionError: If the workflow is not failed.
        """
        async with self._advancer.locked(workflow_id) as workflow:
            await self.initiate_locked(workflow, scope, step_keys, initiated_by, reason)
        return await self._after_release(workflow_id)

    async def initiate_locked(
        self,
        workflow: WorkflowInstance,
        scope: CompensationScope = CompensationScope.ALL,
        step_keys: Optional[Iterable[str]] = None,
        initiated_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WorkflowInstance:
        """Same as :meth:`initiate` for a caller that already holds the lock.

        Completion listeners are not called; an episode with nothing to
        compensate is visible as ``compensated`` on the returned workflow.
        """
        definition = self._registry.get(
            workflow.definition_key, workflow.definition_version
        )
        plan = self.build_plan(
            definition, workflow, scope, list(step_keys) if step_keys is not None else None
        )

        workflow.start_compensation()
        await self._workflows.save(workflow)
        logger.info(
            f"Compensation started for workflow_id={workflow.id}: "
            f"{[s.key for s in plan] or 'nothing to compensate'}"
        )
        await self._events.dispatch(
            CompensationStarted(
                workflow_id=workflow.id,
                scope=scope.value,
                step_keys=[s.key for s in plan],
                initiated_by=initiated_by,
                reason=reason,
            )
        )

        if not plan:
            return await self._complete(workflow)

        for order, step in enumerate(plan, start=1):
            await self._compensations.save(
                CompensationRun(
                    workflow_id=workflow.id,
                    step_key=step.key,
                    compensation_job=step.compensation,
                    execution_order=order,
                    max_attempts=step.compensation_retry.max_attempts,
                )
            )
        await self._dispatch_next(workflow, definition)
        return await self._workflows.find_or_fail(workflow.id)

    async def record_success(
        self, run_id: str, job_uuid: Optional[str] = None
    ) -> WorkflowInstance:
        """Mark the running compensation as succeeded and continue with the next one.

        Reports for runs that are no longer running, or for an older attempt
        than ``job_uuid`` identifies, are ignored.
        """
        workflow_id = (await self._compensations.find_or_fail(run_id)).workflow_id
        async with self._advancer.locked(workflow_id) as workflow:
            run = await self._compensations.find_or_fail(run_id)
            if self._is_current(run, job_uuid):
                run.succeed()
                await self._compensations.save(run)
                logger.info(f"Compensated step {run.step_key} for workflow_id={workflow_id}")
                await self._events.dispatch(
                    CompensationStepSucceeded(
                        workflow_id=workflow_id,
                        compensation_run_id=run.id,
                        step_key=run.step_key,
                    )
                )
                await self._dispatch_next(workflow)
        return await self._after_release(workflow_id)

    async def record_failure(
        self,
        run_id: str,
        message: Optional[str] = None,
        trace: Optional[str] = None,
        job_uuid: Optional[str] = None,
    ) -> WorkflowInstance:
        """Retry the compensation while attempts remain, else fail the episode."""
        workflow_id = (await self._compensations.find_or_fail(run_id)).workflow_id
        async with self._advancer.locked(workflow_id) as workflow:
            run = await self._compensations.find_or_fail(run_id)
            if self._is_current(run, job_uuid):
                await self._fail_run(workflow, run, message, trace)
        return await self._after_release(workflow_id)

    async def _fail_run(
        self,
        workflow: WorkflowInstance,
        run: CompensationRun,
        message: Optional[str],
        trace: Optional[str],
    ) -> None:
        run.fail(message, trace)
        will_retry = run.can_retry
        await self._compensations.save(run)
        await self._events.dispatch(
            CompensationStepFailed(
                workflow_id=run.workflow_id,
                compensation_run_id=run.id,
                step_key=run.step_key,
                attempt=run.attempt,
                failure_message=message,
                will_retry=will_retry,
            )
        )

        if will_retry:
            logger.info(
                f"Retrying compensation of step {run.step_key} "
                f"(attempt {run.attempt}/{run.max_attempts}) for workflow_id={run.workflow_id}"
            )
            run.reset_for_retry()
            await self._compensations.save(run)
            await self._dispatch_next(workflow)
            return

        failure = f'Compensation of step "{run.step_key}" failed: {message or "Unknown error"}'
        workflow.fail_compensation(failure)
        await self._workflows.save(workflow)
        logger.warning(f"{failure} (workflow_id={workflow.id})")
        await self._events.dispatch(
            CompensationFailed(
                workflow_id=workflow.id, step_key=run.step_key, failure_message=message
            )
        )

    async def skip_step(self, run_id: str) -> WorkflowInstance:
        """Skip a failed compensation and continue with the remaining ones."""
        workflow_id = (await self._compensations.find_or_fail(run_id)).workflow_id
        async with self._advancer.locked(workflow_id) as workflow:
            run = await self._compensations.find_or_fail(run_id)
            run.skip()
            await self._compensations.save(run)
            if workflow.state == WorkflowState.COMPENSATION_FAILED:
                workflow.retry_compensation()
                await self._workflows.save(workflow)
            logger.info(f"Skipped compensation of step {run.step_key} for workflow_id={workflow_id}")
            await self._dispatch_next(workflow)
        return await self._after_release(workflow_id)

    async def skip_remaining(self, workflow_id: str) -> WorkflowInstance:
        """Skip every pending or failed compensation and finish the episode."""
        async with self._advancer.locked(workflow_id) as workflow:
            remaining = await self._compensations.find_by_workflow_and_status(
                workflow_id, [CompensationRunStatus.PENDING, CompensationRunStatus.FAILED]
            )
            for run in remaining:
                run.skip()
                await self._compensations.save(run)
            if workflow.state == WorkflowState.COMPENSATION_FAILED:
                workflow.retry_compensation()
            logger.info(
                f"Skipped {len(remaining)} remaining compensations for workflow_id={workflow_id}"
            )
            await self._complete(workflow)
        return await self._after_release(workflow_id)

    async def retry_compensation(self, workflow_id: str) -> WorkflowInstance:
        """Give failed compensations another attempt and resume the episode."""
        async with self._advancer.locked(workflow_id) as workflow:
            workflow.retry_compensation()
            failed = await self._compensations.find_by_workflow_and_status(
                workflow_id, [CompensationRunStatus.FAILED]
            )
            for run in failed:
                run.reset_for_retry()
                await self._compensations.save(run)
            await self._workflows.save(workflow)
            logger.info(f"Retrying compensation for workflow_id={workflow_id}")
            await self._dispatch_next(workflow)
        return await self._after_release(workflow_id)

    async def notify_completed(self, workflow: WorkflowInstance) -> None:
        """Run the completion listeners for a compensated workflow.

        Meant for callers of :meth:`initiate_locked` once they released the lock.
        """
        if workflow.state != WorkflowState.COMPENSATED:
            return
        for listener in self._listeners:
            await listener(workflow)

    # ------------------------------------------------------------------
    @staticmethod
    def _is_current(run: CompensationRun, job_uuid: Optional[str]) -> bool:
        if run.status != CompensationRunStatus.RUNNING:
            logger.debug(f"Ignoring report for compensation run {run.id} in state {run.status.value}")
            return False
        if job_uuid is not None and job_uuid != run.current_job_uuid:
            logger.debug(f"Ignoring stale report {job_uuid} for compensation run {run.id}")
            return False
        return True

    async def _after_release(self, workflow_id: str) -> WorkflowInstance:
        await self.notify_completed(await self._workflows.find_or_fail(workflow_id))
        return await self._workflows.find_or_fail(workflow_id)

    async def _dispatch_next(
        self,
        workflow: WorkflowInstance,
        definition: Optional[WorkflowDefinition] = None,
    ) -> None:
        if workflow.state != WorkflowState.COMPENSATING:
            return
        running = await self._compensations.find_by_workflow_and_status(
            workflow.id, [CompensationRunStatus.RUNNING]
        )
        if running:
            return

        run = await self._compensations.find_next_pending(workflow.id)
        if run is None:
            if await self._compensations.all_terminal(
                workflow.id
            ) and await self._compensations.all_successful(workflow.id):
                await self._complete(workflow)
            return

        definition = definition or self._registry.get(
            workflow.definition_key, workflow.definition_version
        )
        step = definition.get_step_or_fail(run.step_key)
        run.start(str(uuid.uuid4()))
        await self._compensations.save(run)
        await self._jobs.dispatch_compensation_job(
            run, {"payload": workflow.payload}, step.queue
        )
        await self._events.dispatch(
            CompensationStepStarted(
                workflow_id=workflow.id,
                compensation_run_id=run.id,
                step_key=run.step_key,
                attempt=run.attempt,
            )
        )

    async def _complete(self, workflow: WorkflowInstance) -> WorkflowInstance:
        workflow.complete_compensation()
        await self._workflows.save(workflow)
        logger.info(f"Compensation completed for workflow_id={workflow.id}")
        await self._events.dispatch(CompensationCompleted(workflow_id=workflow.id))
        return await self._workflows.find_or_fail(workflow.id)
