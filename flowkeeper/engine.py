"""Wiring of the orchestration services around one set of repositories."""

from __future__ import annotations

import logging
from typing import Optional

from .config import FlowkeeperConfig, load_config
from .definition.registry import WorkflowDefinitionRegistry
from .dispatch import JobDispatchService
from .domain.events import WorkflowFailed
from .events import EventBus
from .orchestration.advancer import WorkflowAdvancer
from .orchestration.compensation import CompensationExecutor
from .orchestration.dispatcher import StepDispatcher
from .orchestration.failure_policy import FailurePolicyHandler
from .orchestration.finalizer import StepFinalizer
from .orchestration.jobs import JobLifecycleService
from .orchestration.management import WorkflowManager
from .orchestration.polling import PollResultHandler
from .orchestration.resolution import FailureResolutionHandler
from .orchestration.retry_from_step import RetryFromStepService
from .orchestration.timeouts import StepTimeoutHandler
from .orchestration.triggers import TriggerHandler
from .persistence import get_repositories
from .persistence.repository import Repositories
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """All orchestration services sharing one store, transport and event bus."""

    def __init__(
        self,
        registry: WorkflowDefinitionRegistry,
        repositories: Optional[Repositories] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[FlowkeeperConfig] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config or FlowkeeperConfig()
        self.registry = registry
        self.repositories = repositories or get_repositories(config=self.config)
        self.transport = transport or get_transport(config=self.config)
        self.events = events or EventBus()

        repos = self.repositories
        self.jobs = JobDispatchService(
            self.transport, repos.jobs, self.events, self.config.queue.default_queue
        )
        self.dispatcher = StepDispatcher(repos.step_runs, repos.outputs, self.jobs, self.events)
        self.finalizer = StepFinalizer(repos.step_runs, repos.jobs, self.events)
        self.failure_policy = FailurePolicyHandler(
            repos.workflows,
            repos.step_runs,
            self.dispatcher,
            self.events,
            default_retry=self.config.retry,
        )
        self.advancer = WorkflowAdvancer(
            repos.workflows,
            repos.step_runs,
            registry,
            self.dispatcher,
            self.finalizer,
            self.failure_policy,
            self.events,
            lock_timeout_seconds=self.config.locking.timeout_seconds,
        )
        self.compensation = CompensationExecutor(
            repos.workflows,
            repos.compensations,
            registry,
            self.jobs,
            self.advancer,
            self.events,
        )
        self.retry_from_step = RetryFromStepService(
            repos.workflows,
            repos.step_runs,
            repos.outputs,
            self.advancer,
            self.dispatcher,
            self.compensation,
            self.events,
        )
        self.resolution = FailureResolutionHandler(
            repos.workflows,
            repos.decisions,
            registry,
            self.advancer,
            self.compensation,
            self.retry_from_step,
            self.events,
        )
        self.manager = WorkflowManager(
            repos.workflows, registry, self.advancer, self.resolution, self.events
        )
        self.job_lifecycle = JobLifecycleService(
            repos.jobs,
            repos.step_runs,
            repos.outputs,
            self.advancer,
            self.events,
            zombie_threshold_minutes=self.config.zombie_detection.threshold_minutes,
        )
        self.polling = PollResultHandler(
            repos.workflows,
            repos.step_runs,
            repos.jobs,
            repos.outputs,
            self.dispatcher,
            self.advancer,
            self.events,
        )
        self.triggers = TriggerHandler(repos.workflows, repos.outputs, self.advancer, self.events)
        self.step_timeouts = StepTimeoutHandler(
            repos.workflows,
            repos.step_runs,
            self.advancer,
            self.events,
            default_timeout_seconds=self.config.step_timeouts.default_seconds,
        )

        self.events.subscribe(WorkflowFailed, self.resolution.on_workflow_failed)
        self.compensation.add_completion_listener(self.retry_from_step.on_compensation_completed)

    @classmethod
    def from_config(
        cls,
        registry: WorkflowDefinitionRegistry,
        config_path: Optional[str] = None,
    ) -> "WorkflowEngine":
        config = load_config(config_path)
        logger.debug(
            f"Building engine with {config.transport.backend} transport "
            f"and {config.database_url or 'in-memory'} storage"
        )
        return cls(registry, config=config)

    async def tick(self) -> dict[str, int]:
        """Run every time-based check once. Meant to be called by a scheduler."""
        counts = {
            "auto_retries": len(await self.resolution.process_auto_retries()),
            "polls": len(await self.polling.dispatch_due_polls()),
            "trigger_timeouts": len(await self.triggers.check_trigger_timeouts()),
            "scheduled_resumes": len(await self.triggers.process_scheduled_resumes()),
        }
        if self.config.zombie_detection.enabled:
            counts["zombies"] = len(await self.job_lifecycle.detect_zombie_jobs())
        if self.config.step_timeouts.enabled:
            counts["step_timeouts"] = len(await self.step_timeouts.check_step_timeouts())
        return counts

    def close(self) -> None:
        self.repositories.close()
