"""Unit-of-work dispatch: job ledger bookkeeping plus transport publish."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from .contracts import DEFAULT_QUEUE, JobMessage, QueueConfig
from .domain.events import JobDispatched
from .domain.models import CompensationRun, JobRecord, StepRun
from .events import EventBus
from .persistence.repository import JobRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class JobDispatchService:
    """Service responsible for submitting jobs to workers.

    Submission is fire-and-forget: the ledger entry is written first, then
    the message is published to the topic named by the step's queue.
    """

    def __init__(
        self,
        transport: BaseTransport,
        jobs: JobRepository,
        events: EventBus,
        default_queue: str = DEFAULT_QUEUE,
    ) -> None:
        self._transport = transport
        self._jobs = jobs
        self._events = events
        self.default_queue = default_queue

    async def dispatch_step_job(
        self,
        step_run: StepRun,
        job_name: str,
        arguments: Dict[str, Any],
        queue: QueueConfig,
        kind: str = "step",
        delay_seconds: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
    ) -> JobRecord:
        """Record and publish one job belonging to ``step_run``."""
        topic = queue.topic(self.default_queue)
        job = JobRecord(
            workflow_id=step_run.workflow_id,
            step_run_id=step_run.id,
            step_key=step_run.step_key,
            job_name=job_name,
            queue=topic,
            attempt=step_run.attempt,
        )
        await self._jobs.save(job)
        message = JobMessage(
            kind=kind,
            job_uuid=job.job_uuid,
            job_name=job_name,
            workflow_id=step_run.workflow_id,
            step_key=step_run.step_key,
            step_run_id=step_run.id,
            attempt=step_run.attempt,
            arguments=arguments,
            connection=queue.connection,
            delay_seconds=queue.delay_seconds if delay_seconds is None else delay_seconds,
            timeout_seconds=timeout_seconds,
        )
        await self._publish(topic, message)
        await self._events.dispatch(
            JobDispatched(
                workflow_id=step_run.workflow_id,
                step_run_id=step_run.id,
                job_uuid=job.job_uuid,
                job_name=job_name,
                queue=topic,
            )
        )
        return job

    async def dispatch_compensation_job(
        self,
        run: CompensationRun,
        arguments: Dict[str, Any],
        queue: QueueConfig,
    ) -> str:
        """Publish the compensation job of ``run`` and return its job uuid.

        ``run.current_job_uuid`` must already identify the attempt.
        """
        topic = queue.topic(self.default_queue)
        job_uuid = run.current_job_uuid or str(uuid.uuid4())
        message = JobMessage(
            kind="compensation",
            job_uuid=job_uuid,
            job_name=run.compensation_job,
            workflow_id=run.workflow_id,
            step_key=run.step_key,
            compensation_run_id=run.id,
            attempt=run.attempt,
            arguments=arguments,
            connection=queue.connection,
            delay_seconds=queue.delay_seconds,
        )
        await self._publish(topic, message)
        await self._events.dispatch(
            JobDispatched(
                workflow_id=run.workflow_id,
                job_uuid=job_uuid,
                job_name=run.compensation_job,
                queue=topic,
            )
        )
        return job_uuid

    async def _publish(self, topic: str, message: JobMessage) -> None:
        try:
            await self._transport.publish(topic, message)
        except Exception as e:
            logger.error(
                f"Failed to publish {message.kind} job {message.job_name} to {topic} "
                f"for workflow_id={message.workflow_id}: {e}"
            )
            raise
        logger.debug(
            f"Published {message.kind} job {message.job_name} to {topic} "
            f"for workflow_id={message.workflow_id}"
        )
