"""Domain events emitted for every state transition of the core."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.time import utcnow


class DomainEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = Field(default_factory=utcnow)
    workflow_id: str

    @property
    def name(self) -> str:
        return type(self).__name__


# Workflow lifecycle
class WorkflowCreated(DomainEvent):
    definition_key: str
    definition_version: str


class WorkflowStarted(DomainEvent):
    pass


class WorkflowSucceeded(DomainEvent):
    pass


class WorkflowFailed(DomainEvent):
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class WorkflowPaused(DomainEvent):
    reason: Optional[str] = None
    trigger_key: Optional[str] = None


class WorkflowResumed(DomainEvent):
    pass


class WorkflowCancelled(DomainEvent):
    pass


class WorkflowRetried(DomainEvent):
    pass


# Steps
class StepStarted(DomainEvent):
    step_key: str
    step_run_id: str
    attempt: int
    total_job_count: Optional[int] = None


class StepSucceeded(DomainEvent):
    step_key: str
    step_run_id: str


class StepFailed(DomainEvent):
    step_key: str
    step_run_id: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class StepSkipped(DomainEvent):
    step_key: str
    step_run_id: str
    reason: str
    message: Optional[str] = None


class StepRetried(DomainEvent):
    step_key: str
    step_run_id: str
    attempt: int


class StepRunSuperseded(DomainEvent):
    step_key: str
    step_run_id: str
    superseded_by_id: str


class StepPollScheduled(DomainEvent):
    step_key: str
    step_run_id: str
    poll_attempt: int
    next_poll_at: datetime


# Jobs
class JobDispatched(DomainEvent):
    step_run_id: Optional[str] = None
    job_uuid: str
    job_name: str
    queue: str


class JobStarted(DomainEvent):
    job_uuid: str
    worker_id: Optional[str] = None


class JobSucceeded(DomainEvent):
    job_uuid: str
    outputs: dict[str, Any] = Field(default_factory=dict)


class JobFailed(DomainEvent):
    job_uuid: str
    failure_class: Optional[str] = None
    failure_message: Optional[str] = None


# Triggers
class TriggerReceived(DomainEvent):
    trigger_key: str


class TriggerTimedOut(DomainEvent):
    trigger_key: str
    policy: str


# Compensation
class CompensationStarted(DomainEvent):
    scope: str
    step_keys: list[str] = Field(default_factory=list)
    initiated_by: Optional[str] = None
    reason: Optional[str] = None


class CompensationStepStarted(DomainEvent):
    compensation_run_id: str
    step_key: str
    attempt: int


class CompensationStepSucceeded(DomainEvent):
    compensation_run_id: str
    step_key: str


class CompensationStepFailed(DomainEvent):
    compensation_run_id: str
    step_key: str
    attempt: int
    failure_message: Optional[str] = None
    will_retry: bool = False


class CompensationCompleted(DomainEvent):
    pass


class CompensationFailed(DomainEvent):
    step_key: str
    failure_message: Optional[str] = None


# Failure resolution
class AutoRetryScheduled(DomainEvent):
    retry_number: int
    delay_seconds: int
    scheduled_at: datetime


class AutoRetryExhausted(DomainEvent):
    retry_count: int
    max_retries: int


class WorkflowAwaitingResolution(DomainEvent):
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class ResolutionDecisionMade(DomainEvent):
    decision: str
    decided_by: Optional[str] = None
    reason: Optional[str] = None


# Retry from step
class RetryFromStepInitiated(DomainEvent):
    step_key: str
    retry_mode: str
    affected_step_keys: list[str] = Field(default_factory=list)
    initiated_by: Optional[str] = None
    reason: Optional[str] = None


class RetryFromStepCompleted(DomainEvent):
    step_key: str
    new_step_run_id: str
    superseded_count: int
    cleared_output_count: int
