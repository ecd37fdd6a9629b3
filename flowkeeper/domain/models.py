"""Persisted entities of the orchestration core."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import WorkflowAlreadyCancelledError
from ..utils.time import utcnow
from .states import (
    COMPENSATION_TRANSITIONS,
    JOB_TRANSITIONS,
    STEP_TRANSITIONS,
    WORKFLOW_TRANSITIONS,
    CompensationRunStatus,
    JobState,
    StepStatus,
    WorkflowState,
    ensure_transition,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class SkipReason(str, Enum):
    CONDITION_FALSE = "condition_false"
    FAILURE_SKIPPED = "failure_skipped"
    PARTIAL_SUCCESS = "partial_success"


class CompensationScope(str, Enum):
    ALL = "all"
    FAILED_STEP_ONLY = "failed_step_only"
    PARTIAL = "partial"
    FROM_STEP = "from_step"


class RetryMode(str, Enum):
    RETRY_ONLY = "retry_only"
    COMPENSATE_THEN_RETRY = "compensate_then_retry"


class ResolutionDecisionType(str, Enum):
    RETRY = "retry"
    RETRY_FROM_STEP = "retry_from_step"
    COMPENSATE = "compensate"
    CANCEL = "cancel"
    MARK_RESOLVED = "mark_resolved"


class WorkflowInstance(BaseModel):
    """One execution of a workflow definition."""

    id: str = Field(default_factory=_new_id)
    definition_key: str
    definition_version: str
    state: WorkflowState = WorkflowState.PENDING
    current_step_key: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)

    paused_at: Optional[datetime] = None
    paused_reason: Optional[str] = None
    awaiting_trigger_key: Optional[str] = None
    trigger_timeout_at: Optional[datetime] = None
    scheduled_resume_at: Optional[datetime] = None
    trigger_resumed_step_key: Optional[str] = None

    failed_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    succeeded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    compensation_started_at: Optional[datetime] = None
    compensated_at: Optional[datetime] = None
    pending_rewind_step_key: Optional[str] = None

    auto_retry_count: int = 0
    next_auto_retry_at: Optional[datetime] = None

    # only written through the repository lock primitives
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def _move_to(self, target: WorkflowState) -> datetime:
        ensure_transition(WORKFLOW_TRANSITIONS, "workflow", self.state, target)
        now = utcnow()
        self.state = target
        self.updated_at = now
        return now

    def start(self) -> None:
        self._move_to(WorkflowState.RUNNING)

    def advance_to_step(self, step_key: str) -> None:
        self.current_step_key = step_key
        self.updated_at = utcnow()

    def succeed(self) -> None:
        self.succeeded_at = self._move_to(WorkflowState.SUCCEEDED)
        self.current_step_key = None

    def fail(self, code: str, message: str) -> None:
        self.failed_at = self._move_to(WorkflowState.FAILED)
        self.failure_code = code
        self.failure_message = message

    def pause(
        self,
        reason: str,
        trigger_key: Optional[str] = None,
        trigger_timeout_at: Optional[datetime] = None,
        scheduled_resume_at: Optional[datetime] = None,
    ) -> None:
        self.paused_at = self._move_to(WorkflowState.PAUSED)
        self.paused_reason = reason
        self.awaiting_trigger_key = trigger_key
        self.trigger_timeout_at = trigger_timeout_at
        self.scheduled_resume_at = scheduled_resume_at

    def resume(self) -> None:
        self._move_to(WorkflowState.RUNNING)
        if self.awaiting_trigger_key is not None:
            # the pause point has been passed, do not pause there again
            self.trigger_resumed_step_key = self.current_step_key
        self.paused_at = None
        self.paused_reason = None
        self.awaiting_trigger_key = None
        self.trigger_timeout_at = None
        self.scheduled_resume_at = None

    def cancel(self) -> None:
        if self.state == WorkflowState.CANCELLED:
            raise WorkflowAlreadyCancelledError(self.id)
        self.cancelled_at = self._move_to(WorkflowState.CANCELLED)
        self.current_step_key = None

    def retry(self) -> None:
        self._move_to(WorkflowState.RUNNING)
        self.failed_at = None
        self.failure_code = None
        self.failure_message = None

    def start_compensation(self) -> None:
        self.compensation_started_at = self._move_to(WorkflowState.COMPENSATING)
        self.compensated_at = None

    def complete_compensation(self) -> None:
        self.compensated_at = self._move_to(WorkflowState.COMPENSATED)

    def fail_compensation(self, message: str) -> None:
        self._move_to(WorkflowState.COMPENSATION_FAILED)
        self.failure_code = "COMPENSATION_FAILED"
        self.failure_message = message

    def retry_compensation(self) -> None:
        self._move_to(WorkflowState.COMPENSATING)

    def schedule_auto_retry(self, at: datetime) -> None:
        self.auto_retry_count += 1
        self.next_auto_retry_at = at
        self.updated_at = utcnow()

    def clear_auto_retry(self) -> None:
        self.next_auto_retry_at = None
        self.updated_at = utcnow()

    def reset_auto_retry(self) -> None:
        self.auto_retry_count = 0
        self.next_auto_retry_at = None
        self.updated_at = utcnow()


class StepRun(BaseModel):
    """One attempt at executing one step of a workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_key: str
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    total_job_count: Optional[int] = None
    failed_job_count: int = 0
    superseded_by_id: Optional[str] = None
    superseded_at: Optional[datetime] = None
    skip_reason: Optional[SkipReason] = None
    skip_message: Optional[str] = None
    next_poll_at: Optional[datetime] = None
    poll_attempt_count: int = 0
    poll_started_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def _move_to(self, target: StepStatus) -> datetime:
        ensure_transition(STEP_TRANSITIONS, "step run", self.status, target)
        now = utcnow()
        self.status = target
        self.updated_at = now
        return now

    def start(self) -> None:
        self.started_at = self._move_to(StepStatus.RUNNING)

    def start_polling(self) -> None:
        now = self._move_to(StepStatus.POLLING)
        self.started_at = self.started_at or now
        self.poll_started_at = now
        self.next_poll_at = now

    def succeed(self) -> None:
        self.finished_at = self._move_to(StepStatus.SUCCEEDED)

    def fail(self, code: str, message: str) -> None:
        self.finished_at = self._move_to(StepStatus.FAILED)
        self.failure_code = code
        self.failure_message = message

    def skip(self, reason: SkipReason, message: Optional[str] = None) -> None:
        now = self._move_to(StepStatus.SKIPPED)
        self.finished_at = self.finished_at or now
        self.skip_reason = reason
        self.skip_message = message

    def supersede(self, superseded_by_id: str) -> None:
        self.superseded_at = self._move_to(StepStatus.SUPERSEDED)
        self.superseded_by_id = superseded_by_id
        self.next_poll_at = None


class JobRecord(BaseModel):
    """Ledger entry for one dispatched unit of work."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_run_id: str
    step_key: str
    job_uuid: str = Field(default_factory=_new_id)
    job_name: str
    queue: str
    state: JobState = JobState.DISPATCHED
    attempt: int = 1
    dispatched_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    runtime_ms: Optional[int] = None
    worker_id: Optional[str] = None
    failure_class: Optional[str] = None
    failure_message: Optional[str] = None
    failure_trace: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def _move_to(self, target: JobState) -> datetime:
        ensure_transition(JOB_TRANSITIONS, "job", self.state, target)
        now = utcnow()
        self.state = target
        self.updated_at = now
        return now

    def _finish(self, now: datetime) -> None:
        self.finished_at = now
        if self.started_at is not None:
            self.runtime_ms = int((now - self.started_at).total_seconds() * 1000)

    def start(self, worker_id: Optional[str] = None) -> None:
        self.started_at = self._move_to(JobState.RUNNING)
        self.worker_id = worker_id

    def succeed(self) -> None:
        self._finish(self._move_to(JobState.SUCCEEDED))

    def fail(
        self,
        failure_class: Optional[str],
        message: Optional[str],
        trace: Optional[str] = None,
    ) -> None:
        self._finish(self._move_to(JobState.FAILED))
        self.failure_class = failure_class
        self.failure_message = message
        self.failure_trace = trace


class CompensationRun(BaseModel):
    """Rollback of one previously executed step."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_key: str
    compensation_job: str
    execution_order: int
    status: CompensationRunStatus = CompensationRunStatus.PENDING
    attempt: int = 0
    max_attempts: int = 3
    current_job_uuid: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_message: Optional[str] = None
    failure_trace: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def _move_to(self, target: CompensationRunStatus) -> datetime:
        ensure_transition(
            COMPENSATION_TRANSITIONS, "compensation run", self.status, target
        )
        now = utcnow()
        self.status = target
        self.updated_at = now
        return now

    @property
    def can_retry(self) -> bool:
        return self.attempt < self.max_attempts

    def start(self, job_uuid: str) -> None:
        self.started_at = self._move_to(CompensationRunStatus.RUNNING)
        self.attempt += 1
        self.current_job_uuid = job_uuid
        self.finished_at = None

    def succeed(self) -> None:
        self.finished_at = self._move_to(CompensationRunStatus.SUCCEEDED)

    def fail(self, message: Optional[str], trace: Optional[str] = None) -> None:
        self.finished_at = self._move_to(CompensationRunStatus.FAILED)
        self.failure_message = message
        self.failure_trace = trace

    def skip(self) -> None:
        self.finished_at = self._move_to(CompensationRunStatus.SKIPPED)

    def reset_for_retry(self) -> None:
        self._move_to(CompensationRunStatus.PENDING)
        self.current_job_uuid = None


class ResolutionDecisionRecord(BaseModel):
    """Audit entry for a manual decision taken on a failed workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    decision: ResolutionDecisionType
    decided_by: Optional[str] = None
    reason: Optional[str] = None
    retry_from_step_key: Optional[str] = None
    compensate_step_keys: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)


class StepOutput(BaseModel):
    """Named value produced by a step and readable by later steps."""

    workflow_id: str
    step_key: str
    name: str
    value: Any = None
    created_at: datetime = Field(default_factory=utcnow)
