"""Lifecycle states and their legal transitions.

Every entity keeps its transition table here; the model methods in
:mod:`flowkeeper.domain.models` consult :func:`ensure_transition` before
mutating anything.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, TypeVar

from ..errors import InvalidStateTransitionError


class WorkflowState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.SUCCEEDED, WorkflowState.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Whether the advancer may move the workflow forward."""
        return self in (WorkflowState.PENDING, WorkflowState.RUNNING)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.SUPERSEDED,
        )

    @property
    def is_in_progress(self) -> bool:
        return self in (StepStatus.RUNNING, StepStatus.POLLING)


class JobState(str, Enum):
    DISPATCHED = "dispatched"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


class CompensationRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (
            CompensationRunStatus.SUCCEEDED,
            CompensationRunStatus.FAILED,
            CompensationRunStatus.SKIPPED,
        )

    @property
    def is_successful(self) -> bool:
        return self in (CompensationRunStatus.SUCCEEDED, CompensationRunStatus.SKIPPED)


WORKFLOW_TRANSITIONS: Mapping[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.PENDING: frozenset({WorkflowState.RUNNING, WorkflowState.CANCELLED}),
    WorkflowState.RUNNING: frozenset(
        {
            WorkflowState.PAUSED,
            WorkflowState.SUCCEEDED,
            WorkflowState.FAILED,
            WorkflowState.CANCELLED,
        }
    ),
    WorkflowState.PAUSED: frozenset({WorkflowState.RUNNING, WorkflowState.CANCELLED}),
    WorkflowState.FAILED: frozenset(
        {WorkflowState.RUNNING, WorkflowState.COMPENSATING, WorkflowState.CANCELLED}
    ),
    WorkflowState.COMPENSATING: frozenset(
        {WorkflowState.COMPENSATED, WorkflowState.COMPENSATION_FAILED}
    ),
    WorkflowState.COMPENSATION_FAILED: frozenset({WorkflowState.COMPENSATING}),
    # a retry-from-step rewind may restart a compensated workflow
    WorkflowState.COMPENSATED: frozenset({WorkflowState.RUNNING}),
    WorkflowState.SUCCEEDED: frozenset(),
    WorkflowState.CANCELLED: frozenset(),
}

STEP_TRANSITIONS: Mapping[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {
            StepStatus.RUNNING,
            StepStatus.POLLING,
            StepStatus.SKIPPED,
            StepStatus.SUPERSEDED,
        }
    ),
    StepStatus.RUNNING: frozenset(
        {
            StepStatus.POLLING,
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SUPERSEDED,
        }
    ),
    StepStatus.POLLING: frozenset(
        {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SUPERSEDED}
    ),
    StepStatus.SUCCEEDED: frozenset({StepStatus.SUPERSEDED}),
    # failure policies that absorb a failure close the run as skipped
    StepStatus.FAILED: frozenset({StepStatus.SKIPPED, StepStatus.SUPERSEDED}),
    StepStatus.SKIPPED: frozenset({StepStatus.SUPERSEDED}),
    StepStatus.SUPERSEDED: frozenset(),
}

JOB_TRANSITIONS: Mapping[JobState, frozenset[JobState]] = {
    JobState.DISPATCHED: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
}

COMPENSATION_TRANSITIONS: Mapping[
    CompensationRunStatus, frozenset[CompensationRunStatus]
] = {
    CompensationRunStatus.PENDING: frozenset(
        {CompensationRunStatus.RUNNING, CompensationRunStatus.SKIPPED}
    ),
    CompensationRunStatus.RUNNING: frozenset(
        {CompensationRunStatus.SUCCEEDED, CompensationRunStatus.FAILED}
    ),
    CompensationRunStatus.FAILED: frozenset(
        {CompensationRunStatus.PENDING, CompensationRunStatus.SKIPPED}
    ),
    CompensationRunStatus.SUCCEEDED: frozenset(),
    CompensationRunStatus.SKIPPED: frozenset(),
}


StateT = TypeVar("StateT", bound=Enum)


def can_transition(
    table: Mapping[StateT, frozenset[StateT]], current: StateT, target: StateT
) -> bool:
    return target in table.get(current, frozenset())


def ensure_transition(
    table: Mapping[StateT, frozenset[StateT]],
    entity: str,
    current: StateT,
    target: StateT,
) -> None:
    """Raise :class:`InvalidStateTransitionError` if ``current -> target`` is illegal."""
    if not can_transition(table, current, target):
        raise InvalidStateTransitionError(entity, current.value, target.value)
