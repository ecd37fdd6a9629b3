"""Domain entities, lifecycle states and events."""

from __future__ import annotations

from .models import (
    CompensationRun,
    CompensationScope,
    JobRecord,
    ResolutionDecisionRecord,
    ResolutionDecisionType,
    RetryMode,
    SkipReason,
    StepOutput,
    StepRun,
    WorkflowInstance,
)
from .states import CompensationRunStatus, JobState, StepStatus, WorkflowState

__all__ = [
    "CompensationRun",
    "CompensationRunStatus",
    "CompensationScope",
    "JobRecord",
    "JobState",
    "ResolutionDecisionRecord",
    "ResolutionDecisionType",
    "RetryMode",
    "SkipReason",
    "StepOutput",
    "StepRun",
    "StepStatus",
    "WorkflowInstance",
    "WorkflowState",
]
