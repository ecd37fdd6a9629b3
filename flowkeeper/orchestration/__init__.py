"""Orchestration services: dispatch, finalization, advancing and recovery."""

from .advancer import EvaluationOutcome, EvaluationResult, WorkflowAdvancer
from .compensation import CompensationExecutor
from .dispatcher import StepDispatcher, StepDispatchOutcome, StepDispatchResult
from .failure_policy import (
    FailurePolicyAction,
    FailurePolicyHandler,
    FailurePolicyOutcome,
)
from .finalizer import (
    FinalizationOutcome,
    FinalizationResult,
    StepFinalizer,
    StepJobStats,
)
from .jobs import JobLifecycleService
from .management import WorkflowManager
from .polling import PollResult, PollResultHandler, PollStatus
from .resolution import FailureResolutionHandler
from .retry_from_step import (
    RetryFromStepRequest,
    RetryFromStepResult,
    RetryFromStepService,
)
from .timeouts import StepTimeoutHandler
from .triggers import TriggerHandler, TriggerOutcome, TriggerResult

__all__ = [
    "CompensationExecutor",
    "EvaluationOutcome",
    "EvaluationResult",
    "FailurePolicyAction",
    "FailurePolicyHandler",
    "FailurePolicyOutcome",
    "FailureResolutionHandler",
    "FinalizationOutcome",
    "FinalizationResult",
    "JobLifecycleService",
    "PollResult",
    "PollResultHandler",
    "PollStatus",
    "RetryFromStepRequest",
    "RetryFromStepResult",
    "RetryFromStepService",
    "StepDispatchOutcome",
    "StepDispatchResult",
    "StepDispatcher",
    "StepFinalizer",
    "StepJobStats",
    "StepTimeoutHandler",
    "TriggerHandler",
    "TriggerOutcome",
    "TriggerResult",
    "WorkflowAdvancer",
    "WorkflowManager",
]
