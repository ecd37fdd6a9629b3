"""Workflow definitions and the registry that resolves them."""

from __future__ import annotations

from .criteria import (
    AllCriteria,
    BestEffortCriteria,
    MajorityCriteria,
    NOfMCriteria,
    SuccessCriteria,
    parse_criteria,
)
from .models import (
    AutoRetryConfig,
    FailurePolicy,
    FailureResolutionConfig,
    PauseTrigger,
    PollingConfig,
    PollTimeoutPolicy,
    ResolutionStrategy,
    RetryConfig,
    SemanticVersion,
    StepTimeout,
    StepDefinition,
    StepKind,
    TriggerTimeoutPolicy,
    WorkflowDefinition,
)
from .registry import WorkflowDefinitionRegistry, load_registry

__all__ = [
    "AllCriteria",
    "AutoRetryConfig",
    "BestEffortCriteria",
    "FailurePolicy",
    "FailureResolutionConfig",
    "MajorityCriteria",
    "NOfMCriteria",
    "PauseTrigger",
    "PollingConfig",
    "PollTimeoutPolicy",
    "ResolutionStrategy",
    "RetryConfig",
    "SemanticVersion",
    "StepTimeout",
    "StepDefinition",
    "StepKind",
    "SuccessCriteria",
    "TriggerTimeoutPolicy",
    "WorkflowDefinition",
    "WorkflowDefinitionRegistry",
    "load_registry",
    "parse_criteria",
]
