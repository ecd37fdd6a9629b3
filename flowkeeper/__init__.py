"""flowkeeper: Durable step-by-step workflow orchestration."""

from .contracts import JobMessage, QueueConfig
from .definition import (
    FailurePolicy,
    StepDefinition,
    StepKind,
    WorkflowDefinition,
    WorkflowDefinitionRegistry,
)
from .engine import WorkflowEngine
from .events import EventBus
from .persistence import get_repositories
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "EventBus",
    "FailurePolicy",
    "JobMessage",
    "QueueConfig",
    "StepDefinition",
    "StepKind",
    "WorkflowDefinition",
    "WorkflowDefinitionRegistry",
    "WorkflowEngine",
    "get_repositories",
    "get_transport",
]
