"""Exception hierarchy raised by the orchestration core."""

from __future__ import annotations

from typing import Iterable


class FlowkeeperError(Exception):
    """Base class for all flowkeeper errors."""


class NotFoundError(FlowkeeperError):
    """A requested entity does not exist."""


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class StepRunNotFoundError(NotFoundError):
    def __init__(self, step_run_id: str) -> None:
        super().__init__(f"Step run {step_run_id} not found")
        self.step_run_id = step_run_id


class JobNotFoundError(NotFoundError):
    def __init__(self, job_uuid: str) -> None:
        super().__init__(f"Job {job_uuid} not found")
        self.job_uuid = job_uuid


class CompensationRunNotFoundError(NotFoundError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Compensation run {run_id} not found")
        self.run_id = run_id


class StepNotFoundError(NotFoundError):
    def __init__(self, definition_key: str, step_key: str) -> None:
        super().__init__(
            f'Step "{step_key}" not found in workflow definition "{definition_key}"'
        )
        self.definition_key = definition_key
        self.step_key = step_key


class DefinitionNotFoundError(NotFoundError):
    def __init__(self, key: str, version: str | None = None) -> None:
        target = f"{key}@{version}" if version else key
        super().__init__(f"Workflow definition {target} not found")
        self.key = key
        self.version = version


class DuplicateDefinitionError(FlowkeeperError):
    def __init__(self, key: str, version: str) -> None:
        super().__init__(f"Workflow definition {key}@{version} is already registered")
        self.key = key
        self.version = version


class InvalidStateTransitionError(FlowkeeperError):
    """An entity was asked to move to a state its current state does not allow."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot transition {entity} from '{current}' to '{target}'"
        )
        self.entity = entity
        self.current = current
        self.target = target


class WorkflowAlreadyCancelledError(FlowkeeperError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} is already cancelled")
        self.workflow_id = workflow_id


class WorkflowNotFailedError(FlowkeeperError):
    def __init__(self, workflow_id: str, state: str) -> None:
        super().__init__(
            f"Workflow {workflow_id} is '{state}'; resolution decisions require a failed workflow"
        )
        self.workflow_id = workflow_id
        self.state = state


class StepDependencyError(FlowkeeperError):
    """Required outputs of earlier steps are missing."""

    def __init__(self, step_key: str, missing: Iterable[str]) -> None:
        self.step_key = step_key
        self.missing = list(missing)
        super().__init__(
            f'Step "{step_key}" is missing required outputs: {", ".join(self.missing)}'
        )


class WorkflowLockedError(FlowkeeperError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} is locked by another evaluator")
        self.workflow_id = workflow_id


class ConfigError(FlowkeeperError):
    """Configuration could not be loaded or is invalid."""
