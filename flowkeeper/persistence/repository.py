"""Repository contracts required by the orchestration core."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from ..domain.models import (
    CompensationRun,
    JobRecord,
    ResolutionDecisionRecord,
    StepOutput,
    StepRun,
    WorkflowInstance,
)
from ..domain.states import CompensationRunStatus, WorkflowState


class WorkflowRepository(Protocol):
    """Persistence of workflow instances and their evaluation lock."""

    async def find(self, workflow_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def find_or_fail(self, workflow_id: str) -> WorkflowInstance:
        """Retrieve the workflow or raise ``WorkflowNotFoundError``."""

    async def save(self, workflow: WorkflowInstance) -> None:
        """Insert or update a workflow. The lock columns are never written."""

    async def list_workflows(
        self, state: WorkflowState | None = None
    ) -> list[WorkflowInstance]:
        """Return persisted workflows, optionally filtered by state."""

    async def find_due_auto_retries(self, now: datetime) -> list[WorkflowInstance]:
        """Failed workflows whose scheduled auto-retry time has passed."""

    async def find_trigger_timeouts_due(self, now: datetime) -> list[WorkflowInstance]:
        """Paused workflows awaiting a trigger whose timeout has passed."""

    async def find_scheduled_resumes_due(self, now: datetime) -> list[WorkflowInstance]:
        """Paused workflows whose scheduled resume time has passed."""

    async def acquire_lock(
        self, workflow_id: str, token: str, now: datetime, stale_before: datetime
    ) -> bool:
        """Take the evaluation lock if free, already ours, or acquired before ``stale_before``."""

    async def release_lock(self, workflow_id: str, token: str) -> bool:
        """Release the evaluation lock if ``token`` still holds it."""


class StepRunRepository(Protocol):
    async def find(self, step_run_id: str) -> StepRun | None:
        """Retrieve a step run by id."""

    async def find_or_fail(self, step_run_id: str) -> StepRun:
        """Retrieve a step run or raise ``StepRunNotFoundError``."""

    async def save(self, step_run: StepRun) -> None:
        """Insert or update a step run."""

    async def find_latest_by_workflow_id_and_step_key(
        self, workflow_id: str, step_key: str, include_superseded: bool = False
    ) -> StepRun | None:
        """Highest-attempt run for the step, skipping superseded runs unless asked."""

    async def find_by_workflow_id(self, workflow_id: str) -> list[StepRun]:
        """All runs of a workflow ordered by creation."""

    async def find_active_by_step_keys(
        self, workflow_id: str, step_keys: Iterable[str]
    ) -> list[StepRun]:
        """Non-superseded runs of the given steps."""

    async def find_due_polls(self, now: datetime) -> list[StepRun]:
        """Polling runs whose next poll time has passed."""

    async def finalize(self, step_run: StepRun) -> bool:
        """Persist a terminal run only if the stored run is still running or polling."""

    async def supersede(self, step_run: StepRun) -> bool:
        """Persist a superseded run only if the stored run is not superseded yet."""


class JobRepository(Protocol):
    async def find(self, job_id: str) -> JobRecord | None:
        """Retrieve a job record by id."""

    async def find_by_job_uuid(self, job_uuid: str) -> JobRecord | None:
        """Retrieve a job record by its external identifier."""

    async def save(self, job: JobRecord) -> None:
        """Insert or update a job record."""

    async def find_by_step_run_id(self, step_run_id: str) -> list[JobRecord]:
        """All job records dispatched for a step run."""

    async def find_running_started_before(self, threshold: datetime) -> list[JobRecord]:
        """Running jobs that started before ``threshold``."""


class CompensationRunRepository(Protocol):
    async def find(self, run_id: str) -> CompensationRun | None:
        """Retrieve a compensation run by id."""

    async def find_or_fail(self, run_id: str) -> CompensationRun:
        """Retrieve a compensation run or raise ``CompensationRunNotFoundError``."""

    async def save(self, run: CompensationRun) -> None:
        """Insert or update a compensation run."""

    async def find_by_workflow_id(self, workflow_id: str) -> list[CompensationRun]:
        """All runs of a workflow by ascending execution order."""

    async def find_by_workflow_and_status(
        self, workflow_id: str, statuses: Iterable[CompensationRunStatus]
    ) -> list[CompensationRun]:
        """Runs of a workflow in any of ``statuses`` by ascending execution order."""

    async def find_next_pending(self, workflow_id: str) -> CompensationRun | None:
        """Pending run with the lowest execution order."""

    async def all_terminal(self, workflow_id: str) -> bool:
        """Whether every run of the workflow is terminal."""

    async def all_successful(self, workflow_id: str) -> bool:
        """Whether every run of the workflow succeeded or was skipped."""


class ResolutionDecisionRepository(Protocol):
    async def save(self, record: ResolutionDecisionRecord) -> None:
        """Persist a decision record."""

    async def find_by_workflow_id(
        self, workflow_id: str
    ) -> list[ResolutionDecisionRecord]:
        """Decisions recorded for a workflow, oldest first."""


class StepOutputRepository(Protocol):
    """Per-workflow key-value store of step outputs."""

    async def put(self, output: StepOutput) -> None:
        """Store an output, replacing any previous value with the same name."""

    async def find_by_workflow_id(self, workflow_id: str) -> list[StepOutput]:
        """All outputs of a workflow."""

    async def read(self, workflow_id: str) -> dict[str, Any]:
        """Outputs of a workflow as a ``name -> value`` mapping."""

    async def delete_by_step_keys(
        self, workflow_id: str, step_keys: Iterable[str]
    ) -> int:
        """Delete outputs written by the given steps and return how many were removed."""


class Repositories:
    """Bundle of the repositories the core needs."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        step_runs: StepRunRepository,
        jobs: JobRepository,
        compensations: CompensationRunRepository,
        decisions: ResolutionDecisionRepository,
        outputs: StepOutputRepository,
    ) -> None:
        self.workflows = workflows
        self.step_runs = step_runs
        self.jobs = jobs
        self.compensations = compensations
        self.decisions = decisions
        self.outputs = outputs

    def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass


def lock_available(
    workflow: WorkflowInstance, token: str, stale_before: datetime
) -> bool:
    """Whether ``token`` may take the evaluation lock of ``workflow``."""
    if workflow.locked_by is None or workflow.locked_by == token:
        return True
    return workflow.locked_at is not None and workflow.locked_at < stale_before


def is_due(at: Optional[datetime], now: datetime) -> bool:
    return at is not None and at <= now
