"""In-memory implementation of the repositories."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List

from ..domain.models import (
    CompensationRun,
    JobRecord,
    ResolutionDecisionRecord,
    StepOutput,
    StepRun,
    WorkflowInstance,
)
from ..domain.states import (
    CompensationRunStatus,
    JobState,
    StepStatus,
    WorkflowState,
)
from ..errors import (
    CompensationRunNotFoundError,
    StepRunNotFoundError,
    WorkflowNotFoundError,
)
from .repository import Repositories, is_due, lock_available


class InMemoryWorkflowRepository:
    """Store workflow instances in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every read returns a copy so callers
    never mutate stored state without saving it.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._lock = asyncio.Lock()

    async def find(self, workflow_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def find_or_fail(self, workflow_id: str) -> WorkflowInstance:
        wf = await self.find(workflow_id)
        if wf is None:
            raise WorkflowNotFoundError(workflow_id)
        return wf

    async def save(self, workflow: WorkflowInstance) -> None:
        stored = workflow.model_copy(deep=True)
        existing = self._workflows.get(workflow.id)
        stored.locked_by = existing.locked_by if existing else None
        stored.locked_at = existing.locked_at if existing else None
        self._workflows[workflow.id] = stored

    async def list_workflows(
        self, state: WorkflowState | None = None
    ) -> list[WorkflowInstance]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if state is None or wf.state == state
        ]

    async def find_due_auto_retries(self, now: datetime) -> list[WorkflowInstance]:
        return [
            wf
            for wf in await self.list_workflows(WorkflowState.FAILED)
            if is_due(wf.next_auto_retry_at, now)
        ]

    async def find_trigger_timeouts_due(self, now: datetime) -> list[WorkflowInstance]:
        return [
            wf
            for wf in await self.list_workflows(WorkflowState.PAUSED)
            if wf.awaiting_trigger_key and is_due(wf.trigger_timeout_at, now)
        ]

    async def find_scheduled_resumes_due(self, now: datetime) -> list[WorkflowInstance]:
        return [
            wf
            for wf in await self.list_workflows(WorkflowState.PAUSED)
            if is_due(wf.scheduled_resume_at, now)
        ]

    async def acquire_lock(
        self, workflow_id: str, token: str, now: datetime, stale_before: datetime
    ) -> bool:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None or not lock_available(wf, token, stale_before):
                return False
            wf.locked_by = token
            wf.locked_at = now
            return True

    async def release_lock(self, workflow_id: str, token: str) -> bool:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None or wf.locked_by != token:
                return False
            wf.locked_by = None
            wf.locked_at = None
            return True


class InMemoryStepRunRepository:
    def __init__(self) -> None:
        self._runs: Dict[str, StepRun] = {}
        self._lock = asyncio.Lock()

    async def find(self, step_run_id: str) -> StepRun | None:
        run = self._runs.get(step_run_id)
        return run.model_copy(deep=True) if run else None

    async def find_or_fail(self, step_run_id: str) -> StepRun:
        run = await self.find(step_run_id)
        if run is None:
            raise StepRunNotFoundError(step_run_id)
        return run

    async def save(self, step_run: StepRun) -> None:
        self._runs[step_run.id] = step_run.model_copy(deep=True)

    async def find_latest_by_workflow_id_and_step_key(
        self, workflow_id: str, step_key: str, include_superseded: bool = False
    ) -> StepRun | None:
        candidates = [
            r
            for r in self._runs.values()
            if r.workflow_id == workflow_id
            and r.step_key == step_key
            and (include_superseded or r.status != StepStatus.SUPERSEDED)
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda r: (r.attempt, r.created_at))
        return latest.model_copy(deep=True)

    async def find_by_workflow_id(self, workflow_id: str) -> list[StepRun]:
        runs = [r for r in self._runs.values() if r.workflow_id == workflow_id]
        return [r.model_copy(deep=True) for r in sorted(runs, key=lambda r: r.created_at)]

    async def find_active_by_step_keys(
        self, workflow_id: str, step_keys: Iterable[str]
    ) -> list[StepRun]:
        keys = set(step_keys)
        return [
            r
            for r in await self.find_by_workflow_id(workflow_id)
            if r.step_key in keys and r.status != StepStatus.SUPERSEDED
        ]

    async def find_due_polls(self, now: datetime) -> list[StepRun]:
        return [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if r.status == StepStatus.POLLING and is_due(r.next_poll_at, now)
        ]

    async def finalize(self, step_run: StepRun) -> bool:
        async with self._lock:
            stored = self._runs.get(step_run.id)
            if stored is None or not stored.status.is_in_progress:
                return False
            self._runs[step_run.id] = step_run.model_copy(deep=True)
            return True

    async def supersede(self, step_run: StepRun) -> bool:
        async with self._lock:
            stored = self._runs.get(step_run.id)
            if stored is None or stored.status == StepStatus.SUPERSEDED:
                return False
            self._runs[step_run.id] = step_run.model_copy(deep=True)
            return True


class InMemoryJobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}

    async def find(self, job_id: str) -> JobRecord | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def find_by_job_uuid(self, job_uuid: str) -> JobRecord | None:
        job = next((j for j in self._jobs.values() if j.job_uuid == job_uuid), None)
        return job.model_copy(deep=True) if job else None

    async def save(self, job: JobRecord) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def find_by_step_run_id(self, step_run_id: str) -> list[JobRecord]:
        jobs = [j for j in self._jobs.values() if j.step_run_id == step_run_id]
        return [j.model_copy(deep=True) for j in sorted(jobs, key=lambda j: j.created_at)]

    async def find_running_started_before(self, threshold: datetime) -> list[JobRecord]:
        return [
            j.model_copy(deep=True)
            for j in self._jobs.values()
            if j.state == JobState.RUNNING
            and j.started_at is not None
            and j.started_at < threshold
        ]


class InMemoryCompensationRunRepository:
    def __init__(self) -> None:
        self._runs: Dict[str, CompensationRun] = {}

    async def find(self, run_id: str) -> CompensationRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def find_or_fail(self, run_id: str) -> CompensationRun:
        run = await self.find(run_id)
        if run is None:
            raise CompensationRunNotFoundError(run_id)
        return run

    async def save(self, run: CompensationRun) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def find_by_workflow_id(self, workflow_id: str) -> list[CompensationRun]:
        runs = [r for r in self._runs.values() if r.workflow_id == workflow_id]
        return [
            r.model_copy(deep=True)
            for r in sorted(runs, key=lambda r: (r.created_at, r.execution_order))
        ]

    async def find_by_workflow_and_status(
        self, workflow_id: str, statuses: Iterable[CompensationRunStatus]
    ) -> list[CompensationRun]:
        wanted = set(statuses)
        return [r for r in await self.find_by_workflow_id(workflow_id) if r.status in wanted]

    async def find_next_pending(self, workflow_id: str) -> CompensationRun | None:
        pending = await self.find_by_workflow_and_status(
            workflow_id, [CompensationRunStatus.PENDING]
        )
        return pending[0] if pending else None

    async def all_terminal(self, workflow_id: str) -> bool:
        return all(r.status.is_terminal for r in await self.find_by_workflow_id(workflow_id))

    async def all_successful(self, workflow_id: str) -> bool:
        return all(r.status.is_successful for r in await self.find_by_workflow_id(workflow_id))


class InMemoryResolutionDecisionRepository:
    def __init__(self) -> None:
        self._records: List[ResolutionDecisionRecord] = []

    async def save(self, record: ResolutionDecisionRecord) -> None:
        self._records.append(record)

    async def find_by_workflow_id(
        self, workflow_id: str
    ) -> list[ResolutionDecisionRecord]:
        return [r for r in self._records if r.workflow_id == workflow_id]


class InMemoryStepOutputRepository:
    def __init__(self) -> None:
        self._outputs: Dict[str, Dict[str, StepOutput]] = {}

    async def put(self, output: StepOutput) -> None:
        self._outputs.setdefault(output.workflow_id, {})[output.name] = output.model_copy(
            deep=True
        )

    async def find_by_workflow_id(self, workflow_id: str) -> list[StepOutput]:
        return [o.model_copy(deep=True) for o in self._outputs.get(workflow_id, {}).values()]

    async def read(self, workflow_id: str) -> dict[str, Any]:
        return {o.name: o.value for o in await self.find_by_workflow_id(workflow_id)}

    async def delete_by_step_keys(
        self, workflow_id: str, step_keys: Iterable[str]
    ) -> int:
        keys = set(step_keys)
        outputs = self._outputs.get(workflow_id, {})
        doomed = [name for name, o in outputs.items() if o.step_key in keys]
        for name in doomed:
            del outputs[name]
        return len(doomed)


class InMemoryRepositories(Repositories):
    def __init__(self) -> None:
        super().__init__(
            workflows=InMemoryWorkflowRepository(),
            step_runs=InMemoryStepRunRepository(),
            jobs=InMemoryJobRepository(),
            compensations=InMemoryCompensationRunRepository(),
            decisions=InMemoryResolutionDecisionRepository(),
            outputs=InMemoryStepOutputRepository(),
        )
