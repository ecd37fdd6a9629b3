"""SQLite implementation of the repositories.

Each entity is stored as its JSON document next to the columns the
repositories filter on. Compare-and-swap writes are single conditional
``UPDATE`` statements whose affected row count decides the outcome.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

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
from .repository import Repositories, is_due

_LOCK_FIELDS = {"locked_by", "locked_at"}


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteDatabase:
    """Shared connection and schema for the SQLite repositories."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                definition_key TEXT NOT NULL,
                state TEXT NOT NULL,
                data TEXT NOT NULL,
                locked_by TEXT,
                locked_at TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                step_key TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_step_runs_workflow ON step_runs (workflow_id, step_key)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_records (
                id TEXT PRIMARY KEY,
                job_uuid TEXT NOT NULL UNIQUE,
                step_run_id TEXT NOT NULL,
                state TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_job_records_step_run ON job_records (step_run_id)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS compensation_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                execution_order INTEGER NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS resolution_decisions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_outputs (
                workflow_id TEXT NOT NULL,
                name TEXT NOT NULL,
                step_key TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (workflow_id, name)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def execute(self, query: str, *params: Any) -> int:
        return await asyncio.to_thread(self._execute, query, *params)

    async def fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return await asyncio.to_thread(self._fetchone, query, *params)

    async def fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._fetchall, query, *params)

    def close(self) -> None:
        with self._mutex:
            self._conn.close()


class SQLiteWorkflowRepository:
    """Persist workflow instances using SQLite."""

    def __init__(self, db: SQLiteDatabase):
        self._db = db

    @staticmethod
    def _from_row(row: sqlite3.Row) -> WorkflowInstance:
        wf = WorkflowInstance.model_validate_json(row["data"])
        wf.locked_by = row["locked_by"]
        wf.locked_at = datetime.fromisoformat(row["locked_at"]) if row["locked_at"] else None
        return wf

    async def find(self, workflow_id: str) -> WorkflowInstance | None:
        row = await self._db.fetchone(
            "SELECT data, locked_by, locked_at FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._from_row(row) if row else None

    async def find_or_fail(self, workflow_id: str) -> WorkflowInstance:
        wf = await self.find(workflow_id)
        if wf is None:
            raise WorkflowNotFoundError(workflow_id)
        return wf

    async def save(self, workflow: WorkflowInstance) -> None:
        await self._db.execute(
            """
            INSERT INTO workflows (id, definition_key, state, data, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                definition_key = excluded.definition_key,
                state = excluded.state,
                data = excluded.data
            """,
            workflow.id,
            workflow.definition_key,
            workflow.state.value,
            workflow.model_dump_json(exclude=_LOCK_FIELDS),
            _ts(workflow.created_at),
        )

    async def list_workflows(
        self, state: WorkflowState | None = None
    ) -> list[WorkflowInstance]:
        if state is None:
            rows = await self._db.fetchall(
                "SELECT data, locked_by, locked_at FROM workflows ORDER BY created_at"
            )
        else:
            rows = await self._db.fetchall(
                "SELECT data, locked_by, locked_at FROM workflows WHERE state = ? ORDER BY created_at",
                state.value,
            )
        return [self._from_row(r) for r in rows]

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
        updated = await self._db.execute(
            """
            UPDATE workflows SET locked_by = ?, locked_at = ?
            WHERE id = ? AND (locked_by IS NULL OR locked_by = ? OR locked_at < ?)
            """,
            token,
            _ts(now),
            workflow_id,
            token,
            _ts(stale_before),
        )
        return updated == 1

    async def release_lock(self, workflow_id: str, token: str) -> bool:
        updated = await self._db.execute(
            "UPDATE workflows SET locked_by = NULL, locked_at = NULL WHERE id = ? AND locked_by = ?",
            workflow_id,
            token,
        )
        return updated == 1


class SQLiteStepRunRepository:
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def find(self, step_run_id: str) -> StepRun | None:
        row = await self._db.fetchone("SELECT data FROM step_runs WHERE id = ?", step_run_id)
        return StepRun.model_validate_json(row["data"]) if row else None

    async def find_or_fail(self, step_run_id: str) -> StepRun:
        run = await self.find(step_run_id)
        if run is None:
            raise StepRunNotFoundError(step_run_id)
        return run

    async def save(self, step_run: StepRun) -> None:
        await self._db.execute(
            """
            INSERT INTO step_runs (id, workflow_id, step_key, attempt, status, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status = excluded.status, data = excluded.data
            """,
            step_run.id,
            step_run.workflow_id,
            step_run.step_key,
            step_run.attempt,
            step_run.status.value,
            step_run.model_dump_json(),
            _ts(step_run.created_at),
        )

    async def find_latest_by_workflow_id_and_step_key(
        self, workflow_id: str, step_key: str, include_superseded: bool = False
    ) -> StepRun | None:
        query = "SELECT data FROM step_runs WHERE workflow_id = ? AND step_key = ?"
        params: list[Any] = [workflow_id, step_key]
        if not include_superseded:
            query += " AND status != ?"
            params.append(StepStatus.SUPERSEDED.value)
        query += " ORDER BY attempt DESC, created_at DESC LIMIT 1"
        row = await self._db.fetchone(query, *params)
        return StepRun.model_validate_json(row["data"]) if row else None

    async def find_by_workflow_id(self, workflow_id: str) -> list[StepRun]:
        rows = await self._db.fetchall(
            "SELECT data FROM step_runs WHERE workflow_id = ? ORDER BY created_at",
            workflow_id,
        )
        return [StepRun.model_validate_json(r["data"]) for r in rows]

    async def find_active_by_step_keys(
        self, workflow_id: str, step_keys: Iterable[str]
    ) -> list[StepRun]:
        keys = list(step_keys)
        if not keys:
            return []
        rows = await self._db.fetchall(
            f"""
            SELECT data FROM step_runs
            WHERE workflow_id = ? AND status != ? AND step_key IN ({_placeholders(keys)})
            ORDER BY created_at
            """,
            workflow_id,
            StepStatus.SUPERSEDED.value,
            *keys,
        )
        return [StepRun.model_validate_json(r["data"]) for r in rows]

    async def find_due_polls(self, now: datetime) -> list[StepRun]:
        rows = await self._db.fetchall(
            "SELECT data FROM step_runs WHERE status = ?", StepStatus.POLLING.value
        )
        runs = [StepRun.model_validate_json(r["data"]) for r in rows]
        return [r for r in runs if is_due(r.next_poll_at, now)]

    async def finalize(self, step_run: StepRun) -> bool:
        updated = await self._db.execute(
            "UPDATE step_runs SET status = ?, data = ? WHERE id = ? AND status IN (?, ?)",
            step_run.status.value,
            step_run.model_dump_json(),
            step_run.id,
            StepStatus.RUNNING.value,
            StepStatus.POLLING.value,
        )
        return updated == 1

    async def supersede(self, step_run: StepRun) -> bool:
        updated = await self._db.execute(
            "UPDATE step_runs SET status = ?, data = ? WHERE id = ? AND status != ?",
            step_run.status.value,
            step_run.model_dump_json(),
            step_run.id,
            StepStatus.SUPERSEDED.value,
        )
        return updated == 1


class SQLiteJobRepository:
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def find(self, job_id: str) -> JobRecord | None:
        row = await self._db.fetchone("SELECT data FROM job_records WHERE id = ?", job_id)
        return JobRecord.model_validate_json(row["data"]) if row else None

    async def find_by_job_uuid(self, job_uuid: str) -> JobRecord | None:
        row = await self._db.fetchone(
            "SELECT data FROM job_records WHERE job_uuid = ?", job_uuid
        )
        return JobRecord.model_validate_json(row["data"]) if row else None

    async def save(self, job: JobRecord) -> None:
        await self._db.execute(
            """
            INSERT INTO job_records (id, job_uuid, step_run_id, state, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET state = excluded.state, data = excluded.data
            """,
            job.id,
            job.job_uuid,
            job.step_run_id,
            job.state.value,
            job.model_dump_json(),
            _ts(job.created_at),
        )

    async def find_by_step_run_id(self, step_run_id: str) -> list[JobRecord]:
        rows = await self._db.fetchall(
            "SELECT data FROM job_records WHERE step_run_id = ? ORDER BY created_at",
            step_run_id,
        )
        return [JobRecord.model_validate_json(r["data"]) for r in rows]

    async def find_running_started_before(self, threshold: datetime) -> list[JobRecord]:
        rows = await self._db.fetchall(
            "SELECT data FROM job_records WHERE state = ?", JobState.RUNNING.value
        )
        jobs = [JobRecord.model_validate_json(r["data"]) for r in rows]
        return [j for j in jobs if j.started_at is not None and j.started_at < threshold]


class SQLiteCompensationRunRepository:
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def find(self, run_id: str) -> CompensationRun | None:
        row = await self._db.fetchone(
            "SELECT data FROM compensation_runs WHERE id = ?", run_id
        )
        return CompensationRun.model_validate_json(row["data"]) if row else None

    async def find_or_fail(self, run_id: str) -> CompensationRun:
        run = await self.find(run_id)
        if run is None:
            raise CompensationRunNotFoundError(run_id)
        return run

    async def save(self, run: CompensationRun) -> None:
        await self._db.execute(
            """
            INSERT INTO compensation_runs (id, workflow_id, execution_order, status, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status = excluded.status, data = excluded.data
            """,
            run.id,
            run.workflow_id,
            run.execution_order,
            run.status.value,
            run.model_dump_json(),
            _ts(run.created_at),
        )

    async def find_by_workflow_id(self, workflow_id: str) -> list[CompensationRun]:
        rows = await self._db.fetchall(
            "SELECT data FROM compensation_runs WHERE workflow_id = ? ORDER BY created_at, execution_order",
            workflow_id,
        )
        return [CompensationRun.model_validate_json(r["data"]) for r in rows]

    async def find_by_workflow_and_status(
        self, workflow_id: str, statuses: Iterable[CompensationRunStatus]
    ) -> list[CompensationRun]:
        values = [s.value for s in statuses]
        if not values:
            return []
        rows = await self._db.fetchall(
            f"""
            SELECT data FROM compensation_runs
            WHERE workflow_id = ? AND status IN ({_placeholders(values)})
            ORDER BY created_at, execution_order
            """,
            workflow_id,
            *values,
        )
        return [CompensationRun.model_validate_json(r["data"]) for r in rows]

    async def find_next_pending(self, workflow_id: str) -> CompensationRun | None:
        row = await self._db.fetchone(
            """
            SELECT data FROM compensation_runs
            WHERE workflow_id = ? AND status = ?
            ORDER BY execution_order LIMIT 1
            """,
            workflow_id,
            CompensationRunStatus.PENDING.value,
        )
        return CompensationRun.model_validate_json(row["data"]) if row else None

    async def all_terminal(self, workflow_id: str) -> bool:
        return all(r.status.is_terminal for r in await self.find_by_workflow_id(workflow_id))

    async def all_successful(self, workflow_id: str) -> bool:
        return all(r.status.is_successful for r in await self.find_by_workflow_id(workflow_id))


class SQLiteResolutionDecisionRepository:
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def save(self, record: ResolutionDecisionRecord) -> None:
        await self._db.execute(
            "INSERT INTO resolution_decisions (id, workflow_id, data, created_at) VALUES (?, ?, ?, ?)",
            record.id,
            record.workflow_id,
            record.model_dump_json(),
            _ts(record.created_at),
        )

    async def find_by_workflow_id(
        self, workflow_id: str
    ) -> list[ResolutionDecisionRecord]:
        rows = await self._db.fetchall(
            "SELECT data FROM resolution_decisions WHERE workflow_id = ? ORDER BY created_at",
            workflow_id,
        )
        return [ResolutionDecisionRecord.model_validate_json(r["data"]) for r in rows]


class SQLiteStepOutputRepository:
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    async def put(self, output: StepOutput) -> None:
        await self._db.execute(
            """
            INSERT INTO step_outputs (workflow_id, name, step_key, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(workflow_id, name) DO UPDATE SET
                step_key = excluded.step_key,
                data = excluded.data
            """,
            output.workflow_id,
            output.name,
            output.step_key,
            output.model_dump_json(),
        )

    async def find_by_workflow_id(self, workflow_id: str) -> list[StepOutput]:
        rows = await self._db.fetchall(
            "SELECT data FROM step_outputs WHERE workflow_id = ?", workflow_id
        )
        return [StepOutput.model_validate_json(r["data"]) for r in rows]

    async def read(self, workflow_id: str) -> dict[str, Any]:
        return {o.name: o.value for o in await self.find_by_workflow_id(workflow_id)}

    async def delete_by_step_keys(
        self, workflow_id: str, step_keys: Iterable[str]
    ) -> int:
        keys = list(step_keys)
        if not keys:
            return 0
        return await self._db.execute(
            f"DELETE FROM step_outputs WHERE workflow_id = ? AND step_key IN ({_placeholders(keys)})",
            workflow_id,
            *keys,
        )


class SQLiteRepositories(Repositories):
    def __init__(self, db_path: str | Path):
        self.db = SQLiteDatabase(db_path)
        super().__init__(
            workflows=SQLiteWorkflowRepository(self.db),
            step_runs=SQLiteStepRunRepository(self.db),
            jobs=SQLiteJobRepository(self.db),
            compensations=SQLiteCompensationRunRepository(self.db),
            decisions=SQLiteResolutionDecisionRepository(self.db),
            outputs=SQLiteStepOutputRepository(self.db),
        )

    def close(self) -> None:
        self.db.close()
