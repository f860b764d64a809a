"""SQLite implementation of the run store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import RunStatus, StepResult, StepStatus, WorkflowDefinition, utcnow
from ..errors import TerminalRunError
from .models import RunRecord, RunStats
from .repository import RunStore

_TERMINAL = tuple(s.value for s in RunStatus if s.is_terminal)
_TERMINAL_PLACEHOLDERS = ", ".join("?" * len(_TERMINAL))

_RUN_COLUMNS = (
    "id, workflow_id, tenant_id, trigger_type, trigger_data, status, output, error, "
    "error_step, error_type, definition, job_id, attempt, retry_of, priority, "
    "cancel_requested, created_at, started_at, completed_at"
)


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunStore(RunStore):
    """Persist workflow definitions and runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute("PRAGMA journal_mode = WAL")
        cur.execute("PRAGMA busy_timeout = 5000")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                definition TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_data TEXT,
                status TEXT NOT NULL,
                output TEXT,
                error TEXT,
                error_step TEXT,
                error_type TEXT,
                definition TEXT,
                job_id TEXT,
                attempt INTEGER NOT NULL DEFAULT 1,
                retry_of TEXT,
                priority INTEGER NOT NULL DEFAULT 0,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                output TEXT,
                error TEXT,
                error_type TEXT,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_step_history_run ON step_history (run_id)")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _run(self, func, *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    @staticmethod
    def _row_to_run(row: sqlite3.Row, steps: list[StepResult]) -> RunRecord:
        return RunRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            tenant_id=row["tenant_id"],
            trigger_type=row["trigger_type"],
            trigger_data=_loads(row["trigger_data"]) or {},
            status=row["status"],
            output=_loads(row["output"]),
            error=row["error"],
            error_step=row["error_step"],
            error_type=row["error_type"],
            definition=_loads(row["definition"]),
            job_id=row["job_id"],
            attempt=row["attempt"],
            retry_of=row["retry_of"],
            priority=row["priority"],
            cancel_requested=bool(row["cancel_requested"]),
            created_at=_ts(row["created_at"]),
            started_at=_ts(row["started_at"]),
            completed_at=_ts(row["completed_at"]),
            steps=steps,
        )

    async def _update_active_run(self, assignments: str, run_id: str, *params: Any) -> None:
        """Apply ``assignments`` unless the run already reached a terminal status."""
        updated = await self._run(
            self._execute,
            f"UPDATE runs SET {assignments} WHERE id = ? AND status NOT IN ({_TERMINAL_PLACEHOLDERS})",
            *params,
            run_id,
            *_TERMINAL,
        )
        if updated:
            return
        row = await self._run(self._fetchone, "SELECT status FROM runs WHERE id = ?", run_id)
        if row is not None:
            raise TerminalRunError(f"Run {run_id} already finished with status {row['status']}")

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO workflows (id, tenant_id, name, definition, updated_at) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                tenant_id = excluded.tenant_id,
                name = excluded.name,
                definition = excluded.definition,
                updated_at = excluded.updated_at
            """,
            definition.id,
            definition.tenant_id,
            definition.name,
            definition.to_json(),
            utcnow().isoformat(),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await self._run(
            self._fetchone, "SELECT definition FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.from_json(row["definition"]) if row else None

    async def list_workflows(self, tenant_id: Optional[str] = None) -> list[WorkflowDefinition]:
        if tenant_id is None:
            rows = await self._run(self._fetchall, "SELECT definition FROM workflows ORDER BY name")
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT definition FROM workflows WHERE tenant_id = ? ORDER BY name",
                tenant_id,
            )
        return [WorkflowDefinition.from_json(r["definition"]) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: RunRecord) -> None:
        await self._run(
            self._execute,
            f"INSERT INTO runs ({_RUN_COLUMNS}) VALUES ({', '.join('?' * 19)})",
            run.id,
            run.workflow_id,
            run.tenant_id,
            run.trigger_type.value,
            _dumps(run.trigger_data),
            run.status.value,
            _dumps(run.output),
            run.error,
            run.error_step,
            run.error_type,
            _dumps(run.definition),
            run.job_id,
            run.attempt,
            run.retry_of,
            run.priority,
            int(run.cancel_requested),
            run.created_at.isoformat(),
            run.started_at.isoformat() if run.started_at else None,
            run.completed_at.isoformat() if run.completed_at else None,
        )

    async def assign_job(self, run_id: str, job_id: str) -> None:
        await self._run(self._execute, "UPDATE runs SET job_id = ? WHERE id = ?", job_id, run_id)

    async def mark_run_started(self, run_id: str) -> None:
        await self._update_active_run(
            "status = ?, started_at = ?", run_id, RunStatus.RUNNING.value, utcnow().isoformat()
        )

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        existing = await self._run(
            self._fetchone,
            "SELECT id FROM step_history WHERE run_id = ? AND step_name = ?",
            run_id,
            step_name,
        )
        if existing:
            return
        await self._run(
            self._execute,
            "INSERT INTO step_history (run_id, step_name, status, started_at) VALUES (?, ?, ?, ?)",
            run_id,
            step_name,
            StepStatus.RUNNING.value,
            utcnow().isoformat(),
        )

    async def mark_step_completed(
        self,
        run_id: str,
        step_name: str,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        now = utcnow().isoformat()
        updated = await self._run(
            self._execute,
            """
            UPDATE step_history
            SET completed_at = ?, status = ?, output = ?, error = ?, error_type = ?
            WHERE run_id = ? AND step_name = ? AND completed_at IS NULL
            """,
            now,
            status.value,
            _dumps(output),
            error,
            error_type,
            run_id,
            step_name,
        )
        if updated == 0:
            await self._run(
                self._execute,
                """
                INSERT INTO step_history
                    (run_id, step_name, status, output, error, error_type, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                run_id,
                step_name,
                status.value,
                _dumps(output),
                error,
                error_type,
                now,
                now,
            )

    async def mark_step_skipped(self, run_id: str, step_name: str) -> None:
        await self._run(
            self._execute,
            "INSERT INTO step_history (run_id, step_name, status, completed_at) VALUES (?, ?, ?, ?)",
            run_id,
            step_name,
            StepStatus.SKIPPED.value,
            utcnow().isoformat(),
        )

    async def mark_run_completed(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_step: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        await self._update_active_run(
            "status = ?, output = ?, error = ?, error_step = ?, error_type = ?, completed_at = ?",
            run_id,
            RunStatus(status).value,
            _dumps(output),
            error,
            error_step,
            error_type,
            utcnow().isoformat(),
        )

    async def request_cancel(self, run_id: str) -> bool:
        updated = await self._run(
            self._execute,
            f"UPDATE runs SET cancel_requested = 1 WHERE id = ? AND status NOT IN ({_TERMINAL_PLACEHOLDERS})",
            run_id,
            *_TERMINAL,
        )
        return updated > 0

    async def is_cancel_requested(self, run_id: str) -> bool:
        row = await self._run(
            self._fetchone, "SELECT cancel_requested FROM runs WHERE id = ?", run_id
        )
        return bool(row and row["cancel_requested"])

    async def _steps_for(self, *run_ids: str) -> dict[str, list[StepResult]]:
        """Step history of each run in ``run_ids``, in execution order."""
        steps: dict[str, list[StepResult]] = {run_id: [] for run_id in run_ids}
        if not run_ids:
            return steps
        rows = await self._run(
            self._fetchall,
            "SELECT run_id, step_name, status, output, error, error_type, started_at, completed_at "
            f"FROM step_history WHERE run_id IN ({', '.join('?' * len(run_ids))}) ORDER BY id",
            *run_ids,
        )
        for r in rows:
            steps[r["run_id"]].append(
                StepResult(
                    step_name=r["step_name"],
                    status=r["status"],
                    output=_loads(r["output"]),
                    error=r["error"],
                    error_type=r["error_type"],
                    started_at=_ts(r["started_at"]),
                    finished_at=_ts(r["completed_at"]),
                )
            )
        return steps

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await self._run(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", run_id
        )
        if not row:
            return None
        steps = await self._steps_for(run_id)
        return self._row_to_run(row, steps[run_id])

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[RunRecord]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            self._fetchall,
            f"SELECT {_RUN_COLUMNS} FROM runs {where} ORDER BY created_at DESC LIMIT ?",
            *params,
            limit,
        )
        steps = await self._steps_for(*(row["id"] for row in rows))
        return [self._row_to_run(row, steps[row["id"]]) for row in rows]

    async def run_stats(self, tenant_id: Optional[str] = None) -> RunStats:
        if tenant_id is None:
            rows = await self._run(
                self._fetchall, "SELECT status, COUNT(*) AS n FROM runs GROUP BY status"
            )
            wf_row = await self._run(self._fetchone, "SELECT COUNT(*) AS n FROM workflows")
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT status, COUNT(*) AS n FROM runs WHERE tenant_id = ? GROUP BY status",
                tenant_id,
            )
            wf_row = await self._run(
                self._fetchone, "SELECT COUNT(*) AS n FROM workflows WHERE tenant_id = ?", tenant_id
            )
        return RunStats(by_status={r["status"]: r["n"] for r in rows}, workflows=wf_row["n"])
