"""PostgreSQL implementation of the run store."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..contracts import RunStatus, StepResult, StepStatus, WorkflowDefinition, utcnow
from ..errors import TerminalRunError
from .models import RunRecord, RunStats
from .repository import RunStore

_TERMINAL = [s.value for s in RunStatus if s.is_terminal]

_RUN_COLUMNS = (
    "id, workflow_id, tenant_id, trigger_type, trigger_data, status, output, error, "
    "error_step, error_type, definition, job_id, attempt, retry_of, priority, "
    "cancel_requested, created_at, started_at, completed_at"
)


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresRunStore(RunStore):
    """Persist workflow definitions and runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                definition JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_data JSONB,
                status TEXT NOT NULL,
                output JSONB,
                error TEXT,
                error_step TEXT,
                error_type TEXT,
                definition JSONB,
                job_id TEXT,
                attempt INTEGER NOT NULL DEFAULT 1,
                retry_of TEXT,
                priority INTEGER NOT NULL DEFAULT 0,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                error TEXT,
                error_type TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 1"
        return int(status.split()[-1]) if status else 0

    @staticmethod
    def _row_to_run(row: asyncpg.Record, steps: list[StepResult]) -> RunRecord:
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
            cancel_requested=row["cancel_requested"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            steps=steps,
        )

    async def _check_update(self, result: str, run_id: str) -> None:
        """Raise TerminalRunError when a guarded run update matched no active run."""
        if self._affected(result):
            return
        row = await self._fetchrow("SELECT status FROM runs WHERE id = $1", run_id)
        if row is not None:
            raise TerminalRunError(f"Run {run_id} already finished with status {row['status']}")

    # ------------------------------------------------------------------
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, tenant_id, name, definition, updated_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE SET
                tenant_id = EXCLUDED.tenant_id,
                name = EXCLUDED.name,
                definition = EXCLUDED.definition,
                updated_at = EXCLUDED.updated_at
            """,
            definition.id,
            definition.tenant_id,
            definition.name,
            definition.to_json(),
            utcnow(),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await self._fetchrow("SELECT definition FROM workflows WHERE id = $1", workflow_id)
        return WorkflowDefinition.model_validate(_loads(row["definition"])) if row else None

    async def list_workflows(self, tenant_id: Optional[str] = None) -> list[WorkflowDefinition]:
        if tenant_id is None:
            rows = await self._fetch("SELECT definition FROM workflows ORDER BY name")
        else:
            rows = await self._fetch(
                "SELECT definition FROM workflows WHERE tenant_id = $1 ORDER BY name", tenant_id
            )
        return [WorkflowDefinition.model_validate(_loads(r["definition"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> None:
        placeholders = ", ".join(f"${i}" for i in range(1, 20))
        await self._execute(
            f"INSERT INTO runs ({_RUN_COLUMNS}) VALUES ({placeholders})",
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
            run.cancel_requested,
            run.created_at,
            run.started_at,
            run.completed_at,
        )

    async def assign_job(self, run_id: str, job_id: str) -> None:
        await self._execute("UPDATE runs SET job_id = $1 WHERE id = $2", job_id, run_id)

    async def mark_run_started(self, run_id: str) -> None:
        result = await self._execute(
            "UPDATE runs SET status = $1, started_at = $2 WHERE id = $3 AND NOT (status = ANY($4::text[]))",
            RunStatus.RUNNING.value,
            utcnow(),
            run_id,
            _TERMINAL,
        )
        await self._check_update(result, run_id)

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        await self._execute(
            """
            INSERT INTO step_history (run_id, step_name, status, started_at)
            SELECT $1, $2, $3, $4
            WHERE NOT EXISTS (
                SELECT 1 FROM step_history WHERE run_id = $1 AND step_name = $2
            )
            """,
            run_id,
            step_name,
            StepStatus.RUNNING.value,
            utcnow(),
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
        now = utcnow()
        result = await self._execute(
            """
            UPDATE step_history
            SET completed_at = $1, status = $2, output = $3, error = $4, error_type = $5
            WHERE run_id = $6 AND step_name = $7 AND completed_at IS NULL
            """,
            now,
            status.value,
            _dumps(output),
            error,
            error_type,
            run_id,
            step_name,
        )
        if self._affected(result) == 0:
            await self._execute(
                """
                INSERT INTO step_history
                    (run_id, step_name, status, output, error, error_type, started_at, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $7)
                """,
                run_id,
                step_name,
                status.value,
                _dumps(output),
                error,
                error_type,
                now,
            )

    async def mark_step_skipped(self, run_id: str, step_name: str) -> None:
        await self._execute(
            "INSERT INTO step_history (run_id, step_name, status, completed_at) VALUES ($1, $2, $3, $4)",
            run_id,
            step_name,
            StepStatus.SKIPPED.value,
            utcnow(),
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
        result = await self._execute(
            """
            UPDATE runs
            SET status = $1, output = $2, error = $3, error_step = $4, error_type = $5, completed_at = $6
            WHERE id = $7 AND NOT (status = ANY($8::text[]))
            """,
            RunStatus(status).value,
            _dumps(output),
            error,
            error_step,
            error_type,
            utcnow(),
            run_id,
            _TERMINAL,
        )
        await self._check_update(result, run_id)

    async def request_cancel(self, run_id: str) -> bool:
        result = await self._execute(
            "UPDATE runs SET cancel_requested = TRUE WHERE id = $1 AND NOT (status = ANY($2::text[]))",
            run_id,
            _TERMINAL,
        )
        return self._affected(result) > 0

    async def is_cancel_requested(self, run_id: str) -> bool:
        row = await self._fetchrow("SELECT cancel_requested FROM runs WHERE id = $1", run_id)
        return bool(row and row["cancel_requested"])

    @staticmethod
    async def _steps_for(conn: asyncpg.Connection, run_ids: list[str]) -> dict[str, list[StepResult]]:
        """Step history of each run in ``run_ids``, in execution order."""
        steps: dict[str, list[StepResult]] = {run_id: [] for run_id in run_ids}
        if not run_ids:
            return steps
        rows = await conn.fetch(
            "SELECT run_id, step_name, status, output, error, error_type, started_at, completed_at "
            "FROM step_history WHERE run_id = ANY($1::text[]) ORDER BY id",
            run_ids,
        )
        for r in rows:
            steps[r["run_id"]].append(
                StepResult(
                    step_name=r["step_name"],
                    status=r["status"],
                    output=_loads(r["output"]),
                    error=r["error"],
                    error_type=r["error_type"],
                    started_at=r["started_at"],
                    finished_at=r["completed_at"],
                )
            )
        return steps

    async def get_run(self, run_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = $1", run_id)
            if not row:
                return None
            steps = await self._steps_for(conn, [run_id])
        finally:
            await conn.close()
        return self._row_to_run(row, steps[run_id])

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[RunRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workflow_id", workflow_id),
            ("tenant_id", tenant_id),
            ("status", RunStatus(status).value if status is not None else None),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_RUN_COLUMNS} FROM runs {where} ORDER BY created_at DESC LIMIT ${len(params)}",
                *params,
            )
            steps = await self._steps_for(conn, [row["id"] for row in rows])
        finally:
            await conn.close()
        return [self._row_to_run(row, steps[row["id"]]) for row in rows]

    async def run_stats(self, tenant_id: Optional[str] = None) -> RunStats:
        if tenant_id is None:
            rows = await self._fetch("SELECT status, COUNT(*) AS n FROM runs GROUP BY status")
            wf_row = await self._fetchrow("SELECT COUNT(*) AS n FROM workflows")
        else:
            rows = await self._fetch(
                "SELECT status, COUNT(*) AS n FROM runs WHERE tenant_id = $1 GROUP BY status",
                tenant_id,
            )
            wf_row = await self._fetchrow(
                "SELECT COUNT(*) AS n FROM workflows WHERE tenant_id = $1", tenant_id
            )
        return RunStats(by_status={r["status"]: r["n"] for r in rows}, workflows=wf_row["n"])
