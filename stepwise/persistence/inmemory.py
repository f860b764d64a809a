"""In-memory implementation of the run store."""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Optional

from ..contracts import RunStatus, StepResult, StepStatus, WorkflowDefinition, utcnow
from ..errors import TerminalRunError
from .models import RunRecord, RunStats
from .repository import RunStore


class InMemoryRunStore(RunStore):
    """Store workflow definitions and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._runs: Dict[str, RunRecord] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        self._workflows[definition.id] = definition.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._workflows.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_workflows(self, tenant_id: Optional[str] = None) -> list[WorkflowDefinition]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if tenant_id is None or wf.tenant_id == tenant_id
        ]

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def assign_job(self, run_id: str, job_id: str) -> None:
        run = self._runs.get(run_id)
        if run:
            run.job_id = job_id

    async def mark_run_started(self, run_id: str) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        if run.status.is_terminal:
            raise TerminalRunError(f"Run {run_id} already finished with status {run.status.value}")
        run.status = RunStatus.RUNNING
        run.started_at = utcnow()

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        # ignore duplicate starts
        if any(step.step_name == step_name for step in run.steps):
            return
        run.steps.append(
            StepResult(step_name=step_name, status=StepStatus.RUNNING, started_at=utcnow())
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
        run = self._runs.get(run_id)
        if not run:
            return
        now = utcnow()
        step = next(
            (s for s in run.steps if s.step_name == step_name and s.finished_at is None), None
        )
        if step is None:
            step = StepResult(step_name=step_name, started_at=now)
            run.steps.append(step)
        step.status = status
        step.output = output
        step.error = error
        step.error_type = error_type
        step.finished_at = now

    async def mark_step_skipped(self, run_id: str, step_name: str) -> None:
        run = self._runs.get(run_id)
        if run:
            run.steps.append(
                StepResult(step_name=step_name, status=StepStatus.SKIPPED, finished_at=utcnow())
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
        run = self._runs.get(run_id)
        if not run:
            return
        if run.status.is_terminal:
            raise TerminalRunError(f"Run {run_id} already finished with status {run.status.value}")
        run.status = status
        run.output = output
        run.error = error
        run.error_step = error_step
        run.error_type = error_type
        run.completed_at = utcnow()

    async def request_cancel(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        if not run or run.status.is_terminal:
            return False
        run.cancel_requested = True
        return True

    async def is_cancel_requested(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return bool(run and run.cancel_requested)

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[RunRecord]:
        runs = [
            run
            for run in self._runs.values()
            if (workflow_id is None or run.workflow_id == workflow_id)
            and (tenant_id is None or run.tenant_id == tenant_id)
            and (status is None or run.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [run.model_copy(deep=True) for run in runs[:limit]]

    async def run_stats(self, tenant_id: Optional[str] = None) -> RunStats:
        counts = Counter(
            run.status.value
            for run in self._runs.values()
            if tenant_id is None or run.tenant_id == tenant_id
        )
        workflows = await self.list_workflows(tenant_id)
        return RunStats(by_status=dict(counts), workflows=len(workflows))
