"""Repository abstraction for workflow definitions and run state."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..contracts import RunStatus, StepStatus, WorkflowDefinition
from .models import RunRecord, RunStats


class RunStore(Protocol):
    """Protocol for run state persistence backends."""

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(self, tenant_id: Optional[str] = None) -> list[WorkflowDefinition]:
        """Return stored definitions, optionally for one tenant."""

    async def create_run(self, run: RunRecord) -> None:
        """Persist a new run, normally in ``queued`` state."""

    async def assign_job(self, run_id: str, job_id: str) -> None:
        """Record the queue job carrying this run."""

    async def mark_run_started(self, run_id: str) -> None:
        """Move a run to ``running``."""

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        """Record start of a step. Duplicate starts are ignored."""

    async def mark_step_completed(
        self,
        run_id: str,
        step_name: str,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        """Record the outcome of a started step."""

    async def mark_step_skipped(self, run_id: str, step_name: str) -> None:
        """Record a step whose condition evaluated false."""

    async def mark_run_completed(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_step: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        """Finish a run. Raises ``TerminalRunError`` if it already finished."""

    async def request_cancel(self, run_id: str) -> bool:
        """Flag a non-terminal run for cancellation."""

    async def is_cancel_requested(self, run_id: str) -> bool:
        """Whether cancellation was requested for a run."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run with its step history."""

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[RunRecord]:
        """Return runs, newest first."""

    async def run_stats(self, tenant_id: Optional[str] = None) -> RunStats:
        """Aggregate run counts by status."""
