"""Data models for persisted workflow runs."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import (
    RunResult,
    RunStatus,
    StepResult,
    TriggerType,
    WorkflowDefinition,
    utcnow,
)


class RunStatusView(BaseModel):
    """Answer to a run status query."""

    model_config = ConfigDict(populate_by_name=True)

    status: RunStatus
    output: Any = None
    error: Optional[str] = None
    error_step: Optional[str] = Field(default=None, alias="errorStep")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")


class RunRecord(BaseModel):
    """Persisted state of one workflow run attempt."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    tenant_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.QUEUED
    steps: List[StepResult] = Field(default_factory=list)
    output: Any = None
    error: Optional[str] = None
    error_step: Optional[str] = None
    error_type: Optional[str] = None
    definition: Optional[Dict[str, Any]] = Field(default=None, description="Definition snapshot")
    job_id: Optional[str] = None
    attempt: int = 1
    retry_of: Optional[str] = None
    priority: int = 0
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def snapshot(self) -> WorkflowDefinition:
        """The workflow definition this run executes."""
        if self.definition is None:
            raise ValueError(f"Run {self.id} has no definition snapshot")
        return WorkflowDefinition.model_validate(self.definition)

    def step(self, name: str) -> Optional[StepResult]:
        return next((s for s in reversed(self.steps) if s.step_name == name), None)

    def to_status(self) -> RunStatusView:
        return RunStatusView(
            status=self.status,
            output=self.output,
            error=self.error,
            error_step=self.error_step,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def to_result(self, queued: bool = False) -> RunResult:
        return RunResult(
            run_id=self.id,
            job_id=self.job_id,
            queued=queued,
            status=self.status,
            output=self.output,
            error=self.error,
            error_step=self.error_step,
            error_type=self.error_type,
            steps=list(self.steps),
        )


class RunStats(BaseModel):
    """Aggregate run counts, e.g. for a dashboard."""

    by_status: Dict[str, int] = Field(default_factory=dict)
    workflows: int = 0

    @property
    def successful_runs(self) -> int:
        return self.by_status.get(RunStatus.SUCCESS.value, 0)

    @property
    def failed_runs(self) -> int:
        return self.by_status.get(RunStatus.ERROR.value, 0)

    @property
    def total_executions(self) -> int:
        return self.successful_runs + self.failed_runs

    @property
    def total_runs(self) -> int:
        return sum(self.by_status.values())
