"""Core contracts for stepwise workflows: definitions, statuses and job envelopes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(str, Enum):
    """Sources that can start a workflow run."""

    MANUAL = "manual"
    CRON = "cron"
    WEBHOOK = "webhook"
    CHAT = "chat"


class RunStatus(str, Enum):
    """Lifecycle of a workflow run."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.CANCELLED)


class StepStatus(str, Enum):
    """Lifecycle of a single step inside a running run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_done(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.SKIPPED)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TriggerDescriptor(_CamelModel):
    """How a workflow is started."""

    type: TriggerType = TriggerType.MANUAL
    schedule: Optional[str] = Field(default=None, description="Cron expression for cron triggers")
    webhook_path: Optional[str] = Field(default=None, alias="webhookPath")


class StepDefinition(_CamelModel):
    """Defines one module invocation in a workflow."""

    name: str
    module: str = Field(..., description="Module path: category.module.function")
    params: Dict[str, Any] = Field(default_factory=dict)
    output_as: Optional[str] = Field(default=None, alias="outputAs")
    condition: Optional[str] = None
    priority: Optional[int] = None
    concurrency: Optional[int] = None


class WorkflowDefinition(_CamelModel):
    """Tenant-owned, declarative description of a workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(default="default", alias="tenantId")
    name: str
    description: str = ""
    trigger: TriggerDescriptor = Field(default_factory=TriggerDescriptor)
    steps: List[StepDefinition] = Field(default_factory=list)
    required_credentials: List[str] = Field(default_factory=list, alias="requiredCredentials")
    output_step: Optional[str] = Field(default=None, alias="outputStep")

    def step(self, name: str) -> Optional[StepDefinition]:
        """Return the step called ``name`` if present."""
        return next((s for s in self.steps if s.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        """Return the persistence shape (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.model_validate_json(data)


class StepResult(BaseModel):
    """Outcome of one step within a run."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RunResult(BaseModel):
    """What a caller receives after submitting a trigger.

    The shape is identical for queued and inline execution; a queued result
    simply carries ``status="queued"`` and no output yet.
    """

    run_id: str
    job_id: Optional[str] = None
    queued: bool = False
    status: RunStatus
    output: Any = None
    error: Optional[str] = None
    error_step: Optional[str] = None
    error_type: Optional[str] = None
    steps: List[StepResult] = Field(default_factory=list)


class TriggerSubmission(_CamelModel):
    """Input to the trigger submission interface."""

    workflow_id: str = Field(..., alias="workflowId")
    tenant_id: str = Field(..., alias="tenantId")
    trigger_type: TriggerType = Field(default=TriggerType.MANUAL, alias="triggerType")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, alias="triggerData")
    priority: Optional[int] = None


class JobMessage(BaseModel):
    """Envelope published to the durable queue for one run attempt."""

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    workflow_id: str
    tenant_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    attempt: int = 1
    max_attempts: int = 3
    timestamp: datetime = Field(default_factory=utcnow)
    spec_version: str = "1.0"

    @property
    def can_retry(self) -> bool:
        return self.attempt < self.max_attempts

    def bump_attempt(self, run_id: str) -> "JobMessage":
        """Return a copy for the next whole-run attempt of this job."""
        return self.model_copy(
            update={
                "job_id": str(uuid.uuid4()),
                "run_id": run_id,
                "attempt": self.attempt + 1,
                "timestamp": utcnow(),
            }
        )

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
