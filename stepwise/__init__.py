"""Stepwise: concurrent, resilient execution of multi-tenant step workflows."""

from .config import StepwiseConfig, load_config
from .contracts import (
    JobMessage,
    RunResult,
    RunStatus,
    StepDefinition,
    StepResult,
    StepStatus,
    TriggerDescriptor,
    TriggerSubmission,
    TriggerType,
    WorkflowDefinition,
)
from .dispatch import WorkflowDispatcher
from .execute import RunExecutor, WorkflowWorker
from .modules import register_builtin_modules
from .persistence import RunRecord, RunStore, get_store
from .registry import MODULES, ModuleRegistry, register_module, validate_definition
from .resilience import ResilienceService
from .scheduler import StepScheduler
from .transports import get_transport
from .variables import resolve

__version__ = "0.1.0"
__all__ = [
    "JobMessage",
    "MODULES",
    "ModuleRegistry",
    "ResilienceService",
    "RunExecutor",
    "RunRecord",
    "RunResult",
    "RunStatus",
    "RunStore",
    "StepDefinition",
    "StepResult",
    "StepScheduler",
    "StepStatus",
    "StepwiseConfig",
    "TriggerDescriptor",
    "TriggerSubmission",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowWorker",
    "get_store",
    "get_transport",
    "load_config",
    "register_builtin_modules",
    "register_module",
    "resolve",
    "validate_definition",
]
