"""Error taxonomy for stepwise workflows."""

from __future__ import annotations

from typing import List, Optional


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class ValidationError(StepwiseError):
    """A workflow definition or module path was rejected before execution."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class InvalidReferenceError(ValidationError):
    """A ``{{...}}`` marker does not follow the variable path grammar."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"Invalid variable reference {{{{{expression}}}}}: {reason}")
        self.expression = expression


class UnknownModuleError(StepwiseError, KeyError):
    """No module is registered under the requested path."""

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"Module '{self.path}' is not registered"


class DuplicateModuleError(StepwiseError):
    """A module path was registered twice."""


class MissingVariableError(StepwiseError):
    """A variable reference could not be resolved at run time."""

    def __init__(self, expression: str, step_name: Optional[str] = None, segment: Optional[str] = None) -> None:
        where = f" in step '{step_name}'" if step_name else ""
        detail = f" (no value at '{segment}')" if segment else ""
        super().__init__(f"Missing variable {{{{{expression}}}}}{where}{detail}")
        self.expression = expression
        self.step_name = step_name
        self.segment = segment


class ModuleExecutionError(StepwiseError):
    """The module implementation raised while handling a step."""

    def __init__(self, step_name: str, module_path: str, cause: BaseException) -> None:
        super().__init__(f"Module {module_path} failed in step '{step_name}': {cause}")
        self.step_name = step_name
        self.module_path = module_path
        self.cause = cause


class IntegrationError(StepwiseError):
    """An integration is unhealthy, as opposed to a bad call."""

    def __init__(self, message: str, integration: str) -> None:
        super().__init__(message)
        self.integration = integration


class CircuitOpenError(IntegrationError):
    """Calls are short-circuited while an integration's breaker is open."""

    def __init__(self, integration: str, retry_after: float = 0.0) -> None:
        super().__init__(
            f"Circuit for integration '{integration}' is open, retry after {retry_after:.1f}s",
            integration,
        )
        self.retry_after = retry_after


class ModuleTimeoutError(IntegrationError, TimeoutError):
    """A module call exceeded its timeout."""

    def __init__(self, integration: str, timeout: float) -> None:
        super().__init__(
            f"Call to integration '{integration}' timed out after {timeout}s", integration
        )
        self.timeout = timeout


class QueueUnavailableError(StepwiseError):
    """The durable queue backend could not be reached."""


class WorkflowNotFoundError(StepwiseError):
    """No workflow definition exists for the given id and tenant."""


class RunNotFoundError(StepwiseError):
    """No run exists for the given id."""


class TerminalRunError(StepwiseError):
    """A finished run cannot change its outcome."""


# Failures that a whole-run retry cannot fix.
NON_RETRYABLE_ERRORS = ("MissingVariableError", "ValidationError", "InvalidReferenceError", "UnknownModuleError")
