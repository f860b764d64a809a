"""Static validation of workflow definitions against a module registry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Set

from pydantic import BaseModel, Field

from ..conditions import compile_condition
from ..contracts import TriggerType, WorkflowDefinition
from ..errors import UnknownModuleError, ValidationError
from ..graph import build_dependency_graph, find_cycle
from ..variables import INPUT_ROOT, VariableReference, iter_expressions, parse_reference
from .models import parse_module_path

if TYPE_CHECKING:
    from . import ModuleRegistry

logger = logging.getLogger(__name__)


class ValidationReport(BaseModel):
    """Result of validating one workflow definition."""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


def _check_trigger(definition: WorkflowDefinition, errors: List[str]) -> None:
    trigger = definition.trigger
    if trigger.type == TriggerType.CRON and not trigger.schedule:
        errors.append("Trigger: cron workflows require a schedule")
    if trigger.type == TriggerType.WEBHOOK and not trigger.webhook_path:
        errors.append("Trigger: webhook workflows require a webhookPath")


def validate_definition(definition: WorkflowDefinition, registry: "ModuleRegistry") -> ValidationReport:
    """Check ``definition`` once, independently of any run.

    Errors block acceptance of the definition; warnings do not. A reference to
    a variable produced by a *later* step is a warning, since the dependency
    graph still orders the steps correctly. A reference to a variable that no
    step produces is an error.
    """
    errors: List[str] = []
    warnings: List[str] = []

    _check_trigger(definition, errors)
    if not definition.steps:
        errors.append("Workflow has no steps")

    names: Set[str] = set()
    produced_at: Dict[str, int] = {}
    for index, step in enumerate(definition.steps):
        label = f'Step "{step.name}"'
        if step.name in names:
            errors.append(f"{label}: duplicate step name")
        names.add(step.name)

        try:
            parse_module_path(step.module)
            descriptor = registry.lookup(step.module)
        except ValidationError:
            errors.append(f"{label}: Invalid module path format: {step.module}")
        except UnknownModuleError:
            errors.append(f"{label}: Unknown module: {step.module}")
        else:
            for param in descriptor.required_params:
                if param not in step.params:
                    errors.append(f"{label}: missing required parameter '{param}' for {step.module}")

        if step.output_as:
            if step.output_as == INPUT_ROOT:
                errors.append(f'{label}: outputAs "{INPUT_ROOT}" is reserved for trigger data')
            elif step.output_as in produced_at:
                owner = definition.steps[produced_at[step.output_as]].name
                errors.append(f'{label}: outputAs "{step.output_as}" is already used by step "{owner}"')
            else:
                produced_at[step.output_as] = index

    reference_errors = False
    for index, step in enumerate(definition.steps):
        label = f'Step "{step.name}"'
        refs: List[VariableReference] = []
        for expression in iter_expressions(step.params):
            try:
                refs.append(parse_reference(expression))
            except ValidationError as exc:
                reference_errors = True
                errors.append(f"{label}: {exc}")
        if step.condition:
            try:
                refs.extend(compile_condition(step.condition).references.values())
            except ValidationError as exc:
                reference_errors = True
                errors.append(f"{label}: {exc}")

        reported: Set[str] = set()
        for ref in refs:
            if ref.root == INPUT_ROOT or ref.root in reported:
                continue
            reported.add(ref.root)
            position = produced_at.get(ref.root)
            if position is None:
                errors.append(f"{label}: Variable {{{{{ref.root}}}}} is not produced by any step")
            elif position > index:
                warnings.append(f"{label}: Variable {{{{{ref.root}}}}} may not be defined yet")

    if not reference_errors:
        cycle = find_cycle(build_dependency_graph(definition))
        if cycle:
            errors.append(f"Dependency cycle between steps: {' -> '.join(cycle)}")

    if definition.output_step:
        target = definition.step(definition.output_step)
        if target is None:
            errors.append(f'Output step "{definition.output_step}" does not exist')
        elif not target.output_as:
            errors.append(f'Output step "{definition.output_step}" has no outputAs')

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def ensure_valid(definition: WorkflowDefinition, registry: "ModuleRegistry") -> ValidationReport:
    """Validate ``definition`` and raise if it has errors.

    Raises:
        ValidationError: carrying every error found.
    """
    report = validate_definition(definition, registry)
    for warning in report.warnings:
        logger.warning(f"Workflow {definition.id} ({definition.name}): {warning}")
    if not report.valid:
        raise ValidationError(
            f"Workflow '{definition.name}' is invalid: {'; '.join(report.errors)}",
            report.errors,
        )
    return report
