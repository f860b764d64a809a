"""Step dependency graph derived from variable references."""

from __future__ import annotations

from typing import Dict, List, Optional, Set

from .conditions import condition_references
from .contracts import StepDefinition, WorkflowDefinition
from .variables import INPUT_ROOT, VariableReference, find_references


def step_references(step: StepDefinition) -> List[VariableReference]:
    """All references made by a step's params and condition."""
    refs = find_references(step.params)
    if step.condition:
        refs.extend(condition_references(step.condition))
    return refs


def producers(definition: WorkflowDefinition) -> Dict[str, str]:
    """Map each ``outputAs`` name to the step producing it."""
    return {
        step.output_as: step.name
        for step in definition.steps
        if step.output_as and step.output_as != INPUT_ROOT
    }


def build_dependency_graph(definition: WorkflowDefinition) -> Dict[str, Set[str]]:
    """Return ``{step name: names of the steps it depends on}``."""
    produced_by = producers(definition)
    graph: Dict[str, Set[str]] = {}
    for step in definition.steps:
        graph[step.name] = {
            produced_by[ref.root] for ref in step_references(step) if ref.root in produced_by
        }
    return graph


def dependents(graph: Dict[str, Set[str]]) -> Dict[str, Set[str]]:
    """Invert ``graph``: ``{step name: steps that depend on it}``."""
    inverted: Dict[str, Set[str]] = {name: set() for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            inverted.setdefault(dep, set()).add(name)
    return inverted


def find_cycle(graph: Dict[str, Set[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a list of step names, if any."""
    visiting: Set[str] = set()
    done: Set[str] = set()
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        visiting.add(node)
        path.append(node)
        for dep in sorted(graph.get(node, ())):
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in graph:
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None
