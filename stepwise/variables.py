"""Variable references: ``{{path.to.value}}`` markers resolved against a run's output bag.

The bag maps root names to JSON-like values. ``input`` holds the trigger data,
every other root is the ``outputAs`` name of a step that already succeeded.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Set, Tuple, Union

from .errors import InvalidReferenceError, MissingVariableError

INPUT_ROOT = "input"

MARKER_RE = re.compile(r"\{\{([^{}]*)\}\}")
_ROOT_RE = re.compile(r"[A-Za-z_][\w-]*")
_SEGMENT_RE = re.compile(r"\.([^.\[\]\s]+)|\[(\d+)\]")

Segment = Union[str, int]


@dataclass(frozen=True)
class VariableReference:
    """A parsed ``{{...}}`` expression."""

    expression: str
    root: str
    segments: Tuple[Segment, ...] = ()

    def __str__(self) -> str:
        return "{{" + self.expression + "}}"


def parse_reference(expression: str) -> VariableReference:
    """Parse the text between ``{{`` and ``}}`` into a reference."""
    expr = expression.strip()
    match = _ROOT_RE.match(expr)
    if not match:
        raise InvalidReferenceError(expr, "expected a variable name")

    segments: List[Segment] = []
    pos = match.end()
    while pos < len(expr):
        seg = _SEGMENT_RE.match(expr, pos)
        if not seg:
            raise InvalidReferenceError(expr, f"unexpected '{expr[pos:]}'")
        key, index = seg.groups()
        segments.append(key if key is not None else int(index))
        pos = seg.end()
    return VariableReference(expression=expr, root=match.group(0), segments=tuple(segments))


def iter_expressions(template: Any) -> Iterator[str]:
    """Yield the raw text of every marker in ``template`` (depth first)."""
    if isinstance(template, str):
        for match in MARKER_RE.finditer(template):
            yield match.group(1)
    elif isinstance(template, Mapping):
        for value in template.values():
            yield from iter_expressions(value)
    elif isinstance(template, (list, tuple)):
        for item in template:
            yield from iter_expressions(item)


def find_references(template: Any) -> List[VariableReference]:
    """Return every reference found in ``template``.

    Raises:
        InvalidReferenceError: if a marker is malformed.
    """
    return [parse_reference(expr) for expr in iter_expressions(template)]


def reference_roots(template: Any) -> Set[str]:
    """Names of all roots referenced by ``template``."""
    return {ref.root for ref in find_references(template)}


def has_markers(template: Any) -> bool:
    return next(iter_expressions(template), None) is not None


def lookup(reference: VariableReference, bag: Mapping[str, Any], step_name: Optional[str] = None) -> Any:
    """Walk ``bag`` along ``reference`` and return the exact value found."""
    if reference.root not in bag:
        raise MissingVariableError(reference.expression, step_name, reference.root)

    value = bag[reference.root]
    walked = reference.root
    for segment in reference.segments:
        if isinstance(segment, int):
            walked += f"[{segment}]"
            if isinstance(value, (list, tuple)) and segment < len(value):
                value = value[segment]
                continue
        else:
            walked += f".{segment}"
            if isinstance(value, Mapping) and segment in value:
                value = value[segment]
                continue
            # items.0 is accepted as an alias of items[0]
            if isinstance(value, (list, tuple)) and segment.isdigit() and int(segment) < len(value):
                value = value[int(segment)]
                continue
        raise MissingVariableError(reference.expression, step_name, walked)
    return value


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _resolve_string(template: str, bag: Mapping[str, Any], step_name: Optional[str]) -> Any:
    matches = list(MARKER_RE.finditer(template))
    if not matches:
        return template

    if len(matches) == 1 and matches[0].span() == (0, len(template)):
        return lookup(parse_reference(matches[0].group(1)), bag, step_name)

    return MARKER_RE.sub(
        lambda m: _render(lookup(parse_reference(m.group(1)), bag, step_name)),
        template,
    )


def resolve(template: Any, bag: Mapping[str, Any], step_name: Optional[str] = None) -> Any:
    """Resolve every marker inside ``template`` against ``bag``.

    A string consisting of exactly one marker yields the referenced value with
    its type preserved; markers embedded in longer strings are interpolated.
    Dicts and lists are resolved recursively into new containers and other
    values are returned unchanged. Neither ``template`` nor ``bag`` is modified.

    Raises:
        MissingVariableError: if any referenced path does not exist.
        InvalidReferenceError: if a marker is malformed.
    """
    if isinstance(template, str):
        return _resolve_string(template, bag, step_name)
    if isinstance(template, Mapping):
        return {key: resolve(value, bag, step_name) for key, value in template.items()}
    if isinstance(template, (list, tuple)):
        return [resolve(item, bag, step_name) for item in template]
    return template


__all__ = [
    "INPUT_ROOT",
    "MARKER_RE",
    "VariableReference",
    "find_references",
    "has_markers",
    "iter_expressions",
    "lookup",
    "parse_reference",
    "reference_roots",
    "resolve",
]
