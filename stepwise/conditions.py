"""Boolean step conditions such as ``{{input.count}} > 3 && {{lead.email}} != null``."""

from __future__ import annotations

import ast
import logging
import operator
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ValidationError
from .variables import MARKER_RE, VariableReference, lookup, parse_reference

logger = logging.getLogger(__name__)

_QUOTED_RE = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")
_BANG_RE = re.compile(r"!(?!=)")
_JS_OPERATORS = (("===", "=="), ("!==", "!="), ("&&", " and "), ("||", " or "))

_LITERALS: Dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}

_COMPARATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.Compare,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.List,
    ast.Tuple,
    *_COMPARATORS,
)


class CompiledCondition:
    """A parsed condition ready to be evaluated against a bag."""

    def __init__(self, source: str, tree: ast.Expression, references: Dict[str, VariableReference]) -> None:
        self.source = source
        self.tree = tree
        self.references = references

    def evaluate(self, bag: Mapping[str, Any], step_name: Optional[str] = None) -> bool:
        return bool(self._eval(self.tree.body, bag, step_name))

    def _eval(self, node: ast.AST, bag: Mapping[str, Any], step_name: Optional[str]) -> Any:
        if isinstance(node, ast.BoolOp):
            is_and = isinstance(node.op, ast.And)
            value: Any = None
            for operand in node.values:
                value = self._eval(operand, bag, step_name)
                if is_and and not value:
                    return value
                if not is_and and value:
                    return value
            return value
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, bag, step_name)
            if isinstance(node.op, ast.Not):
                return not operand
            try:
                return -operand if isinstance(node.op, ast.USub) else +operand
            except TypeError:
                logger.debug(f"Condition '{self.source}' applied a sign to non-numeric value {operand!r}")
                return None
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, bag, step_name)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, bag, step_name)
                try:
                    if not _COMPARATORS[type(op)](left, right):
                        return False
                except TypeError:
                    logger.debug(f"Condition '{self.source}' compared incompatible values {left!r} and {right!r}")
                    return False
                left = right
            return True
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(item, bag, step_name) for item in node.elts]
        if isinstance(node, ast.Name):
            if node.id in self.references:
                return lookup(self.references[node.id], bag, step_name)
            return _LITERALS[node.id]
        raise ValidationError(f"Unsupported condition syntax in '{self.source}'")


def _rewrite(expression: str) -> Tuple[str, Dict[str, VariableReference]]:
    """Swap markers for placeholder names and JS operators for Python ones."""
    references: Dict[str, VariableReference] = {}

    def _placeholder(match: re.Match) -> str:
        name = f"__ref{len(references)}"
        references[name] = parse_reference(match.group(1))
        return f" {name} "

    parts = _QUOTED_RE.split(expression)
    for i in range(0, len(parts), 2):
        text = MARKER_RE.sub(_placeholder, parts[i])
        for js_op, py_op in _JS_OPERATORS:
            text = text.replace(js_op, py_op)
        parts[i] = _BANG_RE.sub(" not ", text)
    return "".join(parts).strip(), references


def compile_condition(expression: str) -> CompiledCondition:
    """Parse and check ``expression``.

    Raises:
        ValidationError: if the condition is not a supported boolean expression.
    """
    source, references = _rewrite(expression)
    if not source:
        raise ValidationError(f"Condition '{expression}' is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ValidationError(f"Invalid condition '{expression}': {exc.msg}") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ValidationError(
                f"Invalid condition '{expression}': {type(node).__name__} is not allowed"
            )
        if isinstance(node, ast.Name) and node.id not in references and node.id not in _LITERALS:
            raise ValidationError(
                f"Invalid condition '{expression}': bare name '{node.id}', use {{{{{node.id}}}}}"
            )
    return CompiledCondition(expression, tree, references)


def check_condition(expression: str) -> None:
    """Raise ValidationError unless ``expression`` is a supported condition."""
    compile_condition(expression)


def condition_references(expression: str) -> List[VariableReference]:
    """References used by a condition, in order of appearance."""
    return list(compile_condition(expression).references.values())


def evaluate_condition(expression: str, bag: Mapping[str, Any], step_name: Optional[str] = None) -> bool:
    """Evaluate ``expression`` against ``bag``.

    References are resolved lazily, so ``{{a}} && {{a.b}}`` only looks up
    ``a.b`` when ``a`` is truthy. A reference that is reached but missing raises
    :class:`~stepwise.errors.MissingVariableError`.
    """
    return compile_condition(expression).evaluate(bag, step_name)
