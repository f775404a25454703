from __future__ import annotations

from typing import Iterable

from .expressions import (
    ArrayLiteral,
    Binary,
    Call,
    Conditional,
    Identifier,
    Index,
    Literal,
    Logical,
    Member,
    Node,
    Unary,
    parse_expression,
)
from .models import (
    AsyncExpression,
    CompositeExpression,
    Condition,
    CustomExpression,
    DerivationRule,
    FieldValueExpression,
    FormValueExpression,
    HttpExpression,
    HttpRequestSpec,
    JavascriptExpression,
)
from .values import split_path

WHOLE_FORM = "*"
FORM_ROOT = "formValue"


def _with_root(path: str) -> set[str]:
    segments = split_path(path)
    if not segments:
        return set()
    return {segments[0], ".".join(segments)}


def _unwind(node: Node) -> tuple[Node, list[str | None], list[Node]]:
    """Return the chain root, its path segments (None for a computed key) and the computed key nodes."""
    segments: list[str | None] = []
    computed: list[Node] = []
    while isinstance(node, (Member, Index)):
        if isinstance(node, Member):
            segments.append(node.property)
        elif isinstance(node.index, Literal) and isinstance(node.index.value, (str, int)) and not isinstance(node.index.value, bool):
            segments.append(str(node.index.value))
        else:
            segments.append(None)
            computed.append(node.index)
        node = node.object
    segments.reverse()
    return node, segments, computed


def _collect(node: Node, found: set[str]) -> None:
    if isinstance(node, (Member, Index)):
        root, segments, computed = _unwind(node)
        if isinstance(root, Identifier) and root.name == FORM_ROOT:
            known: list[str] = []
            for segment in segments:
                if segment is None:
                    found.add(WHOLE_FORM)
                    break
                known.append(segment)
            if known:
                found.update(_with_root(".".join(known)))
        else:
            _collect(root, found)
        for item in computed:
            _collect(item, found)
    elif isinstance(node, Identifier):
        if node.name == FORM_ROOT:
            found.add(WHOLE_FORM)
    elif isinstance(node, Call):
        callee = node.callee
        if isinstance(callee, Member):
            _collect(callee.object, found)
        for argument in node.arguments:
            _collect(argument, found)
    elif isinstance(node, ArrayLiteral):
        for element in node.elements:
            _collect(element, found)
    elif isinstance(node, Unary):
        _collect(node.operand, found)
    elif isinstance(node, (Binary, Logical)):
        _collect(node.left, found)
        _collect(node.right, found)
    elif isinstance(node, Conditional):
        _collect(node.test, found)
        _collect(node.consequent, found)
        _collect(node.alternate, found)


def extract_source_dependencies(source: str) -> frozenset[str]:
    found: set[str] = set()
    _collect(parse_expression(source.strip()), found)
    return frozenset(found)


def _request_dependencies(request: HttpRequestSpec) -> frozenset[str]:
    sources = [value for _, value in (*request.query_params, *request.body)]
    if not sources:
        return frozenset({WHOLE_FORM})
    found: set[str] = set()
    for source in sources:
        found.update(extract_source_dependencies(source))
    return frozenset(found)


def extract_dependencies(expression: Condition | None, field_key: str | None = None) -> frozenset[str]:
    if expression is None or isinstance(expression, (bool, str)):
        return frozenset()
    if isinstance(expression, FieldValueExpression):
        path = expression.path or field_key
        return frozenset(_with_root(path)) if path else frozenset()
    if isinstance(expression, (FormValueExpression, CustomExpression, AsyncExpression)):
        return frozenset({WHOLE_FORM})
    if isinstance(expression, JavascriptExpression):
        return extract_source_dependencies(expression.source)
    if isinstance(expression, HttpExpression):
        return _request_dependencies(expression.request)
    if isinstance(expression, CompositeExpression):
        return union(extract_dependencies(child, field_key) for child in expression.children)
    return frozenset()


def derivation_dependencies(rule: DerivationRule) -> frozenset[str]:
    if rule.depends_on:
        found: set[str] = set()
        for path in rule.depends_on:
            found.update(_with_root(path) if path != WHOLE_FORM else {WHOLE_FORM})
        return frozenset(found)
    found = set(extract_dependencies(rule.condition))
    if rule.expression is not None:
        found.update(extract_source_dependencies(rule.expression))
    elif rule.http is not None:
        found.update(_request_dependencies(rule.http))
    elif rule.function_name or rule.async_function_name:
        found.add(WHOLE_FORM)
    return frozenset(found)


def union(items: Iterable[frozenset[str]]) -> frozenset[str]:
    merged: set[str] = set()
    for item in items:
        merged.update(item)
    return frozenset(merged)
