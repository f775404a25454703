from __future__ import annotations

from typing import Any, Mapping

from .dependencies import WHOLE_FORM, extract_dependencies, extract_source_dependencies
from .models import (
    AsyncExpression,
    CompositeExpression,
    Condition,
    CustomExpression,
    FieldValueExpression,
    FormValueExpression,
    HttpExpression,
    JavascriptExpression,
    SchemaApplicationRule,
    StateLogicRule,
    ValidatorRule,
)
from .registry import FIELD_SCOPE

LOCAL = "local"
CROSS_FIELD = "cross-field"


def _mentions_other_field(dependencies: frozenset[str], source_field_key: str) -> bool:
    return any(item == WHOLE_FORM or (item != source_field_key and not source_field_key.startswith(item + ".")) for item in dependencies)


def is_cross_field_expression(
    expression: Condition | None,
    source_field_key: str,
    function_scopes: Mapping[str, str] | None = None,
) -> bool:
    scopes = function_scopes or {}
    if expression is None or isinstance(expression, bool):
        return False
    if isinstance(expression, str):
        return True
    if isinstance(expression, FieldValueExpression):
        return bool(expression.path) and expression.path != source_field_key
    if isinstance(expression, FormValueExpression):
        return True
    if isinstance(expression, CustomExpression):
        return scopes.get(expression.function_name) != FIELD_SCOPE
    if isinstance(expression, JavascriptExpression):
        return bool(extract_source_dependencies(expression.source))
    if isinstance(expression, CompositeExpression):
        return any(is_cross_field_expression(child, source_field_key, scopes) for child in expression.children)
    if isinstance(expression, AsyncExpression):
        return scopes.get(expression.function_name) != FIELD_SCOPE
    if isinstance(expression, HttpExpression):
        return _mentions_other_field(extract_dependencies(expression), source_field_key)
    return False


def classify(rule: Any, source_field_key: str, function_scopes: Mapping[str, str] | None = None) -> str:
    if isinstance(rule, ValidatorRule):
        cross = is_cross_field_expression(rule.when, source_field_key, function_scopes)
        if rule.expression is not None:
            cross = cross or bool(extract_source_dependencies(rule.expression))
        return CROSS_FIELD if cross else LOCAL
    if isinstance(rule, StateLogicRule):
        return CROSS_FIELD if is_cross_field_expression(rule.condition, source_field_key, function_scopes) else LOCAL
    if isinstance(rule, SchemaApplicationRule):
        return CROSS_FIELD if is_cross_field_expression(rule.condition, source_field_key, function_scopes) else LOCAL
    return LOCAL
