from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import ConfigurationError, EvaluationError
from .expressions import (
    DEFAULT_ROOTS,
    compare_values,
    compile_expression,
    evaluate_program,
    is_truthy,
    strict_equals,
    to_string,
)
from .models import (
    ASYNC_EXPRESSION_TYPES,
    AsyncExpression,
    CompositeExpression,
    Condition,
    CustomExpression,
    FieldValueExpression,
    FormValueExpression,
    HttpExpression,
    JavascriptExpression,
)
from .registry import FunctionRegistry
from .values import get_path

logger = logging.getLogger(__name__)

_ORDERING = {"greater": ">", "less": "<", "greaterOrEqual": ">=", "lessOrEqual": "<="}


@dataclass(slots=True)
class FormState:
    invalid: bool = False
    submitting: bool = False
    page_invalid: bool = False


@dataclass(slots=True)
class EvaluationContext:
    field_path: str
    field_value: Any
    form_value: dict[str, Any]
    external_data: dict[str, Any] = field(default_factory=dict)
    form_state: FormState = field(default_factory=FormState)
    registry: FunctionRegistry | None = None

    def scope(self) -> dict[str, Any]:
        return {"fieldValue": self.field_value, "formValue": self.form_value, "externalData": self.external_data}

    def value_at(self, path: str | None) -> Any:
        if not path or path == self.field_path:
            return self.field_value
        return get_path(self.form_value, path)

    @property
    def functions(self) -> dict[str, Callable[..., Any]]:
        return dict(self.registry.expression_functions) if self.registry else {}


def compare(operator: str, actual: Any, expected: Any, pattern: Any = None) -> bool:
    if operator == "equals":
        return strict_equals(actual, expected)
    if operator == "notEquals":
        return not strict_equals(actual, expected)
    if operator in _ORDERING:
        return compare_values(_ORDERING[operator], actual, expected)
    if operator == "contains":
        if isinstance(actual, str):
            return to_string(expected) in actual
        if isinstance(actual, list):
            return any(strict_equals(item, expected) for item in actual)
        return False
    if operator == "startsWith":
        return isinstance(actual, str) and actual.startswith(to_string(expected))
    if operator == "endsWith":
        return isinstance(actual, str) and actual.endswith(to_string(expected))
    if operator == "matches":
        if actual is None or pattern is None:
            return False
        return pattern.search(to_string(actual)) is not None
    raise EvaluationError(f"unsupported operator '{operator}'")


def evaluate_source(source: str, context: EvaluationContext) -> Any:
    functions = context.functions
    program = compile_expression(source, functions=functions)
    return evaluate_program(program, context.scope(), functions=functions)


def evaluate_condition(condition: Condition, context: EvaluationContext) -> bool:
    """Evaluate a synchronous condition; evaluation failures propagate as EvaluationError."""
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, str):
        state = context.form_state
        if condition == "formInvalid":
            return state.invalid
        if condition == "formSubmitting":
            return state.submitting
        if condition == "pageInvalid":
            return state.page_invalid
        raise ConfigurationError(f"unknown form state condition '{condition}'", context.field_path)
    if isinstance(condition, FieldValueExpression):
        return compare(condition.operator, context.value_at(condition.path), condition.operand, condition.pattern)
    if isinstance(condition, FormValueExpression):
        return compare(condition.operator, context.form_value, condition.operand, condition.pattern)
    if isinstance(condition, JavascriptExpression):
        return is_truthy(evaluate_source(condition.source, context))
    if isinstance(condition, CustomExpression):
        if context.registry is None:
            raise ConfigurationError(f"custom function '{condition.function_name}' is not registered", context.field_path)
        registered = context.registry.condition(condition.function_name)
        try:
            return bool(registered.function(context))
        except Exception as exc:
            raise EvaluationError(f"custom function '{condition.function_name}' failed: {exc}") from exc
    if isinstance(condition, CompositeExpression):
        if condition.operator == "and":
            return all(evaluate_condition(child, context) for child in condition.children)
        return any(evaluate_condition(child, context) for child in condition.children)
    if isinstance(condition, ASYNC_EXPRESSION_TYPES):
        raise ConfigurationError(f"{condition.kind} conditions cannot be nested inside and/or", context.field_path)
    raise ConfigurationError(f"unsupported condition {condition!r}", context.field_path)


def check_condition(condition: Condition, registry: FunctionRegistry, field_key: str | None = None) -> None:
    """Validate function names and expression safety without evaluating anything."""
    if isinstance(condition, JavascriptExpression):
        try:
            compile_expression(condition.source, functions=registry.expression_functions)
        except ConfigurationError as exc:
            raise ConfigurationError(exc.message, field_key, condition.source) from exc
    elif isinstance(condition, CustomExpression):
        if condition.function_name not in registry.conditions:
            raise ConfigurationError(f"custom function '{condition.function_name}' is not registered", field_key, condition)
    elif isinstance(condition, CompositeExpression):
        for child in condition.children:
            if isinstance(child, ASYNC_EXPRESSION_TYPES):
                raise ConfigurationError(f"{child.kind} conditions cannot be nested inside and/or", field_key, condition)
            check_condition(child, registry, field_key)
    elif isinstance(condition, AsyncExpression):
        if condition.function_name not in registry.async_conditions:
            raise ConfigurationError(f"async function '{condition.function_name}' is not registered", field_key, condition)
    elif isinstance(condition, HttpExpression) and condition.response_expression:
        check_response_expression(condition.response_expression, registry, field_key)


RESPONSE_ROOTS = DEFAULT_ROOTS | frozenset({"response"})


def check_response_expression(source: str, registry: FunctionRegistry, field_key: str | None = None) -> None:
    try:
        compile_expression(source, functions=registry.expression_functions, roots=RESPONSE_ROOTS)
    except ConfigurationError as exc:
        raise ConfigurationError(exc.message, field_key, source) from exc
