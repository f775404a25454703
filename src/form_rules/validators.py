from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .async_rules import AsyncResolver
from .conditions import EvaluationContext, check_condition, evaluate_condition, evaluate_source
from .errors import ConfigurationError, EvaluationError
from .expressions import compile_expression, is_truthy, to_number, to_string
from .http import ResolvedRequest
from .models import HttpRequestSpec, ValidatorRule
from .registry import FunctionRegistry
from .signals import Computed, Effect, Signal, untracked

if TYPE_CHECKING:
    from .collector import CrossFieldEntry
    from .form import FieldInstance, FormEngine

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ASYNC_VALIDATOR_ORDER = 20_000
BOUND_PROPERTIES = ("min", "max", "minLength", "maxLength")

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ValidationError:
    kind: str
    params: dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "params": self.params}
        if self.message:
            payload["message"] = self.message
        return payload


def is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def _length(value: Any) -> int | None:
    if isinstance(value, (str, list, dict)):
        return len(value)
    return None


def check_builtin(kind: str, value: Any, bound: Any = None, pattern: re.Pattern[str] | None = None) -> ValidationError | None:
    if kind == "required":
        return ValidationError("required") if is_empty(value) else None
    if is_empty(value):
        return None
    if kind == "email":
        return None if EMAIL_PATTERN.match(to_string(value)) else ValidationError("email")
    if bound is None:
        return None
    if kind in ("min", "max"):
        actual, limit = to_number(value), to_number(bound)
        if actual is None or limit is None:
            return None
        failed = actual < limit if kind == "min" else actual > limit
        return ValidationError(kind, {kind: limit, "actual": actual}) if failed else None
    if kind in ("minLength", "maxLength"):
        actual_length, limit = _length(value), to_number(bound)
        if actual_length is None or limit is None:
            return None
        failed = actual_length < limit if kind == "minLength" else actual_length > limit
        return ValidationError(kind, {"requiredLength": limit, "actualLength": actual_length}) if failed else None
    if kind == "pattern":
        compiled = pattern or re.compile(to_string(bound))
        text = to_string(value)
        return None if compiled.fullmatch(text) else ValidationError("pattern", {"requiredPattern": compiled.pattern, "actualValue": text})
    raise ConfigurationError(f"unsupported validator type '{kind}'")


def coerce_result(result: Any, rule: ValidatorRule) -> ValidationError | None:
    if result is None or result is True:
        return None
    if isinstance(result, ValidationError):
        return result
    if result is False:
        return ValidationError(rule.error_kind, dict(rule.error_params or {}))
    if isinstance(result, str):
        return ValidationError(rule.error_kind, dict(rule.error_params or {}), message=result)
    if isinstance(result, dict):
        params = {name: value for name, value in result.items() if name not in ("kind", "message")}
        return ValidationError(str(result.get("kind") or rule.error_kind), params, message=result.get("message"))
    raise EvaluationError(f"validator returned unsupported result {result!r}")


def _with_overrides(error: ValidationError | None, rule: ValidatorRule) -> ValidationError | None:
    if error is None or (rule.kind is None and not rule.error_params):
        return error
    return ValidationError(rule.kind or error.kind, {**error.params, **dict(rule.error_params or {})}, error.message)


def evaluate_validator(
    rule: ValidatorRule,
    context: EvaluationContext,
    properties: dict[str, Any] | None = None,
    registry: FunctionRegistry | None = None,
) -> ValidationError | None:
    if rule.when is not None and not evaluate_condition(rule.when, context):
        return None
    value = context.field_value
    if rule.type == "custom":
        if rule.expression is not None:
            passed = evaluate_source(rule.expression, context)
            return None if is_truthy(passed) else ValidationError(rule.error_kind, dict(rule.error_params or {}))
        function = (registry or FunctionRegistry()).lookup("validators", rule.function_name or "")
        try:
            result = function(value, context, rule.params)
        except EvaluationError:
            raise
        except Exception as exc:
            raise EvaluationError(f"validator '{rule.function_name}' failed: {exc}") from exc
        return coerce_result(result, rule)
    if rule.type in ("required", "email"):
        return _with_overrides(check_builtin(rule.type, value), rule)
    if rule.expression is not None:
        bound = evaluate_source(rule.expression, context)
    elif rule.value is not None:
        bound = rule.value
    else:
        bound = (properties or {}).get(rule.type)
    try:
        return _with_overrides(check_builtin(rule.type, value, bound, rule.pattern), rule)
    except re.error as exc:
        raise EvaluationError(f"dynamic pattern {bound!r} is invalid: {exc}") from exc


def property_errors(properties: dict[str, Any], value: Any, declared: set[str]) -> list[ValidationError]:
    errors = []
    for name in BOUND_PROPERTIES:
        if name in properties and name not in declared:
            error = check_builtin(name, value, properties[name])
            if error is not None:
                errors.append(error)
    return errors


def check_validator(rule: ValidatorRule, registry: FunctionRegistry, field_key: str) -> None:
    if rule.when is not None:
        check_condition(rule.when, registry, field_key)
    if rule.expression is not None:
        try:
            compile_expression(rule.expression, functions=registry.expression_functions)
        except ConfigurationError as exc:
            raise ConfigurationError(exc.message, field_key, rule.expression) from exc
    tables = {"customAsync": "async_validators", "customHttp": "http_validators"}
    if rule.type in tables or (rule.type == "custom" and rule.expression is None):
        table = tables.get(rule.type, "validators")
        try:
            registry.lookup(table, rule.function_name or "")
        except ConfigurationError as exc:
            raise ConfigurationError(exc.message, field_key, rule.function_name) from exc


class BoundValidator:
    def __init__(self, rule: ValidatorRule, error: Computed[Any] | Signal[Any], pending: Signal[bool] | None = None) -> None:
        self.rule = rule
        self.error = error
        self.pending = pending
        self.is_async = pending is not None
        self._disposers: list[Callable[[], None]] = []

    def dispose(self) -> None:
        for disposer in self._disposers:
            disposer()
        self._disposers.clear()


def bind_validator(entry: CrossFieldEntry, instance: FieldInstance, engine: FormEngine) -> BoundValidator:
    rule: ValidatorRule = entry.payload
    check_validator(rule, engine.registry, instance.path)
    if rule.type in ("customAsync", "customHttp"):
        return _bind_async(entry, instance, engine)

    def _compute() -> ValidationError | None:
        engine.track(entry.depends_on, own=instance)
        properties = instance.properties.get()
        context = untracked(lambda: engine.context_for(instance, rule.when))
        try:
            return evaluate_validator(rule, context, properties, engine.registry)
        except EvaluationError as exc:
            logger.warning(
                "validator_evaluation_failed",
                extra={"field": instance.path, "validator": rule.type, "error": str(exc)},
            )
            return None

    computed = Computed(_compute, name=f"{instance.path}:{rule.type}")
    bound = BoundValidator(rule, computed)
    bound._disposers.append(computed.dispose)
    return bound


def _http_request(raw: Any) -> ResolvedRequest:
    if isinstance(raw, ResolvedRequest):
        return raw
    if isinstance(raw, HttpRequestSpec):
        return ResolvedRequest(url=raw.url, method=raw.method, headers=dict(raw.headers))
    if isinstance(raw, str):
        return ResolvedRequest(url=raw)
    if isinstance(raw, dict) and raw.get("url"):
        return ResolvedRequest(
            url=str(raw["url"]),
            method=str(raw.get("method", "GET")).upper(),
            params=dict(raw.get("params") or raw.get("queryParams") or {}),
            body=raw.get("body"),
            headers=dict(raw.get("headers") or {}),
        )
    raise EvaluationError(f"http validator produced an invalid request {raw!r}")


def _bind_async(entry: CrossFieldEntry, instance: FieldInstance, engine: FormEngine) -> BoundValidator:
    rule: ValidatorRule = entry.payload
    name = f"{instance.path}:{rule.type}:{rule.function_name}"
    error: Signal[ValidationError | None] = Signal(None, name=name)
    pending = Signal(False, name=f"{name}:pending")

    def _resolved(result: Any) -> None:
        pending.set(False)
        try:
            error.set(coerce_result(result, rule))
        except EvaluationError as exc:
            logger.warning("async_validator_failed", extra={"field": instance.path, "validator": rule.function_name, "error": str(exc)})
            error.set(None)

    def _failed(exc: BaseException) -> None:
        pending.set(False)
        if rule.treat_error_as_invalid:
            error.set(ValidationError(rule.error_kind, {"error": str(exc)}))
        else:
            error.set(None)

    resolver = AsyncResolver(engine.scheduler, name, _resolved, _failed)

    def _reset() -> None:
        resolver.cancel()
        pending.set(False)
        error.set(None)

    def _run() -> None:
        engine.track(entry.depends_on, own=instance)
        blocked = bool(instance.sync_errors.get()) or instance.hidden.get() or instance.disabled.get()
        context = untracked(lambda: engine.context_for(instance, rule.when))
        if blocked or is_empty(context.field_value):
            untracked(_reset)
            return
        try:
            if rule.when is not None and not evaluate_condition(rule.when, context):
                untracked(_reset)
                return
        except EvaluationError as exc:
            logger.warning("validator_evaluation_failed", extra={"field": instance.path, "validator": rule.type, "error": str(exc)})
            untracked(_reset)
            return

        if rule.type == "customAsync":
            function = engine.registry.lookup("async_validators", rule.function_name or "")

            def _factory() -> Any:
                return function(context.field_value, context, rule.params)

        else:
            definition = engine.registry.lookup("http_validators", rule.function_name or "")
            client = engine.http_client

            async def _factory() -> Any:
                request = _http_request(definition.request(context.field_value, context))
                response = await client.send(request)
                return definition.response(response, context)

        untracked(lambda: pending.set(True))
        resolver.request(_factory)

    effect = Effect(_run, order=ASYNC_VALIDATOR_ORDER, name=name)
    bound = BoundValidator(rule, error, pending)
    bound._disposers.extend([effect.dispose, resolver.cancel])
    return bound


