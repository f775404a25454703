from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from .async_rules import AsyncResolver, Debouncer
from .collector import rule_dependencies
from .conditions import check_condition, evaluate_condition
from .errors import ConfigurationError, EvaluationError
from .expressions import is_truthy, safe_eval
from .http import resolve_request
from .models import AsyncExpression, CompositeExpression, Condition, HttpExpression, StateLogicRule
from .signals import Computed, Effect, Signal, untracked

if TYPE_CHECKING:
    from .form import FieldInstance, FormEngine

LOGIC_EFFECT_ORDER = 10_000
ERROR_AFFECTING_SLOTS = frozenset({"hidden", "disabled", "required"})

logger = logging.getLogger(__name__)


def uses_form_state(condition: Condition | None) -> bool:
    if isinstance(condition, str):
        return True
    if isinstance(condition, CompositeExpression):
        return any(uses_form_state(child) for child in condition.children)
    return False


class LogicBinding:
    """One contributor to a field state slot; the slot is the OR of its contributors."""

    def __init__(self, rule: StateLogicRule, cell: Signal[bool] | Computed[bool], pending: Signal[bool] | None = None) -> None:
        self.rule = rule
        self.cell = cell
        self.pending = pending
        self.disposers: list[Callable[[], None]] = []

    def get(self) -> bool:
        return bool(self.cell.get())

    def dispose(self) -> None:
        for disposer in self.disposers:
            disposer()
        self.disposers.clear()


def _evaluate(rule: StateLogicRule, target: FieldInstance, engine: FormEngine) -> bool:
    context = untracked(lambda: engine.context_for(target, rule.condition))
    try:
        return evaluate_condition(rule.condition, context)
    except EvaluationError as exc:
        logger.warning(
            "logic_evaluation_failed",
            extra={"field": target.path, "logic": rule.type, "error": str(exc)},
        )
        return False


def _check(rule: StateLogicRule, target: FieldInstance, engine: FormEngine) -> None:
    if rule.type in ERROR_AFFECTING_SLOTS and uses_form_state(rule.condition) and not target.is_valueless:
        raise ConfigurationError(
            f"form state conditions on '{rule.type}' are only supported for button and text fields",
            target.path,
            rule.condition,
        )
    check_condition(rule.condition, engine.registry, target.path)


def bind_logic(
    rule: StateLogicRule,
    target: FieldInstance,
    engine: FormEngine,
    depends_on: tuple[str, ...] | frozenset[str] | None = None,
) -> LogicBinding:
    _check(rule, target, engine)
    dependencies = tuple(depends_on) if depends_on is not None else tuple(sorted(rule_dependencies(rule, target.path)))
    condition = rule.condition

    if isinstance(condition, bool):
        binding = LogicBinding(rule, Signal(condition, name=f"{target.path}:{rule.type}"))
    elif isinstance(condition, (HttpExpression, AsyncExpression)):
        binding = _bind_async(rule, condition, target, engine, dependencies)
    elif rule.trigger == "debounced":
        binding = _bind_debounced(rule, target, engine, dependencies)
    else:

        def _compute() -> bool:
            engine.track(dependencies, own=target, condition=condition)
            return _evaluate(rule, target, engine)

        computed = Computed(_compute, name=f"{target.path}:{rule.type}")
        binding = LogicBinding(rule, computed)
        binding.disposers.append(computed.dispose)

    target.add_contributor(rule.type, binding)
    logger.debug(
        "logic_bound",
        extra={"field": target.path, "logic": rule.type, "trigger": rule.trigger, "depends_on": list(dependencies)},
    )
    return binding


def _bind_debounced(
    rule: StateLogicRule,
    target: FieldInstance,
    engine: FormEngine,
    dependencies: tuple[str, ...],
) -> LogicBinding:
    cell = Signal(False, name=f"{target.path}:{rule.type}:debounced")

    def _expired() -> None:
        cell.set(_evaluate(rule, target, engine))

    debouncer = Debouncer(engine.scheduler, rule.debounce_ms or 0, _expired)
    initialized = False

    def _watch() -> None:
        nonlocal initialized
        engine.track(dependencies, own=target, condition=rule.condition)
        if not initialized:
            initialized = True
            untracked(_expired)
            return
        untracked(debouncer.trigger)

    effect = Effect(_watch, order=LOGIC_EFFECT_ORDER, name=f"{target.path}:{rule.type}:debounce")
    binding = LogicBinding(rule, cell)
    binding.disposers.extend([effect.dispose, debouncer.cancel])
    return binding


def _bind_async(
    rule: StateLogicRule,
    condition: HttpExpression | AsyncExpression,
    target: FieldInstance,
    engine: FormEngine,
    dependencies: tuple[str, ...],
) -> LogicBinding:
    name = f"{target.path}:{rule.type}:{condition.kind}"
    fallback = is_truthy(condition.pending_value)
    cell = Signal(fallback, name=name)
    pending = Signal(False, name=f"{name}:pending")

    def _resolved(result: Any) -> None:
        pending.set(False)
        if isinstance(condition, HttpExpression) and condition.response_expression:
            try:
                result = safe_eval(condition.response_expression, {"response": result}, engine.registry.expression_functions)
            except EvaluationError as exc:
                logger.warning("logic_response_failed", extra={"field": target.path, "logic": rule.type, "error": str(exc)})
                cell.set(fallback)
                return
        cell.set(is_truthy(result))

    def _failed(exc: BaseException) -> None:
        pending.set(False)
        cell.set(fallback)

    is_http = isinstance(condition, HttpExpression)
    resolver = AsyncResolver(
        engine.scheduler,
        name,
        _resolved,
        _failed,
        cache=engine.response_cache if is_http else None,
        cache_ms=condition.cache_ms if is_http else 0,
    )

    def _start() -> None:
        context = engine.context_for(target)
        if isinstance(condition, HttpExpression):
            try:
                request = resolve_request(condition.request, context)
            except EvaluationError as exc:
                logger.warning("logic_request_failed", extra={"field": target.path, "logic": rule.type, "error": str(exc)})
                resolver.cancel()
                _failed(exc)
                return
            client = engine.http_client
            if not resolver.request(lambda: client.send(request), cache_key=request.fingerprint()):
                pending.set(True)
                cell.set(fallback)
            return
        function = engine.registry.async_conditions[condition.function_name]
        resolver.request(lambda: function(context))
        pending.set(True)
        cell.set(fallback)

    debouncer = Debouncer(engine.scheduler, condition.debounce_ms, _start) if condition.debounce_ms > 0 else None

    def _watch() -> None:
        engine.track(dependencies, own=target)
        untracked(debouncer.trigger if debouncer else _start)

    effect = Effect(_watch, order=LOGIC_EFFECT_ORDER, name=name)
    binding = LogicBinding(rule, cell, pending)
    binding.disposers.extend([effect.dispose, resolver.cancel])
    if debouncer is not None:
        binding.disposers.append(debouncer.cancel)
    return binding
