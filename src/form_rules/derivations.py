from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .async_rules import AsyncResolver, Debouncer
from .collector import PLACEHOLDER, instantiate_key
from .conditions import EvaluationContext, check_condition, check_response_expression, evaluate_condition, evaluate_source
from .dependencies import WHOLE_FORM, derivation_dependencies
from .errors import ConfigurationError, EvaluationError
from .expressions import compile_expression, safe_eval
from .http import resolve_request
from .logic import uses_form_state
from .models import RELATIVE_PREFIX, DerivationRule, FieldDef, instantiate
from .signals import Effect, Signal, untracked
from .values import MISSING, join_path, json_dumps, parent_path

if TYPE_CHECKING:
    from .form import FieldInstance, FormEngine

IDLE = "idle"
COMPUTING = "computing"
APPLIED = "applied"
USER_OVERRIDDEN = "user_overridden"

logger = logging.getLogger(__name__)


def resolve_target(rule: DerivationRule, source_path: str) -> str:
    target = rule.target_field
    if not target:
        return source_path
    if target.startswith(RELATIVE_PREFIX):
        return join_path(parent_path(source_path), target[len(RELATIVE_PREFIX):])
    return target


def _related(left: str, right: str) -> bool:
    return left == right or left.startswith(right + ".") or right.startswith(left + ".")


@dataclass(slots=True, frozen=True)
class DerivationEntry:
    source_field_key: str
    target_path: str
    rule: DerivationRule
    depends_on: tuple[str, ...]
    order: int = 0

    @property
    def is_template(self) -> bool:
        return PLACEHOLDER in self.source_field_key.split(".") or PLACEHOLDER in self.target_path.split(".")

    @property
    def writes_value(self) -> bool:
        return self.rule.target_property is None

    @property
    def name(self) -> str:
        if self.rule.debug_name:
            return self.rule.debug_name
        suffix = f"#{self.rule.target_property}" if self.rule.target_property else ""
        return f"{self.source_field_key}->{self.target_path}{suffix}"

    def graph_dependencies(self) -> set[str]:
        """Dependency paths without the root segments added alongside deeper paths."""
        return {
            item
            for item in self.depends_on
            if item != WHOLE_FORM and not any(other != item and other.startswith(item + ".") for other in self.depends_on)
        }

    def instantiate(self, array_key: str, index: int) -> DerivationEntry:
        source = instantiate_key(self.source_field_key, array_key, index)
        target = instantiate_key(self.target_path, array_key, index)
        if PLACEHOLDER in source.split("."):
            return dataclasses.replace(self, source_field_key=source, target_path=target)
        rule = instantiate(self.rule, f"{array_key}.{index}", index)
        return dataclasses.replace(
            self,
            source_field_key=source,
            target_path=target,
            rule=rule,
            depends_on=tuple(sorted(derivation_dependencies(rule))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.source_field_key,
            "target": self.target_path,
            "property": self.rule.target_property,
            "dependsOn": list(self.depends_on),
            "order": self.order,
        }


@dataclass(slots=True)
class DerivationCollection:
    entries: list[DerivationEntry] = field(default_factory=list)
    errors: list[ConfigurationError] = field(default_factory=list, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {"order": [entry.to_dict() for entry in self.entries], "errors": [error.to_dict() for error in self.errors]}


def _dependency_graph(entries: list[DerivationEntry]) -> dict[str, set[str]]:
    producers = [entry for entry in entries if entry.writes_value]
    graph: dict[str, set[str]] = {}
    for entry in entries:
        if not entry.writes_value:
            continue
        upstream = graph.setdefault(entry.target_path, set())
        for dependency in entry.graph_dependencies():
            for producer in producers:
                if producer.target_path != entry.target_path and _related(dependency, producer.target_path):
                    upstream.add(producer.target_path)
    return graph


def find_cycle(entries: list[DerivationEntry]) -> list[str] | None:
    graph = _dependency_graph(entries)
    visiting: list[str] = []
    done: set[str] = set()

    def _visit(node: str) -> list[str] | None:
        if node in done:
            return None
        if node in visiting:
            return [*visiting[visiting.index(node):], node]
        visiting.append(node)
        for upstream in sorted(graph.get(node, ())):
            cycle = _visit(upstream)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in graph:
        cycle = _visit(node)
        if cycle:
            return cycle
    return None


def detect_cycles(entries: list[DerivationEntry]) -> None:
    cycle = find_cycle(entries)
    if cycle:
        chain = " -> ".join(reversed(cycle))
        raise ConfigurationError(f"derivation cycle detected: {chain}", cycle[0], chain)


def sort_derivations(entries: list[DerivationEntry]) -> list[DerivationEntry]:
    """Order entries so every producer runs before its consumers, keeping declaration order otherwise."""
    graph = _dependency_graph(entries)
    placed: set[str] = set()
    remaining = list(entries)
    ordered: list[DerivationEntry] = []
    while remaining:
        for position, entry in enumerate(remaining):
            upstream = graph.get(entry.target_path, set()) if entry.writes_value else _property_upstream(entry, entries)
            if upstream <= placed:
                break
        else:
            position = 0
        entry = remaining.pop(position)
        ordered.append(dataclasses.replace(entry, order=len(ordered)))
        if entry.writes_value and not any(other.target_path == entry.target_path for other in remaining):
            placed.add(entry.target_path)
    return ordered


def _property_upstream(entry: DerivationEntry, entries: list[DerivationEntry]) -> set[str]:
    return {
        other.target_path
        for other in entries
        if other.writes_value and any(_related(dependency, other.target_path) for dependency in entry.graph_dependencies())
    }


def _warn_configuration(entry: DerivationEntry) -> None:
    if entry.rule.re_engage_on_dependency_change and not entry.rule.stop_on_user_override:
        logger.warning(
            "derivation_reengage_without_override",
            extra={"derivation": entry.name, "field": entry.source_field_key},
        )


def collect_derivations(fields: tuple[FieldDef, ...] | list[FieldDef]) -> DerivationCollection:
    collection = DerivationCollection()
    found: list[DerivationEntry] = []

    def _visit(definition: FieldDef, prefix: str) -> None:
        path = join_path(prefix, definition.key)
        for rule in definition.logic:
            if not isinstance(rule, DerivationRule):
                continue
            entry = DerivationEntry(
                source_field_key=path,
                target_path=resolve_target(rule, path),
                rule=rule,
                depends_on=tuple(sorted(derivation_dependencies(rule))),
            )
            if PLACEHOLDER in entry.target_path.split(".") and PLACEHOLDER not in path.split("."):
                collection.errors.append(
                    ConfigurationError("derivations outside an array cannot target array item fields", path, entry.target_path)
                )
                continue
            _warn_configuration(entry)
            found.append(entry)
        if definition.is_transparent:
            child_prefix = prefix
        elif definition.is_array:
            child_prefix = f"{path}.{PLACEHOLDER}"
        else:
            child_prefix = path
        for child in definition.fields:
            _visit(child, child_prefix)

    for definition in fields:
        _visit(definition, "")

    while cycle := find_cycle(found):
        try:
            detect_cycles(found)
        except ConfigurationError as exc:
            collection.errors.append(exc)
            logger.error("derivation_cycle_detected", extra={"cycle": exc.rule})
        found = [entry for entry in found if entry.target_path not in cycle]
    collection.entries = sort_derivations(found)
    logger.info("derivations_collected", extra={"entries": len(collection.entries), "errors": len(collection.errors)})
    return collection


class DerivationBinding:
    def __init__(self, entry: DerivationEntry, source: FieldInstance, target: FieldInstance, engine: FormEngine) -> None:
        self.entry = entry
        self.rule = entry.rule
        self.source = source
        self.target = target
        self.engine = engine
        self.state = IDLE
        self.last_good: Any = MISSING
        self.override_fingerprint: str | None = None
        self.pending = Signal(False, name=f"{entry.name}:pending")
        self._initialized = False
        self._resolver: AsyncResolver | None = None
        self._debouncer: Debouncer | None = None
        if self.rule.is_async:
            self._resolver = AsyncResolver(
                engine.scheduler,
                entry.name,
                self._resolved,
                self._failed,
                cache=engine.response_cache,
                cache_ms=self.rule.cache_ms,
            )
        if self.rule.trigger == "debounced":
            self._debouncer = Debouncer(engine.scheduler, self.rule.debounce_ms or 0, self._debounced)
        self.effect = Effect(self._run, order=entry.order, name=entry.name)

    def _fingerprint(self) -> str:
        target = self.target.path
        if WHOLE_FORM in self.entry.depends_on:
            values = self.engine.leaf_values(exclude=target)
        else:
            values = {
                path: self.engine.value_at(path)
                for path in sorted(self.entry.graph_dependencies())
                if not _related(path, target)
            }
        return json_dumps(values)

    def _context(self) -> EvaluationContext:
        return self.engine.context_for(self.source, self.rule.condition)

    def _run(self) -> None:
        own = None if self.source is self.target else self.source
        self.engine.track(self.entry.depends_on, own=own, condition=self.rule.condition)
        untracked(self._step)

    def _step(self) -> None:
        if self.state == USER_OVERRIDDEN:
            if not self.rule.re_engage_on_dependency_change or self._fingerprint() == self.override_fingerprint:
                return
            self.state = IDLE
            self.override_fingerprint = None
            logger.info("derivation_reengaged", extra={"derivation": self.entry.name, "target": self.target.path})
        context = self._context()
        try:
            if not evaluate_condition(self.rule.condition, context):
                return
        except EvaluationError as exc:
            logger.warning("derivation_condition_failed", extra={"derivation": self.entry.name, "error": str(exc)})
            return
        if self._debouncer is not None and self._initialized:
            self._debouncer.trigger()
            return
        self._initialized = True
        self._compute(context)

    def _debounced(self) -> None:
        if self.state != USER_OVERRIDDEN:
            self._compute(self._context())

    def _compute(self, context: EvaluationContext) -> None:
        previous = self.state
        self.state = COMPUTING
        if self.rule.is_async:
            self._start_async(context)
            return
        try:
            value = self._evaluate(context)
        except EvaluationError as exc:
            logger.warning(
                "derivation_failed",
                extra={"derivation": self.entry.name, "target": self.target.path, "error": str(exc)},
            )
            self.state = previous if previous != COMPUTING else IDLE
            return
        self._apply(value)

    def _evaluate(self, context: EvaluationContext) -> Any:
        if self.rule.has_value:
            return self.rule.value
        if self.rule.expression is not None:
            return evaluate_source(self.rule.expression, context)
        function = self.engine.registry.derivations[self.rule.function_name or ""]
        try:
            return function(context)
        except Exception as exc:
            raise EvaluationError(f"derivation function '{self.rule.function_name}' failed: {exc}") from exc

    def _apply(self, value: Any) -> None:
        changed = self.engine.write_derived(self.target, value, self.rule.target_property)
        self.last_good = value
        self.state = APPLIED
        if changed:
            logger.debug("derivation_applied", extra={"derivation": self.entry.name, "target": self.target.path})

    def _start_async(self, context: EvaluationContext) -> None:
        resolver = self._resolver
        if resolver is None:
            return
        if self.rule.http is not None:
            try:
                request = resolve_request(self.rule.http, context)
            except EvaluationError as exc:
                self._failed(exc)
                return
            client = self.engine.http_client

            def factory() -> Any:
                return client.send(request)

            key = f"{self.entry.name}:{request.fingerprint()}"
        else:
            function = self.engine.registry.async_derivations[self.rule.async_function_name or ""]

            def factory() -> Any:
                return function(context)

            key = f"{self.entry.name}:{self._fingerprint()}"
        if resolver.request(factory, cache_key=key):
            return
        self.pending.set(True)
        if self.rule.has_pending_value:
            self.engine.write_derived(self.target, self.rule.pending_value, self.rule.target_property)

    def _resolved(self, result: Any) -> None:
        self.pending.set(False)
        if self.state == USER_OVERRIDDEN:
            return
        if self.rule.response_expression:
            try:
                result = safe_eval(self.rule.response_expression, {"response": result}, self.engine.registry.expression_functions)
            except EvaluationError as exc:
                self._failed(exc)
                return
        self._apply(result)

    def _failed(self, exc: BaseException) -> None:
        self.pending.set(False)
        logger.warning("derivation_async_failed", extra={"derivation": self.entry.name, "error": str(exc)})
        if self.state == USER_OVERRIDDEN:
            return
        if self.last_good is not MISSING:
            self.engine.write_derived(self.target, self.last_good, self.rule.target_property)
            self.state = APPLIED
        else:
            self.state = IDLE

    def on_user_edit(self) -> None:
        if not self.rule.stop_on_user_override or self.state == USER_OVERRIDDEN or self.rule.target_property:
            return
        self.state = USER_OVERRIDDEN
        self.override_fingerprint = self._fingerprint()
        if self._resolver is not None:
            self._resolver.cancel()
            self.pending.set(False)
        if self._debouncer is not None:
            self._debouncer.cancel()
        logger.info("derivation_user_override", extra={"derivation": self.entry.name, "target": self.target.path})

    def dispose(self) -> None:
        self.effect.dispose()
        if self._resolver is not None:
            self._resolver.cancel()
        if self._debouncer is not None:
            self._debouncer.cancel()


def check_derivation(entry: DerivationEntry, engine: FormEngine) -> None:
    rule = entry.rule
    registry = engine.registry
    check_condition(rule.condition, registry, entry.source_field_key)
    if uses_form_state(rule.condition):
        raise ConfigurationError("derivations cannot depend on form state", entry.source_field_key, rule.condition)
    if rule.expression is not None:
        try:
            compile_expression(rule.expression, functions=registry.expression_functions)
        except ConfigurationError as exc:
            raise ConfigurationError(exc.message, entry.source_field_key, rule.expression) from exc
    if rule.response_expression:
        check_response_expression(rule.response_expression, registry, entry.source_field_key)
    if rule.function_name and rule.function_name not in registry.derivations:
        raise ConfigurationError(f"derivation function '{rule.function_name}' is not registered", entry.source_field_key)
    if rule.async_function_name and rule.async_function_name not in registry.async_derivations:
        raise ConfigurationError(
            f"async derivation function '{rule.async_function_name}' is not registered", entry.source_field_key
        )


class DerivationOrchestrator:
    def __init__(self, engine: FormEngine, collection: DerivationCollection) -> None:
        self.engine = engine
        self.collection = collection
        self.bindings: list[DerivationBinding] = []

    def bind_entry(self, entry: DerivationEntry) -> DerivationBinding | None:
        try:
            check_derivation(entry, self.engine)
            source = self.engine.fields.get(entry.source_field_key)
            target = self.engine.fields.get(entry.target_path)
            if source is None or target is None:
                missing = entry.source_field_key if source is None else entry.target_path
                raise ConfigurationError(f"derivation field '{missing}' does not exist", entry.source_field_key, entry.name)
            if entry.rule.target_property is None and not target.definition.holds_value:
                raise ConfigurationError(f"derivation target '{target.path}' does not hold a value", entry.source_field_key)
        except ConfigurationError as exc:
            self.engine.record_error(exc)
            return None
        binding = DerivationBinding(entry, source, target, self.engine)
        target.attach_derivation(binding)
        source.on_dispose(lambda: self._remove(binding))
        self.bindings.append(binding)
        return binding

    def bind_static(self) -> None:
        for entry in self.collection.entries:
            if not entry.is_template:
                self.bind_entry(entry)

    def bind_item(self, levels: tuple[tuple[str, int], ...]) -> None:
        """Bind template derivations whose source lives directly inside the innermost item of `levels`."""
        item_path = f"{levels[-1][0]}.{levels[-1][1]}"
        for entry in self.collection.entries:
            if not entry.is_template:
                continue
            concrete = entry
            for array_key, index in levels:
                concrete = concrete.instantiate(array_key, index)
            if PLACEHOLDER in concrete.source_field_key.split(".") or not concrete.source_field_key.startswith(item_path + "."):
                continue
            self.bind_entry(concrete)

    def _remove(self, binding: DerivationBinding) -> None:
        binding.dispose()
        binding.target.detach_derivation(binding)
        if binding in self.bindings:
            self.bindings.remove(binding)


