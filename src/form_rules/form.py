from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .collector import CrossFieldEntry, RuleCollection, collect_rules, instantiate_entry
from .conditions import EvaluationContext, FormState
from .dependencies import WHOLE_FORM
from .derivations import DerivationBinding, DerivationCollection, DerivationOrchestrator, collect_derivations
from .errors import ConfigurationError
from .http import HttpClient, ResponseCache
from .logic import LogicBinding, bind_logic, uses_form_state
from .models import STATE_LOGIC_TYPES, Condition, FieldDef, FormConfig, parse_form_config
from .registry import FunctionRegistry
from .scheduling import ManualScheduler, Scheduler
from .schemas import SchemaRegistry
from .signals import Computed, Signal, batch, default_equals
from .validators import BoundValidator, ValidationError, bind_validator, check_builtin, property_errors
from .values import get_path, join_path, path_prefixes

logger = logging.getLogger(__name__)


def _value_dict(children: list[FieldInstance]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for child in children:
        if child.definition.is_transparent:
            result.update(_value_dict(child.children))
        elif not child.is_valueless:
            result[child.key] = child.value.get()
    return result


class ArrayItem:
    def __init__(self, array: FieldInstance, index: int) -> None:
        self.array = array
        self.index = index
        self.path = f"{array.path}.{index}"
        self.children: list[FieldInstance] = []
        self.value: Computed[dict[str, Any]] = Computed(lambda: _value_dict(self.children), name=self.path)

    def instances(self) -> Iterator[FieldInstance]:
        for child in self.children:
            yield from child.walk()

    def dispose(self) -> None:
        for child in self.children:
            child.dispose()
        self.value.dispose()


class FieldInstance:
    def __init__(
        self,
        engine: FormEngine,
        definition: FieldDef,
        path: str,
        template_key: str,
        parent: FieldInstance | None,
        page: FieldInstance | None,
        levels: tuple[tuple[str, int], ...],
        initial: Any = None,
    ) -> None:
        self.engine = engine
        self.definition = definition
        self.key = definition.key
        self.path = path
        self.template_key = template_key
        self.parent = parent
        self.page = page
        self.levels = levels
        self.children: list[FieldInstance] = []
        self.items: Signal[tuple[ArrayItem, ...]] | None = Signal((), name=f"{path}:items") if definition.is_array else None
        self.derivations: list[DerivationBinding] = []
        self._disposers: list[Callable[[], None]] = []
        self._contributors = {slot: Signal((), name=f"{path}:{slot}") for slot in STATE_LOGIC_TYPES}
        self._validators: Signal[tuple[BoundValidator, ...]] = Signal((), name=f"{path}:validators")
        self._pending_sources: Signal[tuple[Signal[bool], ...]] = Signal((), name=f"{path}:pending")

        self.value: Signal[Any] | Computed[Any]
        if definition.is_container and not definition.is_transparent:
            self.value = Computed(self._container_value, name=path)
        else:
            self.value = Signal(initial if definition.holds_value else None, name=path)
        self.touched = Signal(False, name=f"{path}:touched")
        self.dirty = Signal(False, name=f"{path}:dirty")
        self.properties: Signal[dict[str, Any]] = Signal({}, name=f"{path}:properties")
        self.hidden = Computed(lambda: self._inherited("hidden"), name=f"{path}:hidden")
        self.readonly = Computed(lambda: self._inherited("readonly"), name=f"{path}:readonly")
        self.disabled = Computed(lambda: self._inherited("disabled"), name=f"{path}:disabled")
        self.required = Computed(lambda: self._slot("required"), name=f"{path}:required")
        self.sync_errors = Computed(self._sync_errors, name=f"{path}:sync_errors")
        self.errors = Computed(self._errors, name=f"{path}:errors")
        self.pending = Computed(lambda: any(source.get() for source in self._pending_sources.get()), name=f"{path}:pending")
        self.subtree_invalid = Computed(self._subtree_invalid, name=f"{path}:subtree_invalid")

    @property
    def is_valueless(self) -> bool:
        return not self.definition.is_container and not self.definition.holds_value

    def _container_value(self) -> Any:
        if self.items is not None:
            return [item.value.get() for item in self.items.get()]
        return _value_dict(self.children)

    def _slot(self, slot: str) -> bool:
        return any(binding.get() for binding in self._contributors[slot].get())

    def _inherited(self, slot: str) -> bool:
        if self._slot(slot):
            return True
        return self.parent is not None and bool(getattr(self.parent, slot).get())

    def _sync_errors(self) -> tuple[ValidationError, ...]:
        if self.is_valueless or self.hidden.get() or self.disabled.get():
            return ()
        errors: list[ValidationError] = []
        declared: set[str] = set()
        for bound in self._validators.get():
            if bound.is_async:
                continue
            declared.add(bound.rule.type)
            error = bound.error.get()
            if error is not None and error not in errors:
                errors.append(error)
        value = self.value.get()
        if "required" not in declared and self.required.get():
            error = check_builtin("required", value)
            if error is not None:
                errors.append(error)
        errors.extend(property_errors(self.properties.get(), value, declared))
        return tuple(errors)

    def _errors(self) -> tuple[ValidationError, ...]:
        errors = list(self.sync_errors.get())
        if self.is_valueless or self.hidden.get() or self.disabled.get():
            return tuple(errors)
        for bound in self._validators.get():
            if bound.is_async:
                error = bound.error.get()
                if error is not None and error not in errors:
                    errors.append(error)
        return tuple(errors)

    def _subtree_invalid(self) -> bool:
        return any(instance.errors.get() for instance in self.walk() if instance is not self and not instance.is_valueless)

    def walk(self) -> Iterator[FieldInstance]:
        yield self
        for child in self.children:
            yield from child.walk()
        if self.items is not None:
            for item in self.items.get():
                yield from item.instances()

    def add_contributor(self, slot: str, binding: LogicBinding) -> None:
        self._contributors[slot].update(lambda current: (*current, binding))
        if binding.pending is not None:
            self._add_pending(binding.pending)
        self._disposers.append(binding.dispose)

    def add_validator(self, bound: BoundValidator) -> None:
        self._validators.update(lambda current: (*current, bound))
        if bound.pending is not None:
            self._add_pending(bound.pending)
        self._disposers.append(bound.dispose)

    def attach_derivation(self, binding: DerivationBinding) -> None:
        self.derivations.append(binding)
        self._add_pending(binding.pending)

    def detach_derivation(self, binding: DerivationBinding) -> None:
        if binding in self.derivations:
            self.derivations.remove(binding)
        self._pending_sources.update(lambda current: tuple(source for source in current if source is not binding.pending))

    def _add_pending(self, source: Signal[bool]) -> None:
        self._pending_sources.update(lambda current: (*current, source))

    def on_dispose(self, callback: Callable[[], None]) -> None:
        self._disposers.append(callback)

    def dispose(self) -> None:
        for child in self.children:
            child.dispose()
        if self.items is not None:
            for item in self.items.peek():
                item.dispose()
        for disposer in self._disposers:
            disposer()
        self._disposers.clear()
        for computed in (
            self.hidden,
            self.readonly,
            self.disabled,
            self.required,
            self.sync_errors,
            self.errors,
            self.pending,
            self.subtree_invalid,
        ):
            computed.dispose()
        if isinstance(self.value, Computed):
            self.value.dispose()
        self.engine.fields.pop(self.path, None)

    def state(self) -> dict[str, Any]:
        return {
            "value": self.value.peek(),
            "hidden": self.hidden.peek(),
            "readonly": self.readonly.peek(),
            "disabled": self.disabled.peek(),
            "required": self.required.peek(),
            "touched": self.touched.peek(),
            "dirty": self.dirty.peek(),
            "pending": self.pending.peek(),
            "errors": [error.to_dict() for error in self.errors.peek()],
            "properties": dict(self.properties.peek()),
        }

    def __repr__(self) -> str:
        return f"FieldInstance({self.path!r}, type={self.definition.type!r})"


class FormEngine:
    def __init__(
        self,
        config: dict[str, Any] | list[Any] | FormConfig,
        registry: FunctionRegistry | None = None,
        schemas: SchemaRegistry | None = None,
        scheduler: Scheduler | None = None,
        external_data: dict[str, Any] | None = None,
        http_client: HttpClient | None = None,
        value: dict[str, Any] | None = None,
        strict: bool = True,
    ) -> None:
        self.registry = registry or FunctionRegistry()
        self.scheduler = scheduler or ManualScheduler()
        self.external_data = dict(external_data or {})
        self.http_client = http_client or HttpClient()
        clock = None
        if isinstance(self.scheduler, ManualScheduler):
            manual = self.scheduler
            clock = lambda: float(manual.now)  # noqa: E731
        self.response_cache = ResponseCache(clock)

        parsed = config if isinstance(config, FormConfig) else parse_form_config(config)
        self.definitions = parsed.fields
        self.schemas = (schemas or SchemaRegistry()).merged(parsed.schemas)
        self.configuration_errors: list[ConfigurationError] = list(parsed.errors)
        self.collection: RuleCollection = collect_rules(self.definitions, self.registry.function_scopes, self.schemas)
        self.configuration_errors.extend(self.collection.errors)
        self.derivation_collection: DerivationCollection = collect_derivations(self.definitions)
        self.configuration_errors.extend(self.derivation_collection.errors)

        self._entries: dict[str, list[CrossFieldEntry]] = {}
        for entry in self.collection.bindable():
            self._entries.setdefault(entry.source_field_key, []).append(entry)

        self.fields: dict[str, FieldInstance] = {}
        self.roots: list[FieldInstance] = []
        self.submitting = Signal(False, name="form:submitting")
        self.value: Computed[dict[str, Any]] = Computed(lambda: _value_dict(self.roots), name="form")
        self.invalid = Computed(self._invalid, name="form:invalid")
        self.valid = Computed(lambda: not self.invalid.get() and not self._pending(), name="form:valid")
        self.orchestrator = DerivationOrchestrator(self, self.derivation_collection)

        self._constructing = True
        self._deferred_items: list[tuple[tuple[str, int], ...]] = []
        with batch():
            initial = dict(value or {})
            for definition in self.definitions:
                self.roots.append(self._create(definition, "", "", None, None, (), initial))
            self.orchestrator.bind_static()
            for levels in self._deferred_items:
                self.orchestrator.bind_item(levels)
            self._constructing = False
            self._deferred_items.clear()

        logger.info(
            "form_engine_ready",
            extra={
                "fields": len(self.fields),
                "cross_field": len(self.collection.cross_field),
                "derivations": len(self.orchestrator.bindings),
                "errors": len(self.configuration_errors),
            },
        )
        if strict and self.configuration_errors:
            raise ConfigurationError.aggregate(self.configuration_errors)

    def _create(
        self,
        definition: FieldDef,
        prefix: str,
        template_prefix: str,
        parent: FieldInstance | None,
        page: FieldInstance | None,
        levels: tuple[tuple[str, int], ...],
        initial: Any,
    ) -> FieldInstance:
        path = join_path(prefix, definition.key)
        template_key = join_path(template_prefix, definition.key)
        scope = initial if isinstance(initial, dict) else {}
        own_initial = scope.get(definition.key, definition.default_value) if definition.holds_value else None
        instance = FieldInstance(self, definition, path, template_key, parent, page, levels, own_initial)
        if path in self.fields:
            self.record_error(ConfigurationError(f"duplicate field path '{path}'", path))
        self.fields[path] = instance
        child_page = instance if definition.type == "page" else page

        if definition.is_array:
            items = scope.get(definition.key)
            if items is None:
                items = definition.default_value or []
            created = [self._create_item(instance, index, item, levels) for index, item in enumerate(items)]
            instance.items.set(tuple(created))  # type: ignore[union-attr]
        else:
            if definition.is_transparent:
                child_prefix, child_template, child_initial = prefix, template_prefix, scope
            else:
                child_prefix, child_template = path, template_key
                child_initial = scope.get(definition.key) if isinstance(scope.get(definition.key), dict) else {}
            for child in definition.fields:
                instance.children.append(
                    self._create(child, child_prefix, child_template, instance, child_page, levels, child_initial)
                )
        self._bind_field(instance)
        return instance

    def _create_item(self, array: FieldInstance, index: int, initial: Any, levels: tuple[tuple[str, int], ...]) -> ArrayItem:
        item = ArrayItem(array, index)
        item_levels = (*levels, (array.path, index))
        template_prefix = f"{array.template_key}.$"
        for child in array.definition.fields:
            item.children.append(self._create(child, item.path, template_prefix, array, array.page, item_levels, initial))
        if self._constructing:
            self._deferred_items.append(item_levels)
        else:
            self.orchestrator.bind_item(item_levels)
        return item

    def _bind_field(self, instance: FieldInstance) -> None:
        scopes = self.registry.function_scopes
        for entry in self._entries.get(instance.template_key, []):
            concrete = entry
            for array_key, index in instance.levels:
                concrete = instantiate_entry(concrete, array_key, index, scopes)
            try:
                if concrete.category == "validator":
                    instance.add_validator(bind_validator(concrete, instance, self))
                else:
                    bind_logic(concrete.payload, instance, self, concrete.depends_on)
            except ConfigurationError as exc:
                self.record_error(exc if exc.field_key else ConfigurationError(exc.message, instance.path, exc.rule))

    def _instances(self) -> Iterator[FieldInstance]:
        for root in self.roots:
            yield from root.walk()

    def _invalid(self) -> bool:
        return any(instance.errors.get() for instance in self._instances() if not instance.is_valueless)

    def _pending(self) -> bool:
        return any(instance.pending.get() for instance in self._instances())

    def record_error(self, error: ConfigurationError) -> None:
        self.configuration_errors.append(error)
        logger.error("configuration_error", extra={"field": error.field_key, "error": error.message})

    def resolve(self, path: str) -> FieldInstance | None:
        for candidate in reversed(path_prefixes(path)):
            instance = self.fields.get(candidate)
            if instance is not None:
                return instance
        return None

    def track(
        self,
        dependencies: tuple[str, ...] | frozenset[str],
        own: FieldInstance | None = None,
        condition: Condition | None = None,
    ) -> None:
        """Read exactly the cells a rule depends on so the caller re-runs when they change."""
        if own is not None:
            own.value.get()
        for path in dependencies:
            instance = None if path == WHOLE_FORM else self.resolve(path)
            if instance is None:
                self.value.get()
            else:
                instance.value.get()
        if condition is not None and uses_form_state(condition):
            self.invalid.get()
            self.submitting.get()
            if own is not None and own.page is not None:
                own.page.subtree_invalid.get()

    def context_for(self, instance: FieldInstance, condition: Condition | None = None) -> EvaluationContext:
        state = FormState()
        if condition is not None and uses_form_state(condition):
            state = FormState(
                invalid=self.invalid.peek(),
                submitting=self.submitting.peek(),
                page_invalid=instance.page.subtree_invalid.peek() if instance.page is not None else False,
            )
        return EvaluationContext(
            field_path=instance.path,
            field_value=instance.value.peek(),
            form_value=self.value.peek(),
            external_data=self.external_data,
            form_state=state,
            registry=self.registry,
        )

    def value_at(self, path: str) -> Any:
        return get_path(self.value.peek(), path)

    def leaf_values(self, exclude: str | None = None) -> dict[str, Any]:
        return {
            path: instance.value.peek()
            for path, instance in sorted(self.fields.items())
            if instance.definition.holds_value and path != exclude
        }

    def write_derived(self, instance: FieldInstance, value: Any, property_name: str | None = None) -> bool:
        if property_name:
            current = instance.properties.peek()
            if property_name in current and default_equals(current[property_name], value):
                return False
            return instance.properties.set({**current, property_name: value})
        return instance.value.set(value)

    def field(self, path: str) -> FieldInstance:
        try:
            return self.fields[path]
        except KeyError:
            raise KeyError(f"unknown field '{path}'") from None

    def form_value(self) -> dict[str, Any]:
        return self.value.get()

    def set_value(self, path: str, value: Any) -> None:
        """Apply a user edit: derivations targeting the field see the edit before the value changes."""
        instance = self.field(path)
        if not instance.definition.holds_value:
            raise ValueError(f"field '{path}' does not hold a value")
        with batch():
            for binding in list(instance.derivations):
                binding.on_user_edit()
            instance.value.set(value)
            instance.dirty.set(True)

    def apply_values(self, values: dict[str, Any], prefix: str = "") -> None:
        with batch():
            for key, value in values.items():
                path = join_path(prefix, key)
                instance = self.field(path)
                if instance.items is not None:
                    items = value if isinstance(value, list) else []
                    while len(instance.items.peek()) < len(items):
                        self.add_array_item(path)
                    for index, item in enumerate(items):
                        if isinstance(item, dict):
                            self.apply_values(item, f"{path}.{index}")
                elif instance.definition.is_container:
                    if isinstance(value, dict):
                        self.apply_values(value, path)
                else:
                    self.set_value(path, value)

    def mark_touched(self, path: str) -> None:
        self.field(path).touched.set(True)

    def _array(self, path: str) -> FieldInstance:
        instance = self.field(path)
        if instance.items is None:
            raise ValueError(f"field '{path}' is not an array")
        return instance

    def add_array_item(self, path: str, value: dict[str, Any] | None = None) -> int:
        array = self._array(path)
        with batch():
            items = array.items.peek()  # type: ignore[union-attr]
            item = self._create_item(array, len(items), value or {}, array.levels)
            array.items.set((*items, item))  # type: ignore[union-attr]
        logger.info("array_item_added", extra={"field": path, "index": item.index})
        return item.index

    def remove_array_item(self, path: str, index: int) -> None:
        array = self._array(path)
        items = list(array.items.peek())  # type: ignore[union-attr]
        if not 0 <= index < len(items):
            raise IndexError(f"array '{path}' has no item {index}")
        with batch():
            tail = items[index:]
            saved = [(item.value.peek(), self._item_states(item)) for item in tail[1:]]
            for item in tail:
                item.dispose()
            rebuilt = []
            for offset, (value, states) in enumerate(saved):
                item = self._create_item(array, index + offset, value, array.levels)
                self._restore_states(item, states)
                rebuilt.append(item)
            array.items.set((*items[:index], *rebuilt))  # type: ignore[union-attr]
        logger.info("array_item_removed", extra={"field": path, "index": index})

    def _item_states(self, item: ArrayItem) -> dict[str, tuple[bool, bool]]:
        offset = len(item.path) + 1
        return {
            instance.path[offset:]: (instance.touched.peek(), instance.dirty.peek())
            for instance in item.instances()
            if instance.path.startswith(item.path + ".")
        }

    def _restore_states(self, item: ArrayItem, states: dict[str, tuple[bool, bool]]) -> None:
        for relative, (touched, dirty) in states.items():
            instance = self.fields.get(f"{item.path}.{relative}")
            if instance is None:
                continue
            instance.touched.set(touched)
            if dirty:
                for binding in instance.derivations:
                    binding.on_user_edit()
                instance.dirty.set(True)

    @contextmanager
    def submit(self) -> Iterator[FormEngine]:
        self.submitting.set(True)
        logger.info("form_submitting", extra={"valid": self.valid.peek()})
        try:
            yield self
        finally:
            self.submitting.set(False)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {path: instance.state() for path, instance in sorted(self.fields.items())}

    def dispose(self) -> None:
        for root in self.roots:
            root.dispose()
        self.roots.clear()


def analyze_form(
    config: dict[str, Any] | list[Any],
    registry: FunctionRegistry | None = None,
    schemas: SchemaRegistry | None = None,
) -> dict[str, Any]:
    """Collect rules and derivation order without binding a form."""
    parsed = parse_form_config(config)
    registry = registry or FunctionRegistry()
    merged = (schemas or SchemaRegistry()).merged(parsed.schemas)
    collection = collect_rules(parsed.fields, registry.function_scopes, merged)
    derivations = collect_derivations(parsed.fields)
    errors = [*parsed.errors, *collection.errors, *derivations.errors]
    payload = collection.to_dict()
    payload["derivations"] = [entry.to_dict() for entry in derivations.entries]
    payload["errors"] = [error.to_dict() for error in errors]
    return payload
