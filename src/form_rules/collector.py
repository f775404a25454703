from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .cross_field import CROSS_FIELD, classify
from .dependencies import extract_dependencies, extract_source_dependencies
from .errors import ConfigurationError
from .models import (
    DerivationRule,
    FieldDef,
    SchemaApplicationRule,
    StateLogicRule,
    UnrecognizedRule,
    ValidatorRule,
    instantiate,
)
from .schemas import SchemaRegistry, expand_schema
from .values import join_path

PLACEHOLDER = "$"

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CrossFieldEntry:
    source_field_key: str
    category: str
    depends_on: tuple[str, ...]
    payload: Any
    cross_field: bool = True

    @property
    def is_template(self) -> bool:
        return PLACEHOLDER in self.source_field_key.split(".")

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.source_field_key,
            "category": self.category,
            "type": getattr(self.payload, "type", None),
            "dependsOn": list(self.depends_on),
        }


@dataclass(slots=True, frozen=True)
class Diagnostic:
    field_key: str
    category: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field_key, "category": self.category, "message": self.message}


@dataclass(slots=True)
class RuleCollection:
    entries: list[CrossFieldEntry] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    errors: list[ConfigurationError] = field(default_factory=list, compare=False)

    def _cross(self, category: str) -> list[CrossFieldEntry]:
        return [entry for entry in self.entries if entry.cross_field and entry.category == category]

    @property
    def validators(self) -> list[CrossFieldEntry]:
        return self._cross("validator")

    @property
    def logic(self) -> list[CrossFieldEntry]:
        return self._cross("logic")

    @property
    def schemas(self) -> list[CrossFieldEntry]:
        return self._cross("schema")

    @property
    def cross_field(self) -> list[CrossFieldEntry]:
        return [entry for entry in self.entries if entry.cross_field]

    @property
    def local(self) -> list[CrossFieldEntry]:
        return [entry for entry in self.entries if not entry.cross_field]

    def bindable(self) -> list[CrossFieldEntry]:
        """Validator and logic entries; schema applications are bound through their expanded rules."""
        return [entry for entry in self.entries if entry.category != "schema"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "crossField": {
                "validators": [entry.to_dict() for entry in self.validators],
                "logic": [entry.to_dict() for entry in self.logic],
                "schemas": [entry.to_dict() for entry in self.schemas],
            },
            "local": [entry.to_dict() for entry in self.local],
            "diagnostics": [item.to_dict() for item in self.diagnostics],
            "errors": [error.to_dict() for error in self.errors],
        }


def rule_dependencies(rule: Any, field_key: str) -> frozenset[str]:
    if isinstance(rule, ValidatorRule):
        found = set(extract_dependencies(rule.when, field_key))
        if rule.expression is not None:
            found.update(extract_source_dependencies(rule.expression))
        return frozenset(found)
    if isinstance(rule, StateLogicRule):
        return extract_dependencies(rule.condition, field_key)
    if isinstance(rule, SchemaApplicationRule):
        return extract_dependencies(rule.condition, field_key)
    return frozenset()


def make_entry(rule: Any, field_key: str, function_scopes: Mapping[str, str] | None = None) -> CrossFieldEntry:
    return CrossFieldEntry(
        source_field_key=field_key,
        category=rule.category,
        depends_on=tuple(sorted(rule_dependencies(rule, field_key))),
        payload=rule,
        cross_field=classify(rule, field_key, function_scopes) == CROSS_FIELD,
    )


def item_fields(fields: tuple[FieldDef, ...]) -> list[FieldDef]:
    """Flatten transparent containers so children appear at their value level."""
    flattened: list[FieldDef] = []
    for child in fields:
        if child.is_transparent:
            flattened.extend(item_fields(child.fields))
        else:
            flattened.append(child)
    return flattened


class _Collector:
    def __init__(self, function_scopes: Mapping[str, str], schemas: SchemaRegistry) -> None:
        self.function_scopes = function_scopes
        self.schemas = schemas
        self.collection = RuleCollection()

    def _record(self, rule: Any, field_key: str) -> None:
        self.collection.entries.append(make_entry(rule, field_key, self.function_scopes))

    def _diagnose(self, field_key: str, rule: UnrecognizedRule) -> None:
        message = f"unrecognized {rule.category} rule type '{rule.type}' ignored"
        self.collection.diagnostics.append(Diagnostic(field_key, rule.category, message))
        logger.warning("unrecognized_rule", extra={"field": field_key, "category": rule.category, "rule_type": rule.type})

    def _fail(self, field_key: str, exc: ConfigurationError, rule: Any) -> None:
        error = exc if exc.field_key else ConfigurationError(exc.message, field_key, rule)
        self.collection.errors.append(error)
        logger.error("rule_collection_failed", extra={"field": field_key, "error": error.message})

    def _apply_schema(self, definition: FieldDef, path: str, rule: SchemaApplicationRule) -> None:
        if rule.type == "applyEach":
            if not definition.is_array:
                raise ConfigurationError("applyEach requires an array field", path, rule.schema_name)
            targets = [
                join_path(f"{path}.{PLACEHOLDER}", child.key) for child in item_fields(definition.fields) if child.holds_value
            ]
        else:
            targets = [path]
        expanded = expand_schema(rule, self.schemas, path)
        self._record(rule, path)
        for target in targets:
            for item in expanded:
                self._record(item, target)

    def visit(self, definition: FieldDef, prefix: str) -> None:
        path = join_path(prefix, definition.key)
        for rule in (*definition.validators, *definition.logic, *definition.schemas):
            if isinstance(rule, UnrecognizedRule):
                self._diagnose(path, rule)
                continue
            if isinstance(rule, DerivationRule):
                continue
            try:
                if isinstance(rule, SchemaApplicationRule):
                    self._apply_schema(definition, path, rule)
                else:
                    self._record(rule, path)
            except ConfigurationError as exc:
                self._fail(path, exc, rule)

        if definition.is_transparent:
            child_prefix = prefix
        elif definition.is_array:
            child_prefix = f"{path}.{PLACEHOLDER}"
        else:
            child_prefix = path
        for child in definition.fields:
            self.visit(child, child_prefix)


def collect_rules(
    fields: tuple[FieldDef, ...] | list[FieldDef],
    function_scopes: Mapping[str, str] | None = None,
    schemas: SchemaRegistry | None = None,
) -> RuleCollection:
    collector = _Collector(function_scopes or {}, schemas or SchemaRegistry())
    for definition in fields:
        collector.visit(definition, "")
    logger.info(
        "rules_collected",
        extra={
            "entries": len(collector.collection.entries),
            "cross_field": len(collector.collection.cross_field),
            "errors": len(collector.collection.errors),
        },
    )
    return collector.collection


def instantiate_key(key: str, array_key: str, index: int) -> str:
    template = f"{array_key}.{PLACEHOLDER}"
    if key == template or key.startswith(template + "."):
        return f"{array_key}.{index}{key[len(template):]}"
    return key


def instantiate_entry(
    entry: CrossFieldEntry,
    array_key: str,
    index: int,
    function_scopes: Mapping[str, str] | None = None,
) -> CrossFieldEntry:
    """Clone a template entry for one array item, resolving `$` in its key and `$index` in its rule."""
    source_key = instantiate_key(entry.source_field_key, array_key, index)
    if PLACEHOLDER in source_key.split("."):
        return dataclasses.replace(entry, source_field_key=source_key)
    payload = instantiate(entry.payload, f"{array_key}.{index}", index)
    return make_entry(payload, source_key, function_scopes)
