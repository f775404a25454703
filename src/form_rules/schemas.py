from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .models import (
    CompositeExpression,
    Condition,
    SchemaApplicationRule,
    SchemaDefinition,
    StateLogicRule,
    ValidatorRule,
    parse_schema_definition,
)

logger = logging.getLogger(__name__)


class SchemaRegistry:
    def __init__(self, definitions: dict[str, SchemaDefinition] | None = None) -> None:
        self._definitions: dict[str, SchemaDefinition] = dict(definitions or {})

    def register(self, definition: SchemaDefinition | dict[str, Any]) -> SchemaDefinition:
        if isinstance(definition, dict):
            definition = parse_schema_definition(definition)
        self._definitions[definition.name] = definition
        logger.info("schema_registered", extra={"schema": definition.name})
        return definition

    def get(self, name: str) -> SchemaDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ConfigurationError(f"schema '{name}' is not registered") from None

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def merged(self, extra: dict[str, SchemaDefinition]) -> SchemaRegistry:
        return SchemaRegistry({**self._definitions, **extra})

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    @classmethod
    def from_file(cls, path: str | Path) -> SchemaRegistry:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        items = payload.get("schemas", []) if isinstance(payload, dict) else payload
        registry = cls()
        for item in items:
            registry.register(item)
        return registry


def and_conditions(outer: Condition | None, inner: Condition | None) -> Condition | None:
    if outer is None or outer is True:
        return inner
    if inner is None or inner is True:
        return outer
    if outer is False or inner is False:
        return False
    return CompositeExpression("and", (outer, inner))


def expand_schema(
    rule: SchemaApplicationRule,
    registry: SchemaRegistry,
    field_key: str | None = None,
    _seen: tuple[str, ...] = (),
) -> list[ValidatorRule | StateLogicRule]:
    definition = rule.schema if isinstance(rule.schema, SchemaDefinition) else None
    if definition is None:
        try:
            definition = registry.get(rule.schema_name)
        except ConfigurationError as exc:
            raise ConfigurationError(exc.message, field_key, rule.schema_name) from None
    if definition.name in _seen:
        chain = " -> ".join((*_seen, definition.name))
        raise ConfigurationError(f"schema applications form a cycle: {chain}", field_key, definition.name)

    condition = rule.condition
    expanded: list[ValidatorRule | StateLogicRule] = []
    for validator in definition.validators:
        expanded.append(dataclasses.replace(validator, when=and_conditions(condition, validator.when)))
    for logic in definition.logic:
        combined = and_conditions(condition, logic.condition)
        expanded.append(dataclasses.replace(logic, condition=True if combined is None else combined))
    for nested in definition.schemas:
        for item in expand_schema(nested, registry, field_key, (*_seen, definition.name)):
            if isinstance(item, ValidatorRule):
                expanded.append(dataclasses.replace(item, when=and_conditions(condition, item.when)))
            else:
                combined = and_conditions(condition, item.condition)
                expanded.append(dataclasses.replace(item, condition=True if combined is None else combined))
    return expanded
