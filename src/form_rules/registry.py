from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .errors import ConfigurationError

FIELD_SCOPE = "field"
FORM_SCOPE = "form"

logger = logging.getLogger(__name__)


def _check_scope(name: str, scope: str) -> None:
    if scope not in (FIELD_SCOPE, FORM_SCOPE):
        raise ConfigurationError(f"unknown function scope '{scope}' for '{name}'")


@dataclass(slots=True, frozen=True)
class RegisteredCondition:
    name: str
    function: Callable[..., Any]
    scope: str = FORM_SCOPE


@dataclass(slots=True, frozen=True)
class HttpValidatorDefinition:
    """Builds a request from the field context and maps the response to an error."""

    request: Callable[..., Any]
    response: Callable[..., Any]


class FunctionRegistry:
    def __init__(self) -> None:
        self.conditions: dict[str, RegisteredCondition] = {}
        self.async_conditions: dict[str, Callable[..., Any]] = {}
        self.async_condition_scopes: dict[str, str] = {}
        self.validators: dict[str, Callable[..., Any]] = {}
        self.async_validators: dict[str, Callable[..., Any]] = {}
        self.http_validators: dict[str, HttpValidatorDefinition] = {}
        self.derivations: dict[str, Callable[..., Any]] = {}
        self.async_derivations: dict[str, Callable[..., Any]] = {}
        self.expression_functions: dict[str, Callable[..., Any]] = {}

    def register_condition(self, name: str, function: Callable[..., Any], scope: str = FORM_SCOPE) -> None:
        _check_scope(name, scope)
        self.conditions[name] = RegisteredCondition(name, function, scope)
        logger.debug("condition_registered", extra={"function": name, "scope": scope})

    def register_async_condition(self, name: str, function: Callable[..., Any], scope: str = FORM_SCOPE) -> None:
        _check_scope(name, scope)
        self.async_conditions[name] = function
        self.async_condition_scopes[name] = scope
        logger.debug("async_condition_registered", extra={"function": name, "scope": scope})

    def register_validator(self, name: str, function: Callable[..., Any]) -> None:
        self.validators[name] = function

    def register_async_validator(self, name: str, function: Callable[..., Any]) -> None:
        self.async_validators[name] = function

    def register_http_validator(self, name: str, request: Callable[..., Any], response: Callable[..., Any]) -> None:
        self.http_validators[name] = HttpValidatorDefinition(request, response)

    def register_derivation(self, name: str, function: Callable[..., Any]) -> None:
        self.derivations[name] = function

    def register_async_derivation(self, name: str, function: Callable[..., Any]) -> None:
        self.async_derivations[name] = function

    def register_function(self, name: str, function: Callable[..., Any]) -> None:
        """Expose `function` to expression source under `name`."""
        self.expression_functions[name] = function

    @property
    def function_scopes(self) -> dict[str, str]:
        """Scope per condition function name; sync registrations win on a name clash."""
        scopes = dict(self.async_condition_scopes)
        scopes.update((name, item.scope) for name, item in self.conditions.items())
        return scopes

    def condition(self, name: str) -> RegisteredCondition:
        try:
            return self.conditions[name]
        except KeyError:
            raise ConfigurationError(f"custom function '{name}' is not registered") from None

    def lookup(self, table: str, name: str) -> Any:
        entries = getattr(self, table)
        if name not in entries:
            raise ConfigurationError(f"'{name}' is not registered in {table}")
        return entries[name]
