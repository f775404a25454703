from __future__ import annotations

from typing import Any


class ConfigurationError(ValueError):
    """Raised when a form configuration cannot be collected or bound."""

    def __init__(
        self,
        message: str,
        field_key: str | None = None,
        rule: Any = None,
        errors: list[ConfigurationError] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field_key = field_key
        self.rule = rule
        self.errors = list(errors or [])

    def __str__(self) -> str:
        if self.field_key:
            return f"field '{self.field_key}': {self.message}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "field": self.field_key}
        if self.rule is not None:
            payload["rule"] = self.rule if isinstance(self.rule, (str, dict)) else repr(self.rule)
        return payload

    @classmethod
    def aggregate(cls, errors: list[ConfigurationError]) -> ConfigurationError:
        if len(errors) == 1:
            return errors[0]
        fields = ", ".join(sorted({error.field_key or "<form>" for error in errors}))
        return cls(f"{len(errors)} configuration errors in fields: {fields}", errors=errors)


class ExpressionSyntaxError(ConfigurationError):
    """Raised when expression source cannot be tokenized or parsed."""


class UnsafeExpressionError(ConfigurationError):
    """Raised when the expression includes unsafe syntax."""


class EvaluationError(RuntimeError):
    """Raised when a valid expression fails while being evaluated."""


class ReactiveLoopError(RuntimeError):
    """Raised when effect flushing does not settle."""
