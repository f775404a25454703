from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from typing import Any, ClassVar

from .errors import ConfigurationError
from .expressions import parse_expression

CONTAINER_TYPES = frozenset({"group", "array", "page", "row"})
TRANSPARENT_TYPES = frozenset({"page", "row"})
VALUELESS_TYPES = frozenset({"button", "submit", "next", "previous", "text"})
STATE_LOGIC_TYPES = ("hidden", "readonly", "disabled", "required")
FORM_STATE_CONDITIONS = frozenset({"formInvalid", "formSubmitting", "pageInvalid"})
COMPARISON_OPERATORS = frozenset(
    {"equals", "notEquals", "greater", "less", "greaterOrEqual", "lessOrEqual", "contains", "startsWith", "endsWith", "matches"}
)
BUILTIN_VALIDATOR_TYPES = frozenset({"required", "email", "min", "max", "minLength", "maxLength", "pattern"})
VALIDATOR_TYPES = BUILTIN_VALIDATOR_TYPES | {"custom", "customAsync", "customHttp"}
BOUNDED_VALIDATOR_TYPES = frozenset({"min", "max", "minLength", "maxLength", "pattern"})
SCHEMA_APPLICATION_TYPES = frozenset({"apply", "applyWhen", "applyEach"})
TRIGGERS = frozenset({"onChange", "debounced"})
DEFAULT_DEBOUNCE_MS = 500
INDEX_TOKEN = "$index"
RELATIVE_PREFIX = "$."
PATH_ATTRIBUTES = frozenset({"path", "target_field"})


@dataclass(slots=True, frozen=True)
class HttpRequestSpec:
    url: str
    method: str = "GET"
    query_params: tuple[tuple[str, str], ...] = ()
    body: tuple[tuple[str, str], ...] = ()
    headers: tuple[tuple[str, str], ...] = ()


@dataclass(slots=True, frozen=True)
class FieldValueExpression:
    path: str | None
    operator: str
    operand: Any = None
    pattern: re.Pattern[str] | None = None
    kind: ClassVar[str] = "fieldValue"


@dataclass(slots=True, frozen=True)
class FormValueExpression:
    operator: str
    operand: Any = None
    pattern: re.Pattern[str] | None = None
    kind: ClassVar[str] = "formValue"


@dataclass(slots=True, frozen=True)
class JavascriptExpression:
    source: str
    kind: ClassVar[str] = "javascript"


@dataclass(slots=True, frozen=True)
class CustomExpression:
    function_name: str
    kind: ClassVar[str] = "custom"


@dataclass(slots=True, frozen=True)
class HttpExpression:
    request: HttpRequestSpec
    response_expression: str | None = None
    pending_value: Any = False
    cache_ms: int = 0
    debounce_ms: int = 0
    kind: ClassVar[str] = "http"


@dataclass(slots=True, frozen=True)
class AsyncExpression:
    function_name: str
    pending_value: Any = False
    debounce_ms: int = 0
    kind: ClassVar[str] = "async"


@dataclass(slots=True, frozen=True)
class CompositeExpression:
    operator: str
    children: tuple[Expression, ...]

    @property
    def kind(self) -> str:
        return self.operator


Expression = (
    FieldValueExpression
    | FormValueExpression
    | JavascriptExpression
    | CustomExpression
    | HttpExpression
    | AsyncExpression
    | CompositeExpression
)
Condition = Expression | bool | str
ASYNC_EXPRESSION_TYPES = (HttpExpression, AsyncExpression)


@dataclass(slots=True, frozen=True)
class ValidatorRule:
    type: str
    value: Any = None
    expression: str | None = None
    function_name: str | None = None
    kind: str | None = None
    params: Any = None
    error_params: Any = None
    when: Condition | None = None
    pattern: re.Pattern[str] | None = None
    treat_error_as_invalid: bool = False
    category: ClassVar[str] = "validator"

    @property
    def error_kind(self) -> str:
        return self.kind or self.type


@dataclass(slots=True, frozen=True)
class StateLogicRule:
    type: str
    condition: Condition
    trigger: str = "onChange"
    debounce_ms: int | None = None
    category: ClassVar[str] = "logic"


@dataclass(slots=True, frozen=True)
class DerivationRule:
    target_field: str | None = None
    target_property: str | None = None
    value: Any = None
    has_value: bool = False
    expression: str | None = None
    function_name: str | None = None
    async_function_name: str | None = None
    http: HttpRequestSpec | None = None
    response_expression: str | None = None
    condition: Condition = True
    depends_on: tuple[str, ...] | None = None
    trigger: str = "onChange"
    debounce_ms: int | None = None
    pending_value: Any = None
    has_pending_value: bool = False
    cache_ms: int = 0
    stop_on_user_override: bool = False
    re_engage_on_dependency_change: bool = False
    debug_name: str | None = None
    is_shorthand: bool = False
    category: ClassVar[str] = "derivation"

    @property
    def is_async(self) -> bool:
        return self.async_function_name is not None or self.http is not None


@dataclass(slots=True, frozen=True)
class SchemaDefinition:
    name: str
    validators: tuple[ValidatorRule, ...] = ()
    logic: tuple[StateLogicRule, ...] = ()
    schemas: tuple[SchemaApplicationRule, ...] = ()


@dataclass(slots=True, frozen=True)
class SchemaApplicationRule:
    type: str
    schema: str | SchemaDefinition
    condition: Condition | None = None
    category: ClassVar[str] = "schema"

    @property
    def schema_name(self) -> str:
        return self.schema if isinstance(self.schema, str) else self.schema.name


@dataclass(slots=True, frozen=True)
class UnrecognizedRule:
    category: str
    raw: Any

    @property
    def type(self) -> str:
        return str(self.raw.get("type")) if isinstance(self.raw, dict) else type(self.raw).__name__


Rule = ValidatorRule | StateLogicRule | DerivationRule | SchemaApplicationRule


@dataclass(slots=True, frozen=True)
class FieldDef:
    key: str
    type: str = "input"
    fields: tuple[FieldDef, ...] = ()
    validators: tuple[ValidatorRule | UnrecognizedRule, ...] = ()
    logic: tuple[StateLogicRule | DerivationRule | UnrecognizedRule, ...] = ()
    schemas: tuple[SchemaApplicationRule | UnrecognizedRule, ...] = ()
    default_value: Any = None

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES

    @property
    def is_array(self) -> bool:
        return self.type == "array"

    @property
    def is_transparent(self) -> bool:
        return self.type in TRANSPARENT_TYPES

    @property
    def holds_value(self) -> bool:
        return not self.is_container and self.type not in VALUELESS_TYPES


@dataclass(slots=True)
class FormConfig:
    fields: tuple[FieldDef, ...]
    schemas: dict[str, SchemaDefinition]
    errors: list[ConfigurationError]


def compile_pattern(pattern: Any, field_key: str | None = None, rule: Any = None) -> re.Pattern[str]:
    try:
        return re.compile(str(pattern))
    except re.error as exc:
        raise ConfigurationError(f"invalid regular expression '{pattern}': {exc}", field_key, rule) from exc


def _check_source(source: Any, field_key: str | None, rule: Any) -> str:
    if not isinstance(source, str) or not source.strip():
        raise ConfigurationError("expression must be a non-empty string", field_key, rule)
    try:
        parse_expression(source.strip())
    except ConfigurationError as exc:
        raise ConfigurationError(exc.message, field_key, rule) from exc
    return source


def _int_or_default(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _pairs(raw: Any) -> tuple[tuple[str, str], ...]:
    if not raw:
        return ()
    if not isinstance(raw, dict):
        raise ConfigurationError("expected an object of name/expression pairs", rule=raw)
    return tuple((str(name), str(value)) for name, value in raw.items())


def parse_http_request(raw: Any, field_key: str | None = None) -> HttpRequestSpec:
    if isinstance(raw, str):
        return HttpRequestSpec(url=raw)
    if not isinstance(raw, dict) or not raw.get("url"):
        raise ConfigurationError("http request requires a url", field_key, raw)
    return HttpRequestSpec(
        url=str(raw["url"]),
        method=str(raw.get("method", "GET")).upper(),
        query_params=_pairs(raw.get("queryParams") or raw.get("params")),
        body=_pairs(raw.get("body")),
        headers=_pairs(raw.get("headers")),
    )


def parse_condition(raw: Any, field_key: str | None = None) -> Condition:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        if raw in FORM_STATE_CONDITIONS:
            return raw
        return JavascriptExpression(_check_source(raw, field_key, raw))
    if not isinstance(raw, dict):
        raise ConfigurationError(f"unsupported condition {raw!r}", field_key, raw)

    kind = raw.get("type")
    if kind in ("fieldValue", "formValue"):
        operator = str(raw.get("operator", "equals"))
        if operator not in COMPARISON_OPERATORS:
            raise ConfigurationError(f"unsupported operator '{operator}'", field_key, raw)
        pattern = None
        if operator == "matches":
            if raw.get("value") is None:
                raise ConfigurationError("matches operator requires a pattern", field_key, raw)
            pattern = compile_pattern(raw["value"], field_key, raw)
        if kind == "formValue":
            return FormValueExpression(operator=operator, operand=raw.get("value"), pattern=pattern)
        path = raw.get("fieldPath")
        return FieldValueExpression(path=str(path) if path else None, operator=operator, operand=raw.get("value"), pattern=pattern)
    if kind == "javascript":
        return JavascriptExpression(_check_source(raw.get("expression"), field_key, raw))
    if kind == "custom":
        name = raw.get("expression") or raw.get("functionName")
        if not name:
            raise ConfigurationError("custom condition requires a function name", field_key, raw)
        return CustomExpression(str(name))
    if kind == "http":
        response_expression = raw.get("responseExpression")
        if response_expression is not None:
            _check_source(response_expression, field_key, raw)
        return HttpExpression(
            request=parse_http_request(raw.get("http") or raw.get("request"), field_key),
            response_expression=response_expression,
            pending_value=raw.get("pendingValue", False),
            cache_ms=_int_or_default(raw.get("cacheDurationMs"), 0),
            debounce_ms=_int_or_default(raw.get("debounceMs"), 0),
        )
    if kind == "async":
        name = raw.get("asyncFunctionName") or raw.get("functionName")
        if not name:
            raise ConfigurationError("async condition requires a function name", field_key, raw)
        return AsyncExpression(
            function_name=str(name),
            pending_value=raw.get("pendingValue", False),
            debounce_ms=_int_or_default(raw.get("debounceMs"), 0),
        )
    if kind in ("and", "or"):
        children = raw.get("conditions") or []
        if not isinstance(children, list):
            raise ConfigurationError(f"'{kind}' requires a list of conditions", field_key, raw)
        return CompositeExpression(kind, tuple(parse_condition(child, field_key) for child in children))
    raise ConfigurationError(f"unsupported condition type '{kind}'", field_key, raw)


def parse_validator(raw: Any, field_key: str | None = None) -> ValidatorRule | UnrecognizedRule:
    if not isinstance(raw, dict) or raw.get("type") not in VALIDATOR_TYPES:
        return UnrecognizedRule("validator", raw)
    kind = str(raw["type"])
    when = parse_condition(raw["when"], field_key) if raw.get("when") is not None else None
    expression = raw.get("expression")
    if expression is not None:
        _check_source(expression, field_key, raw)
    if kind in BOUNDED_VALIDATOR_TYPES and expression is None and raw.get("value") is None:
        raise ConfigurationError(f"{kind} validator requires a value or expression", field_key, raw)
    pattern = None
    if kind == "pattern" and expression is None:
        pattern = compile_pattern(raw.get("value"), field_key, raw)
    if kind == "custom" and not expression and not raw.get("functionName"):
        raise ConfigurationError("custom validator requires an expression or functionName", field_key, raw)
    if kind in ("customAsync", "customHttp") and not raw.get("functionName"):
        raise ConfigurationError(f"{kind} validator requires a functionName", field_key, raw)
    return ValidatorRule(
        type=kind,
        value=raw.get("value"),
        expression=expression,
        function_name=raw.get("functionName"),
        kind=raw.get("kind"),
        params=raw.get("params"),
        error_params=raw.get("errorParams"),
        when=when,
        pattern=pattern,
        treat_error_as_invalid=bool(raw.get("treatErrorAsInvalid", False)),
    )


def parse_logic(raw: Any, field_key: str | None = None) -> StateLogicRule | DerivationRule | UnrecognizedRule:
    if not isinstance(raw, dict):
        return UnrecognizedRule("logic", raw)
    kind = raw.get("type")
    if kind == "derivation":
        return parse_derivation(raw, field_key)
    if kind not in STATE_LOGIC_TYPES:
        return UnrecognizedRule("logic", raw)
    trigger = str(raw.get("trigger", "onChange"))
    if trigger not in TRIGGERS:
        raise ConfigurationError(f"unsupported trigger '{trigger}'", field_key, raw)
    return StateLogicRule(
        type=str(kind),
        condition=parse_condition(raw.get("condition", True), field_key),
        trigger=trigger,
        debounce_ms=_int_or_default(raw.get("debounceMs"), DEFAULT_DEBOUNCE_MS) if trigger == "debounced" else None,
    )


def parse_derivation(raw: dict[str, Any], field_key: str | None = None) -> DerivationRule:
    trigger = str(raw.get("trigger", "onChange"))
    if trigger not in TRIGGERS:
        raise ConfigurationError(f"unsupported trigger '{trigger}'", field_key, raw)
    expression = raw.get("expression")
    if expression is not None:
        _check_source(expression, field_key, raw)
    response_expression = raw.get("responseExpression")
    if response_expression is not None:
        _check_source(response_expression, field_key, raw)
    http = parse_http_request(raw["http"], field_key) if raw.get("http") else None
    sources = [
        "value" in raw,
        expression is not None,
        bool(raw.get("functionName")),
        bool(raw.get("asyncFunctionName")),
        http is not None,
    ]
    if sum(sources) != 1:
        raise ConfigurationError(
            "derivation requires exactly one of value, expression, functionName, asyncFunctionName or http",
            field_key,
            raw,
        )
    depends_on = raw.get("dependsOn")
    return DerivationRule(
        target_field=raw.get("targetField"),
        target_property=raw.get("targetProperty"),
        value=raw.get("value"),
        has_value="value" in raw,
        expression=expression,
        function_name=raw.get("functionName"),
        async_function_name=raw.get("asyncFunctionName"),
        http=http,
        response_expression=response_expression,
        condition=parse_condition(raw.get("condition", True), field_key),
        depends_on=tuple(str(item) for item in depends_on) if depends_on else None,
        trigger=trigger,
        debounce_ms=_int_or_default(raw.get("debounceMs"), DEFAULT_DEBOUNCE_MS) if trigger == "debounced" else None,
        pending_value=raw.get("pendingValue"),
        has_pending_value="pendingValue" in raw,
        cache_ms=_int_or_default(raw.get("cacheDurationMs"), 0),
        stop_on_user_override=bool(raw.get("stopOnUserOverride", False)),
        re_engage_on_dependency_change=bool(raw.get("reEngageOnDependencyChange", False)),
        debug_name=raw.get("debugName"),
    )


def parse_schema_application(raw: Any, field_key: str | None = None) -> SchemaApplicationRule | UnrecognizedRule:
    if not isinstance(raw, dict) or raw.get("type") not in SCHEMA_APPLICATION_TYPES:
        return UnrecognizedRule("schema", raw)
    schema = raw.get("schema")
    if isinstance(schema, dict):
        schema = parse_schema_definition(schema, default_name=f"{field_key or 'inline'}:inline")
    elif not schema:
        raise ConfigurationError("schema application requires a schema", field_key, raw)
    condition = None
    if raw["type"] == "applyWhen":
        if raw.get("condition") is None:
            raise ConfigurationError("applyWhen requires a condition", field_key, raw)
        condition = parse_condition(raw["condition"], field_key)
    return SchemaApplicationRule(type=str(raw["type"]), schema=schema if isinstance(schema, SchemaDefinition) else str(schema), condition=condition)


def parse_schema_definition(raw: dict[str, Any], default_name: str | None = None) -> SchemaDefinition:
    name = str(raw.get("name") or default_name or "")
    if not name:
        raise ConfigurationError("schema definition requires a name", rule=raw)
    validators = []
    for item in raw.get("validators", []):
        rule = parse_validator(item, name)
        if isinstance(rule, UnrecognizedRule):
            raise ConfigurationError(f"unsupported validator type '{rule.type}' in schema '{name}'", rule=item)
        validators.append(rule)
    logic = []
    for item in raw.get("logic", []):
        rule = parse_logic(item, name)
        if not isinstance(rule, StateLogicRule):
            raise ConfigurationError(f"schema '{name}' may only contain state logic", rule=item)
        logic.append(rule)
    schemas = []
    for item in raw.get("schemas", []):
        rule = parse_schema_application(item, name)
        if isinstance(rule, UnrecognizedRule):
            raise ConfigurationError(f"unsupported schema application in schema '{name}'", rule=item)
        schemas.append(rule)
    return SchemaDefinition(name=name, validators=tuple(validators), logic=tuple(logic), schemas=tuple(schemas))


_SHORTHAND_VALIDATORS = ("required", "email", "min", "max", "minLength", "maxLength", "pattern")


def _shorthand_validators(raw: dict[str, Any]) -> list[dict[str, Any]]:
    items = []
    for name in _SHORTHAND_VALIDATORS:
        if name not in raw or raw[name] is None or raw[name] is False:
            continue
        if name in ("required", "email"):
            items.append({"type": name})
        else:
            items.append({"type": name, "value": raw[name]})
    return items


def parse_field(raw: Any, errors: list[ConfigurationError]) -> FieldDef | None:
    if not isinstance(raw, dict) or not raw.get("key"):
        errors.append(ConfigurationError("field definition requires a key", rule=raw))
        return None
    key = str(raw["key"])
    if "." in key or key.startswith("$"):
        errors.append(ConfigurationError("field keys may not contain '.' or start with '$'", key, raw))
        return None

    def _collect(items: list[Any], parser: Any) -> tuple[Any, ...]:
        parsed = []
        for item in items:
            try:
                parsed.append(parser(item, key))
            except ConfigurationError as exc:
                errors.append(ConfigurationError(exc.message, key, item))
        return tuple(parsed)

    validator_items = _shorthand_validators(raw) + list(raw.get("validators") or [])
    logic_items = [{"type": name, "condition": True} for name in STATE_LOGIC_TYPES[:3] if raw.get(name) is True]
    logic_items += list(raw.get("logic") or [])
    validators = _collect(validator_items, parse_validator)
    logic = _collect(logic_items, parse_logic)
    if raw.get("derivation"):
        try:
            logic += (
                DerivationRule(expression=_check_source(raw["derivation"], key, raw["derivation"]), is_shorthand=True),
            )
        except ConfigurationError as exc:
            errors.append(exc)
    schemas = _collect(list(raw.get("schemas") or []), parse_schema_application)

    children: list[FieldDef] = []
    for child in raw.get("fields") or []:
        parsed = parse_field(child, errors)
        if parsed is not None:
            children.append(parsed)
    return FieldDef(
        key=key,
        type=str(raw.get("type", "input")),
        fields=tuple(children),
        validators=validators,
        logic=logic,
        schemas=schemas,
        default_value=raw.get("value"),
    )


def parse_fields(raw_fields: list[Any], errors: list[ConfigurationError] | None = None) -> tuple[FieldDef, ...]:
    sink = errors if errors is not None else []
    fields = []
    for raw in raw_fields:
        parsed = parse_field(raw, sink)
        if parsed is not None:
            fields.append(parsed)
    if errors is None and sink:
        raise ConfigurationError.aggregate(sink)
    return tuple(fields)


def parse_form_config(config: dict[str, Any] | list[Any]) -> FormConfig:
    raw = {"fields": config} if isinstance(config, list) else dict(config or {})
    errors: list[ConfigurationError] = []
    schemas: dict[str, SchemaDefinition] = {}
    for item in raw.get("schemas") or []:
        try:
            definition = parse_schema_definition(item)
        except ConfigurationError as exc:
            errors.append(exc)
            continue
        schemas[definition.name] = definition
    fields = parse_fields(list(raw.get("fields") or []), errors)
    return FormConfig(fields=fields, schemas=schemas, errors=errors)


def instantiate(value: Any, item_path: str, index: int) -> Any:
    """Resolve `$index` and `$.`-relative paths of an array template for one item."""
    if isinstance(value, str):
        return value.replace(INDEX_TOKEN, str(index))
    if isinstance(value, tuple):
        return tuple(instantiate(item, item_path, index) for item in value)
    if isinstance(value, dict):
        return {name: instantiate(item, item_path, index) for name, item in value.items()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        changes = {}
        for item in dataclasses.fields(value):
            current = getattr(value, item.name)
            if item.name in PATH_ATTRIBUTES and isinstance(current, str) and current.startswith(RELATIVE_PREFIX):
                changes[item.name] = f"{item_path}.{current[len(RELATIVE_PREFIX):]}"
            else:
                changes[item.name] = instantiate(current, item_path, index)
        return dataclasses.replace(value, **changes)
    return value
