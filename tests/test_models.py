import pytest

from form_rules.errors import ConfigurationError
from form_rules.models import (
    AsyncExpression,
    CompositeExpression,
    CustomExpression,
    DerivationRule,
    FieldValueExpression,
    HttpExpression,
    JavascriptExpression,
    SchemaApplicationRule,
    StateLogicRule,
    UnrecognizedRule,
    ValidatorRule,
    instantiate,
    parse_condition,
    parse_derivation,
    parse_field,
    parse_form_config,
    parse_logic,
    parse_validator,
)


def test_parse_condition_variants() -> None:
    assert parse_condition(True) is True
    assert parse_condition("formInvalid") == "formInvalid"
    assert parse_condition("fieldValue > 3") == JavascriptExpression("fieldValue > 3")

    field_value = parse_condition({"type": "fieldValue", "fieldPath": "country", "operator": "equals", "value": "US"})
    assert field_value == FieldValueExpression(path="country", operator="equals", operand="US")

    custom = parse_condition({"type": "custom", "expression": "isAdult"})
    assert custom == CustomExpression("isAdult")

    composite = parse_condition(
        {"type": "or", "conditions": [{"type": "javascript", "expression": "fieldValue"}, {"type": "custom", "functionName": "x"}]}
    )
    assert isinstance(composite, CompositeExpression)
    assert composite.kind == "or"
    assert len(composite.children) == 2


def test_parse_condition_http_and_async() -> None:
    http = parse_condition(
        {
            "type": "http",
            "http": {"url": "https://api.example.test/check", "queryParams": {"zip": "formValue.zip"}},
            "responseExpression": "response.exists",
            "pendingValue": True,
            "debounceMs": 250,
        }
    )
    assert isinstance(http, HttpExpression)
    assert http.request.query_params == (("zip", "formValue.zip"),)
    assert http.pending_value is True
    assert http.debounce_ms == 250

    async_condition = parse_condition({"type": "async", "asyncFunctionName": "lookup"})
    assert async_condition == AsyncExpression("lookup")


def test_parse_condition_rejects_bad_shapes() -> None:
    with pytest.raises(ConfigurationError, match="unsupported operator"):
        parse_condition({"type": "fieldValue", "operator": "roughly"})
    with pytest.raises(ConfigurationError, match="unsupported condition type"):
        parse_condition({"type": "telepathy"})
    with pytest.raises(ConfigurationError, match="invalid regular expression"):
        parse_condition({"type": "fieldValue", "operator": "matches", "value": "(unclosed"})
    with pytest.raises(ConfigurationError, match="requires a pattern"):
        parse_condition({"type": "fieldValue", "fieldPath": "code", "operator": "matches"})
    with pytest.raises(ConfigurationError):
        parse_condition("fieldValue ===")


def test_parse_validator_compiles_patterns_eagerly() -> None:
    rule = parse_validator({"type": "pattern", "value": "^[A-Z]{2}$"})
    assert isinstance(rule, ValidatorRule)
    assert rule.pattern is not None and rule.pattern.fullmatch("US")

    with pytest.raises(ConfigurationError, match="invalid regular expression"):
        parse_validator({"type": "pattern", "value": "[a-"}, "code")


def test_bounded_validators_require_a_bound() -> None:
    for kind in ("pattern", "min", "max", "minLength", "maxLength"):
        with pytest.raises(ConfigurationError, match=f"{kind} validator requires a value or expression"):
            parse_validator({"type": kind}, "code")
    rule = parse_validator({"type": "max", "expression": "formValue.limit"})
    assert isinstance(rule, ValidatorRule)
    assert rule.value is None


def test_parse_validator_unknown_type_is_unrecognized() -> None:
    rule = parse_validator({"type": "luhn"})
    assert isinstance(rule, UnrecognizedRule)
    assert rule.type == "luhn"


def test_parse_validator_requires_function_names() -> None:
    with pytest.raises(ConfigurationError, match="functionName"):
        parse_validator({"type": "customAsync"})
    with pytest.raises(ConfigurationError, match="expression or functionName"):
        parse_validator({"type": "custom"})


def test_parse_logic_debounced_defaults() -> None:
    rule = parse_logic({"type": "hidden", "condition": "formValue.a > 1", "trigger": "debounced"})
    assert isinstance(rule, StateLogicRule)
    assert rule.debounce_ms == 500
    assert parse_logic({"type": "hidden", "condition": True}).debounce_ms is None
    assert isinstance(parse_logic({"type": "shimmer"}), UnrecognizedRule)


def test_parse_derivation_requires_exactly_one_source() -> None:
    with pytest.raises(ConfigurationError, match="exactly one"):
        parse_derivation({"targetField": "total"})
    with pytest.raises(ConfigurationError, match="exactly one"):
        parse_derivation({"value": 1, "expression": "2"})

    rule = parse_derivation({"value": None, "targetField": "notes"})
    assert rule.has_value is True
    assert rule.is_async is False

    http_rule = parse_derivation({"http": "https://api.example.test/rate", "targetField": "rate"})
    assert http_rule.is_async is True


def test_parse_field_shorthands() -> None:
    errors: list[ConfigurationError] = []
    definition = parse_field(
        {"key": "email", "required": True, "email": True, "maxLength": 40, "hidden": True, "derivation": "formValue.a"},
        errors,
    )
    assert errors == []
    assert definition is not None
    assert [rule.type for rule in definition.validators] == ["required", "email", "maxLength"]
    assert definition.validators[2].value == 40
    assert isinstance(definition.logic[0], StateLogicRule)
    assert definition.logic[0].type == "hidden"
    shorthand = definition.logic[-1]
    assert isinstance(shorthand, DerivationRule)
    assert shorthand.is_shorthand and shorthand.expression == "formValue.a"


def test_parse_field_isolates_broken_rules() -> None:
    errors: list[ConfigurationError] = []
    definition = parse_field(
        {
            "key": "code",
            "validators": [{"type": "pattern", "value": "[a-"}, {"type": "required"}],
        },
        errors,
    )
    assert definition is not None
    assert [rule.type for rule in definition.validators] == ["required"]
    assert len(errors) == 1
    assert errors[0].field_key == "code"


def test_parse_field_rejects_bad_keys() -> None:
    errors: list[ConfigurationError] = []
    assert parse_field({"key": "a.b"}, errors) is None
    assert parse_field({"type": "input"}, errors) is None
    assert len(errors) == 2


def test_parse_form_config_accepts_list_and_inline_schemas() -> None:
    config = parse_form_config([{"key": "name"}])
    assert [field.key for field in config.fields] == ["name"]

    config = parse_form_config(
        {"fields": [{"key": "zip"}], "schemas": [{"name": "zipCode", "validators": [{"type": "required"}]}]}
    )
    assert "zipCode" in config.schemas
    assert config.errors == []


def test_parse_schema_application() -> None:
    errors: list[ConfigurationError] = []
    definition = parse_field(
        {"key": "zip", "schemas": [{"type": "applyWhen", "schema": "zipCode", "condition": "formValue.country === 'US'"}]},
        errors,
    )
    assert definition is not None
    rule = definition.schemas[0]
    assert isinstance(rule, SchemaApplicationRule)
    assert rule.schema_name == "zipCode"
    assert rule.condition == JavascriptExpression("formValue.country === 'US'")

    parse_field({"key": "zip", "schemas": [{"type": "applyWhen", "schema": "zipCode"}]}, errors)
    assert errors and "condition" in errors[0].message


def test_instantiate_resolves_index_and_relative_paths() -> None:
    rule = DerivationRule(target_field="$.total", expression="formValue.items[$index].qty * 2")
    concrete = instantiate(rule, "items.3", 3)
    assert concrete.target_field == "items.3.total"
    assert concrete.expression == "formValue.items[3].qty * 2"

    condition = FieldValueExpression(path="$.kind", operator="equals", operand="x")
    assert instantiate(condition, "items.0", 0).path == "items.0.kind"
