import json

import pytest

from form_rules.errors import ConfigurationError
from form_rules.models import CompositeExpression, JavascriptExpression, parse_schema_application
from form_rules.schemas import SchemaRegistry, and_conditions, expand_schema


def test_and_conditions() -> None:
    gate = JavascriptExpression("formValue.country === 'US'")
    own = JavascriptExpression("fieldValue !== ''")
    assert and_conditions(None, own) == own
    assert and_conditions(gate, None) == gate
    assert and_conditions(True, own) == own
    assert and_conditions(gate, False) is False
    assert and_conditions(gate, own) == CompositeExpression("and", (gate, own))


def test_expand_ands_the_gate_with_rule_conditions() -> None:
    registry = SchemaRegistry()
    registry.register(
        {
            "name": "usAddress",
            "validators": [{"type": "required", "when": "formValue.shipping"}],
            "logic": [{"type": "hidden", "condition": False}, {"type": "readonly", "condition": True}],
        }
    )
    rule = parse_schema_application({"type": "applyWhen", "schema": "usAddress", "condition": "formValue.country === 'US'"})

    validator, hidden, readonly = expand_schema(rule, registry, "zip")
    gate = JavascriptExpression("formValue.country === 'US'")
    assert validator.when == CompositeExpression("and", (gate, JavascriptExpression("formValue.shipping")))
    assert hidden.condition is False
    assert readonly.condition == gate


def test_expand_nested_schemas_and_inline_definitions() -> None:
    registry = SchemaRegistry()
    registry.register({"name": "base", "validators": [{"type": "required"}]})
    rule = parse_schema_application(
        {
            "type": "apply",
            "schema": {"validators": [{"type": "maxLength", "value": 5}], "schemas": [{"type": "apply", "schema": "base"}]},
        },
        "code",
    )
    expanded = expand_schema(rule, registry, "code")
    assert [item.type for item in expanded] == ["maxLength", "required"]


def test_expand_detects_schema_cycles() -> None:
    registry = SchemaRegistry()
    registry.register({"name": "a", "schemas": [{"type": "apply", "schema": "b"}]})
    registry.register({"name": "b", "schemas": [{"type": "apply", "schema": "a"}]})
    with pytest.raises(ConfigurationError, match="cycle"):
        expand_schema(parse_schema_application({"type": "apply", "schema": "a"}), registry, "f")


def test_unknown_schema_names_the_field() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        expand_schema(parse_schema_application({"type": "apply", "schema": "missing"}), SchemaRegistry(), "zip")
    assert excinfo.value.field_key == "zip"


def test_registry_from_file(tmp_path) -> None:
    path = tmp_path / "schemas.json"
    path.write_text(json.dumps({"schemas": [{"name": "email", "validators": [{"type": "email"}]}]}), encoding="utf-8")
    registry = SchemaRegistry.from_file(path)
    assert registry.names() == ["email"]
    assert "email" in registry
    merged = registry.merged({})
    assert merged.get("email").validators[0].type == "email"


def test_schema_definitions_reject_derivations() -> None:
    with pytest.raises(ConfigurationError, match="state logic"):
        SchemaRegistry().register({"name": "x", "logic": [{"type": "derivation", "value": 1}]})
