import pytest

from form_rules.derivations import collect_derivations, resolve_target
from form_rules.errors import ConfigurationError
from form_rules.form import FormEngine
from form_rules.models import parse_derivation, parse_fields
from form_rules.registry import FunctionRegistry
from form_rules.scheduling import ManualScheduler


def test_resolve_target() -> None:
    assert resolve_target(parse_derivation({"value": 1}), "total") == "total"
    assert resolve_target(parse_derivation({"value": 1, "targetField": "$.total"}), "items.3.qty") == "items.3.total"
    assert resolve_target(parse_derivation({"value": 1, "targetField": "summary.total"}), "qty") == "summary.total"


def test_collect_orders_chains_topologically() -> None:
    fields = parse_fields(
        [
            {"key": "c", "derivation": "formValue.b + 1"},
            {"key": "b", "derivation": "formValue.a * 2"},
            {"key": "a", "value": 1},
        ]
    )
    collection = collect_derivations(fields)
    assert [entry.target_path for entry in collection.entries] == ["b", "c"]
    assert [entry.order for entry in collection.entries] == [0, 1]
    assert collection.errors == []


def test_collect_detects_cycles() -> None:
    fields = parse_fields(
        [
            {"key": "a", "derivation": "formValue.b + 1"},
            {"key": "b", "derivation": "formValue.a + 1"},
            {"key": "c", "derivation": "formValue.x"},
        ]
    )
    collection = collect_derivations(fields)
    assert len(collection.errors) == 1
    assert "cycle" in collection.errors[0].message
    assert [entry.target_path for entry in collection.entries] == ["c"]


def test_cycle_is_fatal_in_strict_mode() -> None:
    with pytest.raises(ConfigurationError, match="derivation cycle detected"):
        FormEngine([{"key": "a", "derivation": "formValue.b"}, {"key": "b", "derivation": "formValue.a"}])


def test_array_item_targets_from_outside_are_rejected() -> None:
    fields = parse_fields(
        [
            {"key": "rate", "logic": [{"type": "derivation", "targetField": "items.$.price", "value": 1}]},
            {"key": "items", "type": "array", "fields": [{"key": "price"}]},
        ]
    )
    assert len(collect_derivations(fields).errors) == 1


def test_derivation_from_expression_reacts_to_dependencies() -> None:
    engine = FormEngine(
        [
            {"key": "quantity", "value": 3},
            {"key": "unitPrice", "value": 10},
            {"key": "total", "derivation": "formValue.quantity * formValue.unitPrice"},
        ]
    )
    assert engine.field("total").value.peek() == 30
    engine.set_value("quantity", 5)
    assert engine.field("total").value.peek() == 50


def test_derived_writes_do_not_mark_fields_dirty() -> None:
    engine = FormEngine([{"key": "a", "value": 2}, {"key": "b", "derivation": "formValue.a + 1"}])
    assert engine.field("b").value.peek() == 3
    assert engine.field("b").dirty.peek() is False
    engine.set_value("a", 5)
    assert engine.field("b").dirty.peek() is False


def test_chain_never_observes_stale_upstream_values() -> None:
    registry = FunctionRegistry()
    observed = []

    def c_from_b(context) -> int:
        observed.append((context.form_value["a"], context.form_value["b"]))
        return context.form_value["b"] + 1

    registry.register_derivation("cFromB", c_from_b)
    engine = FormEngine(
        [
            {"key": "a", "value": 1},
            {"key": "c", "logic": [{"type": "derivation", "functionName": "cFromB", "dependsOn": ["a", "b"]}]},
            {"key": "b", "derivation": "formValue.a * 10"},
        ],
        registry=registry,
    )
    assert engine.field("c").value.peek() == 11
    observed.clear()

    engine.set_value("a", 2)
    assert engine.field("b").value.peek() == 20
    assert engine.field("c").value.peek() == 21
    assert observed == [(2, 20)]


def test_value_source_and_conditions() -> None:
    engine = FormEngine(
        [
            {"key": "plan", "value": "free"},
            {
                "key": "seats",
                "value": 5,
                "logic": [{"type": "derivation", "value": 1, "condition": "formValue.plan === 'free'"}],
            },
        ]
    )
    assert engine.field("seats").value.peek() == 1
    engine.set_value("seats", 3)
    engine.set_value("plan", "team")
    assert engine.field("seats").value.peek() == 3


def test_property_derivation_feeds_dynamic_validator_bounds() -> None:
    engine = FormEngine(
        [
            {"key": "country", "value": "US"},
            {
                "key": "zip",
                "value": "123456",
                "logic": [
                    {
                        "type": "derivation",
                        "targetProperty": "maxLength",
                        "expression": "formValue.country === 'US' ? 5 : 10",
                    }
                ],
            },
        ]
    )
    zip_field = engine.field("zip")
    assert zip_field.properties.peek() == {"maxLength": 5}
    assert [error.kind for error in zip_field.errors.peek()] == ["maxLength"]
    engine.set_value("country", "DE")
    assert zip_field.errors.peek() == ()


def test_user_override_stops_derivation() -> None:
    engine = FormEngine(
        [
            {"key": "first", "value": "Ada"},
            {
                "key": "display",
                "logic": [
                    {"type": "derivation", "expression": "formValue.first + '!'", "stopOnUserOverride": True}
                ],
            },
        ]
    )
    assert engine.field("display").value.peek() == "Ada!"
    engine.set_value("display", "Custom")
    engine.set_value("first", "Grace")
    assert engine.field("display").value.peek() == "Custom"
    assert engine.field("display").dirty.peek() is True


def test_user_override_re_engages_on_dependency_change() -> None:
    engine = FormEngine(
        [
            {"key": "first", "value": "Ada"},
            {
                "key": "display",
                "logic": [
                    {
                        "type": "derivation",
                        "expression": "formValue.first + '!'",
                        "stopOnUserOverride": True,
                        "reEngageOnDependencyChange": True,
                    }
                ],
            },
        ]
    )
    engine.set_value("display", "Custom")
    assert engine.field("display").value.peek() == "Custom"
    engine.set_value("first", "Grace")
    assert engine.field("display").value.peek() == "Grace!"


def test_without_override_the_next_dependency_change_wins() -> None:
    engine = FormEngine([{"key": "a", "value": 1}, {"key": "b", "derivation": "formValue.a * 2"}])
    engine.set_value("b", 99)
    assert engine.field("b").value.peek() == 99
    engine.set_value("a", 4)
    assert engine.field("b").value.peek() == 8


def test_sibling_targets_in_array_items() -> None:
    engine = FormEngine(
        [
            {
                "key": "lines",
                "type": "array",
                "value": [{"qty": 2, "price": 5}],
                "fields": [
                    {"key": "qty"},
                    {"key": "price"},
                    {
                        "key": "amount",
                        "logic": [{"type": "derivation", "expression": "formValue.lines[$index].qty * formValue.lines[$index].price"}],
                    },
                ],
            }
        ]
    )
    assert engine.field("lines.0.amount").value.peek() == 10

    index = engine.add_array_item("lines", {"qty": 3, "price": 4})
    assert index == 1
    assert engine.field("lines.1.amount").value.peek() == 12

    engine.set_value("lines.0.qty", 10)
    assert engine.field("lines.0.amount").value.peek() == 50
    assert engine.field("lines.1.amount").value.peek() == 12

    engine.remove_array_item("lines", 0)
    assert engine.field("lines.0.amount").value.peek() == 12
    assert "lines.1.amount" not in engine.fields
    engine.set_value("lines.0.qty", 1)
    assert engine.field("lines.0.amount").value.peek() == 4


def test_relative_target_field_in_array_items() -> None:
    engine = FormEngine(
        [
            {
                "key": "people",
                "type": "array",
                "value": [{"first": "Ada", "last": "Lovelace"}],
                "fields": [
                    {"key": "first"},
                    {
                        "key": "last",
                        "logic": [
                            {
                                "type": "derivation",
                                "targetField": "$.full",
                                "expression": "formValue.people[$index].first + ' ' + fieldValue",
                            }
                        ],
                    },
                    {"key": "full"},
                ],
            }
        ]
    )
    assert engine.field("people.0.full").value.peek() == "Ada Lovelace"
    engine.set_value("people.0.last", "Byron")
    assert engine.field("people.0.full").value.peek() == "Ada Byron"


def test_debounced_derivation() -> None:
    scheduler = ManualScheduler()
    engine = FormEngine(
        [
            {"key": "query", "value": "a"},
            {"key": "slug", "logic": [{"type": "derivation", "expression": "formValue.query.toLowerCase()", "trigger": "debounced", "debounceMs": 200}]},
        ],
        scheduler=scheduler,
    )
    assert engine.field("slug").value.peek() == "a"
    engine.set_value("query", "AB")
    engine.set_value("query", "ABC")
    assert engine.field("slug").value.peek() == "a"
    scheduler.advance(200)
    assert engine.field("slug").value.peek() == "abc"


def test_unregistered_derivation_function_is_reported() -> None:
    engine = FormEngine([{"key": "a", "logic": [{"type": "derivation", "functionName": "missing"}]}], strict=False)
    assert [error.field_key for error in engine.configuration_errors] == ["a"]


def test_to_dict_reports_order() -> None:
    fields = parse_fields([{"key": "a", "value": 1}, {"key": "b", "derivation": "formValue.a"}])
    payload = collect_derivations(fields).to_dict()
    assert payload["order"] == [{"field": "b", "target": "b", "property": None, "dependsOn": ["a"], "order": 0}]
    assert payload["errors"] == []
