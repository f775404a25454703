import pytest

from form_rules.errors import ConfigurationError, EvaluationError, ExpressionSyntaxError, UnsafeExpressionError
from form_rules.expressions import (
    compare_values,
    compile_expression,
    evaluate_program,
    is_truthy,
    loose_equals,
    safe_eval,
    strict_equals,
    to_number,
    to_string,
)


def test_safe_eval_blocks_unknown_function_calls() -> None:
    with pytest.raises(UnsafeExpressionError):
        safe_eval("__import__('os')", {})


def test_safe_eval_blocks_prototype_access() -> None:
    with pytest.raises(UnsafeExpressionError):
        safe_eval("formValue.constructor", {"formValue": {}})
    with pytest.raises(UnsafeExpressionError):
        safe_eval("formValue['__proto__']", {"formValue": {}})
    with pytest.raises(UnsafeExpressionError):
        safe_eval("formValue._private", {"formValue": {}})


def test_safe_eval_rejects_unknown_roots_and_methods() -> None:
    with pytest.raises(UnsafeExpressionError, match="Unknown identifier"):
        compile_expression("window.location")
    with pytest.raises(UnsafeExpressionError, match="not allowed"):
        compile_expression("fieldValue.call(1)")


def test_assignment_and_reserved_words_are_syntax_errors() -> None:
    with pytest.raises(ExpressionSyntaxError):
        compile_expression("fieldValue = 3")
    with pytest.raises(ExpressionSyntaxError):
        compile_expression("new Date()")
    with pytest.raises(ExpressionSyntaxError):
        compile_expression("   ")
    assert issubclass(ExpressionSyntaxError, ConfigurationError)


def test_compile_expression_reusable_program() -> None:
    program = compile_expression("formValue.quantity * formValue.unitPrice")
    assert evaluate_program(program, {"formValue": {"quantity": 3, "unitPrice": 10}}) == 30
    assert evaluate_program(program, {"formValue": {"quantity": 5, "unitPrice": 10}}) == 50


def test_member_and_index_access() -> None:
    scope = {"formValue": {"address": {"city": "Paris"}, "items": [{"qty": 2}, {"qty": 4}]}}
    assert safe_eval("formValue.address.city", scope) == "Paris"
    assert safe_eval("formValue['address']['city']", scope) == "Paris"
    assert safe_eval("formValue.items[1].qty", scope) == 4
    assert safe_eval("formValue.items.length", scope) == 2
    assert safe_eval("formValue.missing.deeper", scope) is None


def test_logical_and_conditional_operators() -> None:
    scope = {"fieldValue": "", "formValue": {"country": "US"}}
    assert safe_eval("fieldValue || 'fallback'", scope) == "fallback"
    assert safe_eval("formValue.country === 'US' ? 'domestic' : 'abroad'", scope) == "domestic"
    assert safe_eval("!fieldValue && formValue.country !== 'CA'", scope) is True


def test_arithmetic_follows_loose_semantics() -> None:
    assert safe_eval("'3' * 2", {}) == 6
    assert safe_eval("'a' + 1", {}) == "a1"
    assert safe_eval("10 / 4", {}) == 2.5
    assert safe_eval("10 / 5", {}) == 2
    assert safe_eval("7 % 3", {}) == 1
    assert safe_eval("1 / 0", {}) is None


def test_ordering_with_null_is_never_satisfied() -> None:
    scope = {"formValue": {"age": None}}
    assert safe_eval("formValue.age > 3", scope) is False
    assert safe_eval("formValue.age <= 3", scope) is False
    assert safe_eval("formValue.missing < 1", scope) is False


def test_allowed_math_functions_and_registered_functions() -> None:
    assert safe_eval("round(sqrt(16))", {}) == 4
    assert safe_eval("max(1, 5, 3)", {}) == 5
    assert safe_eval("double(fieldValue)", {"fieldValue": 6}, extra_functions={"double": lambda value: value * 2}) == 12


def test_whitelisted_methods() -> None:
    scope = {"fieldValue": "  Hello "}
    assert safe_eval("fieldValue.trim().toUpperCase()", scope) == "HELLO"
    assert safe_eval("fieldValue.includes('ell')", scope) is True
    assert safe_eval("[1, 2, 3].includes(2)", {}) is True
    assert safe_eval("['a', 'b'].join('-')", {}) == "a-b"
    assert safe_eval("(2.5).toFixed(2)", {}) == "2.50"


def test_method_on_wrong_type_is_evaluation_error() -> None:
    with pytest.raises(EvaluationError):
        safe_eval("fieldValue.trim()", {"fieldValue": None})


def test_equality_helpers() -> None:
    assert strict_equals(1, 1.0)
    assert not strict_equals(1, "1")
    assert not strict_equals(True, 1)
    assert loose_equals(1, "1")
    assert loose_equals(None, None)
    assert not loose_equals(None, 0)


def test_coercion_helpers() -> None:
    assert to_number("42") == 42
    assert to_number("4.5") == 4.5
    assert to_number("") == 0
    assert to_number("abc") is None
    assert to_string(3.0) == "3"
    assert to_string(True) == "true"
    assert to_string(None) == ""
    assert not is_truthy(0)
    assert not is_truthy("")
    assert is_truthy([])
    assert compare_values(">", "b", "a")
    assert not compare_values("<", None, 1)
