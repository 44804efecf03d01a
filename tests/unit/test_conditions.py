"""Tests for condition evaluation."""
import pytest

from stepflow.step_sdk.errors import StepValidationError
from stepflow.steppacks.core.conditions import (
    evaluate,
    evaluate_conditions,
    normalize_condition,
    operand,
    resolve_path,
)


class TestResolvePath:
    def test_nested_dicts_and_lists(self):
        data = {"user": {"tags": ["a", {"name": "b"}]}}

        assert resolve_path(data, "user.tags.0") == "a"
        assert resolve_path(data, "user.tags[1].name") == "b"
        assert resolve_path(data, "user.missing", "dflt") == "dflt"
        assert resolve_path(data, "user.tags.5") is None


class TestEvaluate:
    """Test individual operations."""

    @pytest.mark.parametrize("left, operation, right, expected", [
        (5, "equal", 5, True),
        ("5", "equal", 5, True),
        (True, "equal", "true", True),
        (1, "notEqual", 2, True),
        ("10", "larger", 9, True),
        ("abc", "larger", 1, False),
        (3, "smallerEqual", 3, True),
        ("hello world", "contains", "lo w", True),
        ("hello", "notContains", "x", True),
        ("hello", "startsWith", "he", True),
        ("hello", "endsWith", "lo", True),
        ("  ", "isEmpty", None, True),
        ([], "isEmpty", None, True),
        ({"a": 1}, "isNotEmpty", None, True),
        ("order-123", "regex", r"order-\d+", True),
    ])
    def test_operations(self, left, operation, right, expected):
        assert evaluate(left, operation, right) is expected

    def test_unknown_operation(self):
        with pytest.raises(StepValidationError):
            evaluate(1, "approximately", 1)

    def test_invalid_regex(self):
        with pytest.raises(StepValidationError):
            evaluate("x", "regex", "(")


class TestConditions:
    """Test key resolution and combination."""

    def test_operand_prefers_field_value(self):
        payload = {"status": "open"}

        assert operand("status", "status", payload) == "open"
        assert operand("literal", "literal", payload) == "literal"
        assert operand("a.b", "a.b", payload) is None
        assert operand("{{ $json.status }}", "open", payload) == "open"

    def test_normalize_wrapped_condition(self):
        condition = normalize_condition({"condition": {"key": "a", "expression": "larger", "value": 1}})

        assert condition == {"key": "a", "operation": "larger", "value": 1}

    def test_and_or(self):
        conditions = [
            {"key": "a", "operation": "equal", "value": 1},
            {"key": "b", "operation": "equal", "value": 2},
        ]
        payload = {"a": 1, "b": 3}

        assert evaluate_conditions(conditions, conditions, payload, "AND") is False
        assert evaluate_conditions(conditions, conditions, payload, "or") is True

    def test_no_conditions_is_false(self):
        assert evaluate_conditions([], [], {"a": 1}) is False
