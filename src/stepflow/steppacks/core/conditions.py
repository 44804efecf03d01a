"""
Condition evaluation shared by the if and switch steps.

A condition is {"key": ..., "operation": ..., "value": ...}. A plain
string key is a dotted field path into the item payload (falling back to
the literal string when the path is absent and has no dots); an
expression key has already been resolved by the context.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional

from stepflow.step_sdk.errors import StepValidationError
from stepflow.step_sdk.expressions import has_expression


OPERATIONS = [
    "equal",
    "notEqual",
    "larger",
    "largerEqual",
    "smaller",
    "smallerEqual",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "isEmpty",
    "isNotEmpty",
    "regex",
]

_MISSING = object()


def resolve_path(obj: Any, path: str, default: Any = None) -> Any:
    """Dotted path lookup; list indexes as `items.0.name` or `items[0].name`."""
    if not path:
        return default
    current = obj
    for key in re.sub(r"\[(\d+)\]", r".\1", path).split("."):
        if isinstance(current, dict):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return default
    return current


def operand(raw: Any, resolved: Any, payload: Any) -> Any:
    """Value a condition key refers to for one item."""
    if has_expression(raw) or not isinstance(resolved, str):
        return resolved
    found = resolve_path(payload, resolved, _MISSING)
    if found is _MISSING:
        return None if "." in resolved else resolved
    return found


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        a, b = _number(left), _number(right)
        if a is None or b is None:
            return False
        return op(a, b)
    return compare


def _equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return _text(left) == _text(right)


def _is_empty(value: Any, _: Any = None) -> bool:
    if isinstance(value, (list, dict)):
        return not value
    return _text(value).strip() == ""


def _regex(left: Any, pattern: Any) -> bool:
    try:
        return re.search(_text(pattern), _text(left)) is not None
    except re.error as e:
        raise StepValidationError(f"Invalid regex pattern {pattern!r}: {e}") from e


_OPERATIONS: Dict[str, Callable[[Any, Any], bool]] = {
    "equal": _equal,
    "notEqual": lambda a, b: not _equal(a, b),
    "larger": _compare(lambda a, b: a > b),
    "largerEqual": _compare(lambda a, b: a >= b),
    "smaller": _compare(lambda a, b: a < b),
    "smallerEqual": _compare(lambda a, b: a <= b),
    "contains": lambda a, b: _text(b) in _text(a),
    "notContains": lambda a, b: _text(b) not in _text(a),
    "startsWith": lambda a, b: _text(a).startswith(_text(b)),
    "endsWith": lambda a, b: _text(a).endswith(_text(b)),
    "isEmpty": _is_empty,
    "isNotEmpty": lambda a, b: not _is_empty(a),
    "regex": _regex,
}


def evaluate(left: Any, operation: str, right: Any) -> bool:
    """Apply one comparison operation."""
    try:
        fn = _OPERATIONS[operation]
    except KeyError:
        raise StepValidationError(
            f"Unknown operation '{operation}' (expected one of {OPERATIONS})"
        ) from None
    return fn(left, right)


def normalize_condition(condition: Dict[str, Any]) -> Dict[str, Any]:
    """Accept {"condition": {...}} wrappers and "expression" as an alias of "operation"."""
    if "condition" in condition and isinstance(condition["condition"], dict):
        condition = condition["condition"]
    return {
        "key": condition.get("key", ""),
        "operation": condition.get("operation", condition.get("expression", "equal")),
        "value": condition.get("value"),
    }


def evaluate_conditions(
    raw_conditions: List[Dict[str, Any]],
    resolved_conditions: List[Dict[str, Any]],
    payload: Any,
    combine: str = "AND",
) -> bool:
    """Evaluate a list of conditions for one item and combine with AND / OR."""
    results = []
    for raw, resolved in zip(raw_conditions, resolved_conditions):
        raw, resolved = normalize_condition(raw), normalize_condition(resolved)
        left = operand(raw["key"], resolved["key"], payload)
        results.append(evaluate(left, resolved["operation"], resolved["value"]))
    if not results:
        return False
    if str(combine).upper() == "OR":
        return any(results)
    return all(results)


__all__ = [
    "OPERATIONS",
    "evaluate",
    "evaluate_conditions",
    "normalize_condition",
    "operand",
    "resolve_path",
]
