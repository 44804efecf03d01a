"""
Parameter expressions.

Parameter strings may embed ``{{ ... }}`` expressions. A string that is a
single expression resolves to the raw value; mixed text is interpolated.

Available names:
    $json   payload of the current input item
    $tags   tags of the current input item
    $item   the current item as {"payload", "tags"}
    $items  all input items (payload dicts)
    $vars   external variables, resolved through a VariableResolver
    $run    {"id": run_id}
    $step   {"id": step_id, "type": step_type}
    $now    current UTC datetime
"""

from __future__ import annotations

import ast
import operator
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from .errors import StepValidationError


EXPRESSION_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}", re.DOTALL)


class ExpressionError(StepValidationError):
    """Expression could not be parsed or evaluated."""

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message, details={"expression": expression})
        self.expression = expression


@runtime_checkable
class VariableResolver(Protocol):
    """External key-value resolution service for variables and credentials."""

    def resolve(self, key: str) -> Any:
        """Return the value for key or raise KeyError."""
        ...


class DictVariableResolver:
    """VariableResolver backed by a plain dict."""

    def __init__(self, values: Optional[Dict[str, Any]] = None) -> None:
        self._values = dict(values or {})

    def resolve(self, key: str) -> Any:
        return self._values[key]

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value


class _VariablesView(Mapping):
    """Lazy mapping over a VariableResolver."""

    def __init__(self, resolver: Optional[VariableResolver]) -> None:
        self._resolver = resolver

    def __getitem__(self, key: str) -> Any:
        if self._resolver is None:
            raise ExpressionError(f"Unknown variable '{key}' (no resolver configured)")
        try:
            return self._resolver.resolve(key)
        except KeyError:
            raise ExpressionError(f"Unknown variable '{key}'") from None

    def __iter__(self):
        return iter(())

    def __len__(self) -> int:
        return 0


class SafeExpressionEvaluator:
    """AST-walking evaluator over a whitelisted subset of Python syntax."""

    allowed_functions: Dict[str, Callable[..., Any]] = {
        "abs": abs,
        "round": round,
        "min": min,
        "max": max,
        "sum": sum,
        "len": len,
        "str": str,
        "int": int,
        "float": float,
        "bool": bool,
        "list": list,
        "dict": dict,
        "sorted": sorted,
        "lower": lambda s: str(s).lower(),
        "upper": lambda s: str(s).upper(),
    }

    operators = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
    }

    comparisons = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.In: lambda x, y: x in y,
        ast.NotIn: lambda x, y: x not in y,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    unary_ops = {
        ast.UAdd: operator.pos,
        ast.USub: operator.neg,
        ast.Not: operator.not_,
    }

    def evaluate(self, expression: str, context: Dict[str, Any]) -> Any:
        """Evaluate an expression against a context of $-prefixed names."""
        processed = re.sub(r"\$([A-Za-z_][A-Za-z0-9_]*)", r"_d_\1", expression)
        names = {f"_d_{key[1:]}": value for key, value in context.items() if key.startswith("$")}
        try:
            tree = ast.parse(processed.strip(), mode="eval")
            return self._eval_node(tree.body, names)
        except ExpressionError:
            raise
        except SyntaxError as e:
            raise ExpressionError(f"Syntax error in expression: {e.msg}", expression) from None
        except Exception as e:
            raise ExpressionError(f"Expression evaluation failed: {e}", expression) from None

    def _eval_node(self, node: ast.AST, names: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in names:
                return names[node.id]
            if node.id in self.allowed_functions:
                return self.allowed_functions[node.id]
            raise NameError(f"Name '{node.id.replace('_d_', '$', 1)}' is not defined")

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ValueError(f"Access to '{node.attr}' is not allowed")
            obj = self._eval_node(node.value, names)
            return self._lookup(obj, node.attr)

        if isinstance(node, ast.Subscript):
            obj = self._eval_node(node.value, names)
            key = self._eval_node(node.slice, names)
            if isinstance(key, str) and key.startswith("_"):
                raise ValueError(f"Access to '{key}' is not allowed")
            return self._lookup(obj, key)

        if isinstance(node, ast.BinOp):
            op = self.operators.get(type(node.op))
            if op is None:
                raise ValueError(f"Unsupported binary operator: {type(node.op).__name__}")
            return op(self._eval_node(node.left, names), self._eval_node(node.right, names))

        if isinstance(node, ast.UnaryOp):
            op = self.unary_ops.get(type(node.op))
            if op is None:
                raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")
            return op(self._eval_node(node.operand, names))

        if isinstance(node, ast.BoolOp):
            values = node.values
            result = self._eval_node(values[0], names)
            for value in values[1:]:
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
                result = self._eval_node(value, names)
            return result

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, names)
            for op, right_node in zip(node.ops, node.comparators):
                right = self._eval_node(right_node, names)
                comparison = self.comparisons.get(type(op))
                if comparison is None:
                    raise ValueError(f"Unsupported comparison: {type(op).__name__}")
                if not comparison(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval_node(node.test, names):
                return self._eval_node(node.body, names)
            return self._eval_node(node.orelse, names)

        if isinstance(node, ast.Call):
            func = self._eval_node(node.func, names)
            if func not in self.allowed_functions.values():
                raise ValueError("Only builtin helper functions may be called")
            args = [self._eval_node(arg, names) for arg in node.args]
            return func(*args)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval_node(elt, names) for elt in node.elts]

        if isinstance(node, ast.Dict):
            return {
                self._eval_node(k, names): self._eval_node(v, names)
                for k, v in zip(node.keys, node.values)
            }

        raise ValueError(f"Unsupported expression element: {type(node).__name__}")

    @staticmethod
    def _lookup(obj: Any, key: Any) -> Any:
        if obj is None:
            return None
        if isinstance(obj, dict):
            return obj.get(key)
        if isinstance(obj, Mapping):
            return obj[key]
        if isinstance(obj, (list, tuple)) and isinstance(key, int):
            return obj[key] if -len(obj) <= key < len(obj) else None
        if isinstance(obj, datetime) and isinstance(key, str) and key in ("year", "month", "day", "hour", "minute"):
            return getattr(obj, key)
        return None


_evaluator = SafeExpressionEvaluator()


def has_expression(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value and EXPRESSION_RE.search(value) is not None


def resolve_value(value: Any, context: Dict[str, Any]) -> Any:
    """
    Resolve expressions inside a parameter value.

    Dicts and lists are resolved recursively; other values pass through.
    """
    if isinstance(value, dict):
        return {k: resolve_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, context) for v in value]
    if not has_expression(value):
        return value

    whole = EXPRESSION_RE.fullmatch(value.strip())
    if whole:
        return _evaluator.evaluate(whole.group(1), context)

    def _substitute(match: re.Match) -> str:
        result = _evaluator.evaluate(match.group(1), context)
        return "" if result is None else str(result)

    return EXPRESSION_RE.sub(_substitute, value)


def build_context(
    item: Any = None,
    items: Optional[list] = None,
    resolver: Optional[VariableResolver] = None,
    run_id: Optional[str] = None,
    step_id: Optional[str] = None,
    step_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the $-name context for one item."""
    payload = getattr(item, "payload", None)
    tags = getattr(item, "tags", {}) if item is not None else {}
    return {
        "$json": payload if payload is not None else {},
        "$tags": tags,
        "$item": {"payload": payload, "tags": tags},
        "$items": [getattr(i, "payload", i) for i in (items or [])],
        "$vars": _VariablesView(resolver),
        "$run": {"id": run_id},
        "$step": {"id": step_id, "type": step_type},
        "$now": datetime.now(timezone.utc),
    }


__all__ = [
    "DictVariableResolver",
    "ExpressionError",
    "SafeExpressionEvaluator",
    "VariableResolver",
    "build_context",
    "has_expression",
    "resolve_value",
]
