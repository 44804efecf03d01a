"""
In-process restricted Python.

User code is a function body that receives ``items`` (list of payloads)
and must ``return`` a list of JSON values. Before execution the code is
statically checked; at run time only an allow-list of builtins and
helper namespaces is visible, and a per-thread trace hook aborts the
code as soon as the abort signal fires.

Limitation: the trace hook fires between Python bytecode lines, so a
single long-running C call (e.g. ``sum(range(10**12))``) is only
interrupted once it returns. The deadline still returns control to the
scheduler on time; the abandoned worker thread is a daemon.
"""

from __future__ import annotations

import ast
import copy
import json
import math
import re
import sys
import textwrap
from datetime import date, datetime, time as dt_time, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.errors import SandboxViolationError, StepError, StepValidationError


CODE_FILENAME = "<stepflow-code>"
ENTRYPOINT = "_stepflow_main"

FORBIDDEN_NAMES = frozenset({
    "__import__", "__builtins__", "breakpoint", "compile", "delattr", "dir",
    "eval", "exec", "exit", "getattr", "globals", "hasattr", "help", "input",
    "locals", "memoryview", "object", "open", "quit", "setattr", "super",
    "type", "vars", "classmethod", "staticmethod", "property",
})

FORBIDDEN_ATTRIBUTES = frozenset({
    "format", "format_map", "mro", "gi_frame", "gi_code", "cr_frame",
    "cr_code", "ag_frame", "f_globals", "f_locals", "f_builtins", "f_back",
    "f_code", "tb_frame", "tb_next", "co_code", "func_globals",
})

FORBIDDEN_NODES = {
    ast.Import: "import statements",
    ast.ImportFrom: "import statements",
    ast.Global: "global declarations",
    ast.Nonlocal: "nonlocal declarations",
    ast.ClassDef: "class definitions",
    ast.AsyncFunctionDef: "async functions",
    ast.Await: "await expressions",
    ast.AsyncFor: "async loops",
    ast.AsyncWith: "async with blocks",
    ast.Yield: "generators",
    ast.YieldFrom: "generators",
    ast.With: "with blocks",
}


class _ExecutionAborted(BaseException):
    """Raised from the trace hook. Not catchable by user except clauses."""


class CodeValidator(ast.NodeVisitor):
    """Static check rejecting dangerous constructs before execution."""

    def __init__(self) -> None:
        self.violations: List[str] = []

    def _reject(self, node: ast.AST, reason: str) -> None:
        line = max(getattr(node, "lineno", 1) - 1, 1)
        self.violations.append(f"line {line}: {reason}")

    def generic_visit(self, node: ast.AST) -> None:
        for node_type, label in FORBIDDEN_NODES.items():
            if isinstance(node, node_type):
                self._reject(node, f"{label} are not allowed")
                break
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._reject(node, f"name '{node.id}' is not allowed")
        elif node.id in FORBIDDEN_NAMES:
            self._reject(node, f"'{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._reject(node, f"access to '{node.attr}' is not allowed")
        elif node.attr in FORBIDDEN_ATTRIBUTES:
            self._reject(node, f"attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._reject(node, "bare 'except:' is not allowed, name the exception type")
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, str) and node.value.startswith("__") and node.value.endswith("__"):
            self._reject(node, "dunder string literals are not allowed")
        self.generic_visit(node)


def compile_user_code(code: str) -> Any:
    """
    Wrap, validate and compile user code.

    Raises:
        StepValidationError: syntax error
        SandboxViolationError: disallowed construct
    """
    body = textwrap.indent(textwrap.dedent(code), "    ") if code.strip() else "    pass"
    source = f"def {ENTRYPOINT}(items):\n{body}\n"

    try:
        tree = ast.parse(source, filename=CODE_FILENAME, mode="exec")
    except SyntaxError as e:
        line = (e.lineno or 1) - 1
        raise StepValidationError(
            f"Syntax error in code at line {line}: {e.msg}",
            details={"line": line},
        ) from None

    validator = CodeValidator()
    for statement in tree.body[0].body:
        validator.visit(statement)
    if validator.violations:
        raise SandboxViolationError(
            "Code rejected: " + "; ".join(validator.violations),
            details={"violations": validator.violations},
        )

    return compile(tree, CODE_FILENAME, "exec")


def _safe_builtins(print_fn: Callable[..., None]) -> Dict[str, Any]:
    return {
        "abs": abs, "all": all, "any": any, "bool": bool, "dict": dict,
        "divmod": divmod, "enumerate": enumerate, "filter": filter,
        "float": float, "frozenset": frozenset, "int": int,
        "isinstance": isinstance, "len": len, "list": list, "map": map,
        "max": max, "min": min, "pow": pow, "print": print_fn,
        "range": range, "repr": repr, "reversed": reversed, "round": round,
        "set": set, "slice": slice, "sorted": sorted, "str": str,
        "sum": sum, "tuple": tuple, "zip": zip,
        "Exception": Exception, "ValueError": ValueError,
        "KeyError": KeyError, "TypeError": TypeError,
        "IndexError": IndexError, "ZeroDivisionError": ZeroDivisionError,
        "True": True, "False": False, "None": None,
    }


def build_namespace(items: List[Any], print_fn: Callable[..., None]) -> Dict[str, Any]:
    """Globals visible to user code."""
    return {
        "__builtins__": _safe_builtins(print_fn),
        "math": math,
        "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
        "re": SimpleNamespace(
            match=re.match, search=re.search, fullmatch=re.fullmatch,
            findall=re.findall, sub=re.sub, split=re.split,
            escape=re.escape, IGNORECASE=re.IGNORECASE,
        ),
        "datetime": datetime,
        "date": date,
        "time": dt_time,
        "timedelta": timedelta,
        "timezone": timezone,
    }


def run_restricted(
    code: str,
    items: List[Any],
    abort: CancellationToken,
    print_fn: Optional[Callable[[str], None]] = None,
) -> List[Any]:
    """
    Execute user code on the current thread until it returns or abort fires.

    Returns:
        The list returned by the code (a returned dict becomes a one-element list)
    """
    compiled = compile_user_code(code)

    def _print(*args: Any, sep: str = " ", end: str = "") -> None:
        if print_fn is not None:
            print_fn(sep.join(str(a) for a in args) + end)

    namespace = build_namespace(items, _print)
    exec(compiled, namespace)
    entrypoint = namespace[ENTRYPOINT]

    def tracer(frame, event, arg):
        if abort.is_cancelled:
            raise _ExecutionAborted()
        if frame.f_code.co_filename != CODE_FILENAME:
            return None
        return tracer

    previous = sys.gettrace()
    sys.settrace(tracer)
    try:
        result = entrypoint(copy.deepcopy(items))
    except _ExecutionAborted:
        raise StepError(f"Execution aborted: {abort.reason}", retryable=False) from None
    except StepError:
        raise
    except Exception as e:
        raise StepError(
            f"Code raised {type(e).__name__}: {e}",
            retryable=False,
            details={"exception": type(e).__name__},
        ) from None
    finally:
        sys.settrace(previous)

    if isinstance(result, dict):
        result = [result]
    if not isinstance(result, (list, tuple)):
        raise StepValidationError(
            f"Code must return a list of items, got {type(result).__name__}"
        )
    try:
        json.dumps(list(result))
    except (TypeError, ValueError) as e:
        raise StepValidationError(f"Code returned a non-JSON value: {e}") from None
    return list(result)


__all__ = [
    "CodeValidator",
    "compile_user_code",
    "run_restricted",
]
