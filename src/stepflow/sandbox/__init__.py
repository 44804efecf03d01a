"""
Sandbox - isolated execution of user-authored code steps.
"""

from .deadline import run_with_deadline
from .executor import CodeExecutor
from .interpreter import InterpreterSpec, SubprocessInterpreter, extract_json, javascript_spec, python_spec
from .restricted import compile_user_code, run_restricted


__all__ = [
    "CodeExecutor",
    "InterpreterSpec",
    "SubprocessInterpreter",
    "compile_user_code",
    "extract_json",
    "javascript_spec",
    "python_spec",
    "run_restricted",
    "run_with_deadline",
]
