"""
Code Executor - runs a user-authored snippet as one step.

Strategy is selected by declared language:
- "python": in-process restricted evaluation (restricted.py)
- "javascript" and any registered interpreter: subprocess (interpreter.py)

Both go through run_with_deadline and return a list of Items.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from stepflow.config import Settings, get_settings
from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.errors import StepError, StepValidationError
from stepflow.step_sdk.items import Item

from .deadline import run_with_deadline
from .interpreter import InterpreterSpec, SubprocessInterpreter, javascript_spec
from .restricted import run_restricted


logger = logging.getLogger(__name__)

IN_PROCESS_LANGUAGE = "python"


class CodeExecutor:
    """
    Executes code snippets with a uniform timeout and cancellation contract.

    Usage:
        executor = CodeExecutor()
        items = executor.run("python", "return [{'n': len(items)}]", [Item(payload={})], timeout_s=1)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._interpreters: Dict[str, InterpreterSpec] = {
            "javascript": javascript_spec(self.settings.javascript_interpreter),
        }

    def register_interpreter(self, spec: InterpreterSpec) -> None:
        """Add or replace an out-of-process language."""
        self._interpreters[spec.language] = spec

    @property
    def languages(self) -> List[str]:
        return [IN_PROCESS_LANGUAGE] + sorted(self._interpreters)

    def run(
        self,
        language: str,
        code: str,
        items: Sequence[Item],
        timeout_s: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> List[Item]:
        """
        Run code against input items.

        Args:
            language: "python" or a registered interpreter language
            code: User code
            items: Input items; code sees their payloads as ``items``
            timeout_s: Wall-clock deadline (settings default if None)
            cancel_token: Run cancellation token
            log: Sink for captured print output

        Returns:
            Output items, one per element of the returned/printed array

        Raises:
            StepError: syntax, runtime, timeout (retryable=False), sandbox violation,
                non-JSON output, cancellation
        """
        if timeout_s is None:
            timeout_s = self.settings.default_code_timeout_s
        payloads = [item.payload for item in items]

        if language == IN_PROCESS_LANGUAGE:
            result = run_with_deadline(
                lambda abort: run_restricted(code, payloads, abort, print_fn=log),
                timeout_s,
                cancel_token,
                timeout_retryable=False,
                name="stepflow-code-python",
            )
        elif language in self._interpreters:
            interpreter = SubprocessInterpreter(
                self._interpreters[language],
                max_output_bytes=self.settings.code_max_output_bytes,
            )
            temp_root = self.settings.code_temp_dir
            if temp_root is not None:
                Path(temp_root).mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix="stepflow-code-", dir=temp_root) as tmp:
                result = run_with_deadline(
                    lambda abort: interpreter.run(code, payloads, abort, Path(tmp)),
                    timeout_s,
                    cancel_token,
                    timeout_retryable=False,
                    name=f"stepflow-code-{language}",
                )
        else:
            raise StepValidationError(
                f"Unsupported code language '{language}' (available: {self.languages})"
            )

        return self._to_items(result)

    @staticmethod
    def _to_items(result: Any) -> List[Item]:
        if isinstance(result, dict):
            result = [result]
        if not isinstance(result, list):
            raise StepValidationError(
                f"Code must produce a JSON array or object, got {type(result).__name__}"
            )
        return [Item(payload=value) for value in result]


__all__ = ["CodeExecutor", "IN_PROCESS_LANGUAGE"]
