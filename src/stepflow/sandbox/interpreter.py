"""
Out-of-process interpreter strategy.

Items are serialized into a preamble ahead of the user code in a
temporary script, the interpreter runs it as a subprocess, and standard
output is parsed as JSON. The caller owns the scratch directory the
script is written to.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.errors import SandboxViolationError, StepError, StepValidationError


logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
STDERR_TAIL_CHARS = 2000


def _javascript_preamble(items_json: str) -> str:
    return f"const items = {items_json};\n"


def _python_preamble(items_json: str) -> str:
    return f"import json\nitems = json.loads({items_json!r})\n"


@dataclass(frozen=True)
class InterpreterSpec:
    """How to run one language out of process."""
    language: str
    command: Tuple[str, ...]
    suffix: str
    preamble: Callable[[str], str]
    env_passthrough: Tuple[str, ...] = field(default=("PATH", "LANG", "HOME", "SYSTEMROOT"))


def javascript_spec(executable: str = "node") -> InterpreterSpec:
    return InterpreterSpec(
        language="javascript",
        command=(executable,),
        suffix=".js",
        preamble=_javascript_preamble,
    )


def python_spec(executable: Optional[str] = None) -> InterpreterSpec:
    """Out-of-process Python, isolated mode (-I)."""
    return InterpreterSpec(
        language="python",
        command=(executable or sys.executable, "-I"),
        suffix=".py",
        preamble=_python_preamble,
    )


def extract_json(stdout: str) -> Any:
    """
    Parse interpreter output.

    Strict JSON first; otherwise the first valid JSON array or object
    found in the text.

    Raises:
        StepValidationError: nothing parseable
    """
    text = stdout.strip()
    if not text:
        raise StepValidationError("Code produced no output; print one JSON array or object")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for index, char in enumerate(text):
        if char not in "[{":
            continue
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        if isinstance(value, (list, dict)):
            return value

    preview = text[:200]
    raise StepValidationError(
        f"Code output is not valid JSON: {preview!r}",
        details={"stdout_preview": preview},
    )


def _kill(process: subprocess.Popen) -> None:
    if process.poll() is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class SubprocessInterpreter:
    """
    Runs user code with an external interpreter.

    SYNC-SAFE: blocks the calling thread; called from inside
    run_with_deadline, which supplies the abort signal.
    """

    def __init__(self, spec: InterpreterSpec, max_output_bytes: int = 10 * 1024 * 1024):
        self.spec = spec
        self.max_output_bytes = max_output_bytes

    def build_script(self, code: str, items: Sequence[Any]) -> str:
        items_json = json.dumps(list(items))
        return self.spec.preamble(items_json) + "\n" + code + "\n"

    def _environment(self) -> dict:
        return {
            name: os.environ[name]
            for name in self.spec.env_passthrough
            if name in os.environ
        }

    def run(
        self,
        code: str,
        items: Sequence[Any],
        abort: CancellationToken,
        workdir: Path,
    ) -> Any:
        """
        Write the script into workdir, run it, and parse its output.

        Returns:
            Parsed JSON value printed by the script
        """
        script = workdir / f"main{self.spec.suffix}"
        script.write_text(self.build_script(code, items), encoding="utf-8")

        try:
            process = subprocess.Popen(
                [*self.spec.command, str(script)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(workdir),
                env=self._environment(),
            )
        except FileNotFoundError:
            raise StepError(
                f"Interpreter for '{self.spec.language}' not found: {self.spec.command[0]}",
                retryable=False,
            ) from None

        remove_kill = abort.add_callback(lambda: _kill(process))
        stderr_chunks: List[bytes] = []
        stderr_thread = threading.Thread(
            target=self._drain, args=(process.stderr, stderr_chunks),
            daemon=True,
        )
        stderr_thread.start()

        try:
            stdout = self._read_bounded(process)
            returncode = process.wait()
        finally:
            remove_kill()
            _kill(process)
            stderr_thread.join(timeout=1)
            process.stdout.close()
            process.stderr.close()

        if abort.is_cancelled:
            raise StepError(f"Execution aborted: {abort.reason}", retryable=False)

        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        if returncode != 0:
            raise StepError(
                f"{self.spec.language} code exited with status {returncode}: "
                f"{stderr[-STDERR_TAIL_CHARS:].strip()}",
                retryable=False,
                details={"returncode": returncode},
            )
        if stderr.strip():
            logger.debug(f"{self.spec.language} stderr: {stderr[-STDERR_TAIL_CHARS:]}")

        return extract_json(stdout.decode("utf-8", errors="replace"))

    def _read_bounded(self, process: subprocess.Popen) -> bytes:
        chunks: List[bytes] = []
        total = 0
        while True:
            chunk = process.stdout.read1(READ_CHUNK_BYTES)
            if not chunk:
                break
            total += len(chunk)
            if total > self.max_output_bytes:
                _kill(process)
                raise SandboxViolationError(
                    f"Code output exceeded {self.max_output_bytes} bytes",
                    details={"max_output_bytes": self.max_output_bytes},
                )
            chunks.append(chunk)
        return b"".join(chunks)

    def _drain(self, stream, chunks: List[bytes]) -> None:
        total = 0
        for chunk in iter(lambda: stream.read(READ_CHUNK_BYTES), b""):
            if total < self.max_output_bytes:
                chunks.append(chunk)
            total += len(chunk)

__all__ = [
    "InterpreterSpec",
    "SubprocessInterpreter",
    "extract_json",
    "javascript_spec",
    "python_spec",
]
