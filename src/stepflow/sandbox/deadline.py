"""
Uniform deadline/cancellation wrapper shared by both code strategies.

run_with_deadline() runs a callable on a daemon thread and hands it an
abort signal. When the deadline passes or the run is cancelled the
signal fires (killing subprocesses or tripping the in-process tracer)
and the caller gets StepTimeoutError / StepCancelledError immediately,
without waiting for the callable to notice.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.errors import StepCancelledError, StepTimeoutError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long to wait for the worker to unwind after the abort signal fired
ABORT_GRACE_SECONDS = 0.05


def run_with_deadline(
    fn: Callable[[CancellationToken], T],
    duration: Optional[float],
    cancel_token: Optional[CancellationToken] = None,
    timeout_retryable: bool = True,
    name: str = "stepflow-deadline",
) -> T:
    """
    Run fn(abort_signal) with a wall-clock deadline.

    Args:
        fn: Callable receiving the abort signal it must honor
        duration: Deadline in seconds (None for no deadline)
        cancel_token: Run-level token; cancelling it aborts fn
        timeout_retryable: retryable flag of the raised StepTimeoutError

    Returns:
        fn's return value

    Raises:
        StepTimeoutError: deadline passed first
        StepCancelledError: cancel_token fired first
        Exception: whatever fn raised
    """
    abort = CancellationToken(parent=cancel_token)
    wake = threading.Event()
    result_holder: list = [None]
    exception_holder: list = [None]

    def target() -> None:
        try:
            result_holder[0] = fn(abort)
        except BaseException as e:  # re-raised on the caller thread
            exception_holder[0] = e
        finally:
            wake.set()

    remove_wake = abort.add_callback(wake.set)
    started = time.monotonic()
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()

    try:
        wake.wait(timeout=duration)
        finished = not thread.is_alive() or (wake.is_set() and not abort.is_cancelled)

        if finished and not abort.is_cancelled:
            thread.join()
            if exception_holder[0] is not None:
                raise exception_holder[0]
            return result_holder[0]

        if cancel_token is not None and cancel_token.is_cancelled:
            thread.join(timeout=ABORT_GRACE_SECONDS)
            raise StepCancelledError(
                f"Execution cancelled: {cancel_token.reason}",
                retryable=False,
            )

        abort.cancel("timeout")
        thread.join(timeout=ABORT_GRACE_SECONDS)
        if thread.is_alive():
            logger.warning(
                f"Worker '{name}' still running {ABORT_GRACE_SECONDS}s after abort; abandoning it"
            )
        elapsed_ms = (time.monotonic() - started) * 1000
        raise StepTimeoutError(
            f"Execution exceeded deadline of {duration * 1000:.0f} ms "
            f"(aborted after {elapsed_ms:.0f} ms)",
            retryable=timeout_retryable,
            details={"timeout_ms": int(duration * 1000)},
        )
    finally:
        remove_wake()
        abort.close()


__all__ = ["run_with_deadline", "ABORT_GRACE_SECONDS"]
