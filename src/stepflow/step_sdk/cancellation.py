"""
Cancellation tokens.

A run owns one token; every in-flight step and sandbox invocation observes
it. Tokens can be linked so an abort signal for a single sandbox call also
fires when the run is cancelled.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .errors import StepCancelledError


logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Thread-safe cancellation flag with callbacks.

    Callbacks registered with add_callback() run exactly once, on the
    thread that calls cancel(). A callback added after cancellation runs
    immediately.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None
        self._parent = parent
        self._unlink: Optional[Callable[[], None]] = None
        if parent is not None:
            self._unlink = parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Set the flag and fire callbacks. Subsequent calls are no-ops."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason or "cancelled"
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback fired on cancel.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove

        callback()
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StepCancelledError(f"Run cancelled: {self.reason}", retryable=False)

    def close(self) -> None:
        """Detach from the parent token."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None


__all__ = ["CancellationToken"]
