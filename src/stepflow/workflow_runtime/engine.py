"""
Engine - trigger activation entry point.

Validates a graph once per trigger, creates the RunState and schedules the
run on an engine-level pool. Callers get a RunHandle back immediately.

SYNC-SAFE: runs execute on plain threads; RunHandle.result() blocks.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, Optional

from stepflow.config import Settings, get_settings
from stepflow.observability.logging import with_run_context
from stepflow.recovery.store import CheckpointStore, create_checkpoint_store
from stepflow.step_registry.registry import StepRegistry
from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.expressions import VariableResolver

from .models import Graph, TriggerEvent
from .scheduler import Scheduler
from .state import RunRepository, RunState
from .validation import GraphValidationError, ValidationResult, validate


logger = logging.getLogger(__name__)


class RunHandle:
    """Handle to a scheduled run."""

    def __init__(self, run_id: str, future: Future, token: CancellationToken, runs: RunRepository):
        self.run_id = run_id
        self._future = future
        self._token = token
        self._runs = runs

    def result(self, timeout: Optional[float] = None) -> RunState:
        """
        Block until the run is terminal.

        Returns:
            Snapshot of the terminal RunState

        Raises:
            TimeoutError: If the run is still going after `timeout` seconds
        """
        try:
            self._future.result(timeout=timeout)
        except FutureTimeoutError as e:
            raise TimeoutError(f"Run {self.run_id} still running after {timeout}s") from e
        return self._runs.snapshot(self.run_id)

    def done(self) -> bool:
        return self._future.done()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._token.cancel(reason)

    @property
    def state(self) -> Optional[RunState]:
        """Current snapshot (safe to read while the run is active)."""
        return self._runs.snapshot(self.run_id)


class Engine:
    """
    Starts, cancels and inspects runs.

    All collaborators are injected; the registry is required, the rest fall
    back to settings-driven defaults.

    Usage:
        engine = Engine(StepRegistry.with_core_steps())
        handle = engine.start_run(graph, TriggerEvent.manual({"name": "x"}))
        state = handle.result(timeout=30)
    """

    def __init__(
        self,
        registry: StepRegistry,
        checkpoint_store: Optional[CheckpointStore] = None,
        variable_resolver: Optional[VariableResolver] = None,
        settings: Optional[Settings] = None,
    ):
        from stepflow.recovery.manager import RecoveryManager

        self.settings = settings or get_settings()
        self.registry = registry
        self.checkpoint_store = checkpoint_store or create_checkpoint_store(self.settings)
        self.scheduler = Scheduler(
            registry,
            checkpoint_store=self.checkpoint_store,
            variable_resolver=variable_resolver,
            settings=self.settings,
        )
        self.runs = RunRepository()

        self._tokens: Dict[str, CancellationToken] = {}
        self._handles: Dict[str, RunHandle] = {}
        self._lock = threading.Lock()
        self.recovery = RecoveryManager(
            self.checkpoint_store,
            self.scheduler,
            self.runs,
            self.settings,
            token_factory=self._resume_token,
        )
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_runs,
            thread_name_prefix="stepflow-run",
        )

    def validate(self, graph: Graph) -> ValidationResult:
        return validate(graph, self.registry)

    def start_run(self, graph: Graph, event: Optional[TriggerEvent] = None) -> RunHandle:
        """
        Validate the graph and schedule a run.

        Args:
            graph: Graph to execute
            event: Trigger event carrying seed items (default: one empty manual trigger)

        Returns:
            RunHandle

        Raises:
            GraphValidationError: If the graph is invalid (nothing is scheduled)
        """
        event = event or TriggerEvent()
        result = validate(graph, self.registry)
        if event.start_step_id and graph.get_step(event.start_step_id) is None:
            result.add_error(event.start_step_id, "start step does not exist")
        if not result.valid:
            logger.warning(
                f"Rejected graph {graph.id}: {result.summary()}",
                extra=with_run_context(run_id=event.run_id),
            )
            raise GraphValidationError(result)
        for warning in result.warnings:
            logger.warning(
                f"Graph {graph.id}: {warning.step_id}: {warning.reason}",
                extra=with_run_context(run_id=event.run_id, step_id=warning.step_id),
            )

        state = RunState.create(graph, event)
        lock = self.runs.add(state)
        token = CancellationToken()
        with self._lock:
            self._tokens[state.run_id] = token

        logger.info(
            f"Starting run {state.run_id} for graph {graph.id} ({event.mode.value})",
            extra=with_run_context(run_id=state.run_id),
        )
        future = self._pool.submit(self._execute, state, token, lock)
        handle = RunHandle(state.run_id, future, token, self.runs)
        with self._lock:
            self._handles[state.run_id] = handle
        return handle

    def run(self, graph: Graph, event: Optional[TriggerEvent] = None, timeout: Optional[float] = None) -> RunState:
        """start_run() and wait for the result."""
        return self.start_run(graph, event).result(timeout=timeout)

    def _execute(self, state: RunState, token: CancellationToken, lock: threading.RLock) -> RunState:
        try:
            return self.scheduler.run(state, token, lock)
        except Exception:
            logger.exception(
                f"Run {state.run_id} crashed in the scheduler",
                extra=with_run_context(run_id=state.run_id),
            )
            raise

    def _resume_token(self, run_id: str, parent: Optional[CancellationToken] = None) -> CancellationToken:
        """Fresh token for a recovery pass, replacing the run's previous one."""
        token = CancellationToken(parent=parent)
        with self._lock:
            self._tokens[run_id] = token
        return token

    def cancel_run(self, run_id: str, reason: str = "cancelled by caller") -> bool:
        """Cancel a run. Returns False for unknown runs."""
        with self._lock:
            token = self._tokens.get(run_id)
        if token is None:
            return False
        logger.info(f"Cancelling run {run_id}: {reason}", extra=with_run_context(run_id=run_id))
        token.cancel(reason)
        return True

    def get_run(self, run_id: str) -> Optional[RunState]:
        """Snapshot of a run, or None."""
        return self.runs.snapshot(run_id)

    def get_handle(self, run_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._handles.get(run_id)

    def forget_run(self, run_id: str) -> None:
        """Drop a terminal run and its checkpoints."""
        self.recovery.cleanup(run_id)
        self.runs.remove(run_id)
        with self._lock:
            self._tokens.pop(run_id, None)
            self._handles.pop(run_id, None)

    def shutdown(self, wait: bool = True, cancel_runs: bool = False) -> None:
        if cancel_runs:
            with self._lock:
                tokens = list(self._tokens.values())
            for token in tokens:
                token.cancel("engine shutdown")
        self._pool.shutdown(wait=wait)
        self.checkpoint_store.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown(cancel_runs=True)


__all__ = [
    "Engine",
    "RunHandle",
]
