"""
Recovery Manager - failure analysis and resumption of failed runs.

The manager is the only component that resumes a Failed run. It edits the
run's step records under the run lock and hands the run back to the
scheduler, which continues from whatever is already terminal.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING, Union

from stepflow.config import Settings, get_settings
from stepflow.observability.logging import with_run_context
from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.errors import StepError, StepErrorInfo, StepErrorKind
from stepflow.step_sdk.items import bundle_from_json
from stepflow.workflow_runtime.graph import GraphTopology, loop_ports_from_registry
from stepflow.workflow_runtime.state import (
    RunRepository,
    RunState,
    RunStatus,
    SkipReason,
    StepStatus,
    utcnow,
)

from .models import (
    Checkpoint,
    FailureCategory,
    RecoveryRecommendation,
    RecoveryStrategy,
)
from .store import CheckpointStore, write_checkpoint


if TYPE_CHECKING:
    from stepflow.workflow_runtime.scheduler import Scheduler


logger = logging.getLogger(__name__)


class RecoveryError(Exception):
    """Invalid recovery request (unknown run, run still active, bad checkpoint)."""
    pass


# Message fragments used to classify uncategorized failures
_MESSAGE_HINTS: Dict[FailureCategory, tuple] = {
    FailureCategory.TIMEOUT: ("timeout", "timed out", "deadline"),
    FailureCategory.NETWORK: (
        "connection", "network", "dns", "econnrefused", "enotfound",
        "econnreset", "unreachable", "temporarily unavailable",
    ),
    FailureCategory.PERMISSION: (
        "unauthorized", "forbidden", "permission", "authentication",
        "authorization", "credential",
    ),
    FailureCategory.VALIDATION: ("validation", "invalid", "required", "missing", "not allowed"),
}

_KIND_CATEGORY: Dict[StepErrorKind, FailureCategory] = {
    StepErrorKind.NETWORK: FailureCategory.NETWORK,
    StepErrorKind.DEPENDENCY: FailureCategory.NETWORK,
    StepErrorKind.TIMEOUT: FailureCategory.TIMEOUT,
    StepErrorKind.VALIDATION: FailureCategory.VALIDATION,
    StepErrorKind.SANDBOX_VIOLATION: FailureCategory.VALIDATION,
    StepErrorKind.ITERATION_LIMIT_EXCEEDED: FailureCategory.VALIDATION,
    StepErrorKind.PERMISSION: FailureCategory.PERMISSION,
}

_RECOMMENDATIONS: Dict[FailureCategory, List[str]] = {
    FailureCategory.NETWORK: [
        "Error is likely temporary - retry should resolve it",
        "Verify network connectivity and DNS resolution",
    ],
    FailureCategory.TIMEOUT: [
        "Consider increasing timeout values",
        "Check service availability",
    ],
    FailureCategory.VALIDATION: [
        "Check step parameters and input data",
        "Fix the step configuration before resuming",
    ],
    FailureCategory.PERMISSION: [
        "Check credentials and access rights",
        "Verify API endpoints and scopes",
    ],
    FailureCategory.UNKNOWN: ["Review error details and logs"],
}


def categorize(error: StepErrorInfo) -> FailureCategory:
    """Failure category from the error kind, falling back to message hints."""
    category = _KIND_CATEGORY.get(error.kind)
    if category is not None:
        return category
    message = error.message.lower()
    for hinted, fragments in _MESSAGE_HINTS.items():
        if any(fragment in message for fragment in fragments):
            return hinted
    return FailureCategory.UNKNOWN


class RecoveryManager:
    """
    Checkpointing, failure analysis and recovery of runs.

    Collaborators are injected: the checkpoint store, the scheduler used to
    resume runs and the repository holding live run states.
    token_factory creates the cancellation token of each resumed pass; the
    engine uses it to register that token for cancel_run().

    Usage:
        manager = RecoveryManager(store, scheduler, runs)
        recommendation = manager.analyze(run_id)
        manager.recover(run_id, recommendation.strategy)
    """

    def __init__(
        self,
        store: CheckpointStore,
        scheduler: "Scheduler",
        runs: RunRepository,
        settings: Optional[Settings] = None,
        token_factory: Optional[Callable[[str, Optional[CancellationToken]], CancellationToken]] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.runs = runs
        self.settings = settings or get_settings()
        self.token_factory = token_factory

    # ==== Checkpoints ====

    def checkpoint(self, run_id: str, step_id: str, state: Dict[str, Any]) -> str:
        """Record a checkpoint. Idempotent per (run_id, step_id).

        Returns:
            checkpoint_id of the stored (possibly pre-existing) checkpoint
        """
        return write_checkpoint(self.store, run_id, step_id, state).checkpoint_id

    def list_checkpoints(self, run_id: str) -> List[Checkpoint]:
        return self.store.list(run_id)

    def cleanup(self, run_id: str) -> int:
        """Discard all checkpoints of a run. Returns the number removed."""
        removed = self.store.delete_run(run_id)
        logger.info(
            f"Removed {removed} checkpoints for run {run_id}",
            extra=with_run_context(run_id=run_id),
        )
        return removed

    # ==== Analysis ====

    def analyze(
        self,
        run_id: str,
        error: Union[StepError, StepErrorInfo, None] = None,
    ) -> RecoveryRecommendation:
        """
        Classify a failure and recommend a recovery strategy.

        Args:
            run_id: Run to analyze
            error: Failure to analyze; defaults to the run's recorded error

        Returns:
            RecoveryRecommendation
        """
        state = self._get_state(run_id)
        if isinstance(error, StepError):
            info = error.to_info()
        elif error is not None:
            info = error
        elif state is not None and state.error is not None:
            info = state.error
        else:
            raise RecoveryError(f"Run '{run_id}' has no recorded failure to analyze")

        failed_step_id = info.step_id or (state.failed_step_id if state else None)
        category = categorize(info)
        checkpoints = self.store.list(run_id)
        strategy = self._suggest_strategy(info, category, checkpoints, state, failed_step_id)

        recommendations = list(_RECOMMENDATIONS[category])
        status_code = info.details.get("status_code")
        if isinstance(status_code, int) and status_code >= 500:
            recommendations.append("External service is experiencing issues")
        if info.retry_after:
            recommendations.append(f"Service asked to wait {info.retry_after:g}s before retrying")

        confidence = 0.5
        if info.kind in _KIND_CATEGORY:
            confidence += 0.3
        elif category != FailureCategory.UNKNOWN:
            confidence += 0.1
        if isinstance(status_code, int) and status_code in (401, 403, 429, 500, 502, 503):
            confidence += 0.1
        if failed_step_id:
            confidence += 0.1

        recommendation = RecoveryRecommendation(
            run_id=run_id,
            failed_step_id=failed_step_id,
            category=category,
            strategy=strategy,
            retryable=info.retryable,
            retry_after=info.retry_after,
            confidence=round(min(confidence, 1.0), 2),
            recommendations=recommendations,
            checkpoint_count=len(checkpoints),
        )
        logger.info(
            f"Failure analysis for run {run_id}: {category.value} -> {strategy.value}",
            extra=with_run_context(run_id=run_id, step_id=failed_step_id),
        )
        return recommendation

    analyze_failure = analyze

    def _suggest_strategy(
        self,
        info: StepErrorInfo,
        category: FailureCategory,
        checkpoints: List[Checkpoint],
        state: Optional[RunState],
        failed_step_id: Optional[str],
    ) -> RecoveryStrategy:
        if info.retryable or category == FailureCategory.NETWORK:
            return RecoveryStrategy.RETRY
        if category == FailureCategory.PERMISSION:
            return RecoveryStrategy.MANUAL
        if category == FailureCategory.VALIDATION:
            # A failing leaf can be skipped without starving anything downstream
            if state is not None and failed_step_id and not state.graph.outgoing(failed_step_id):
                return RecoveryStrategy.SKIP
            return RecoveryStrategy.MANUAL
        if category == FailureCategory.TIMEOUT:
            return RecoveryStrategy.RESTART_FROM_CHECKPOINT if checkpoints else RecoveryStrategy.RETRY
        if checkpoints:
            return RecoveryStrategy.RESTART_FROM_CHECKPOINT
        return RecoveryStrategy.MANUAL

    # ==== Recovery ====

    def recover(
        self,
        run_id: str,
        strategy: Union[RecoveryStrategy, str],
        checkpoint_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        """
        Resume a Failed run.

        Runs the resumed scheduling pass on the calling thread.

        Args:
            run_id: Failed (or cancelled) run
            strategy: retry, skip, restartFromCheckpoint or manual
            checkpoint_id: Checkpoint to restart from (default: latest)
            cancel_token: Caller token; cancelling it also cancels the resumed pass

        Returns:
            True when the resumed run ends Succeeded. manual always returns False.

        Raises:
            RecoveryError: Unknown run, run not terminal, or bad checkpoint
        """
        strategy = RecoveryStrategy(strategy)
        state = self._get_state(run_id)
        if state is None:
            raise RecoveryError(f"Unknown run '{run_id}'")
        if state.status not in (RunStatus.FAILED, RunStatus.CANCELLED):
            raise RecoveryError(
                f"Run '{run_id}' is {state.status.value}; only failed or cancelled runs can be recovered"
            )

        logger.info(
            f"Recovering run {run_id} with strategy {strategy.value}",
            extra=with_run_context(run_id=run_id, step_id=state.failed_step_id),
        )

        if strategy == RecoveryStrategy.MANUAL:
            with self.runs.lock(run_id):
                state.manual_intervention = True
            logger.warning(
                f"Run {run_id} flagged for manual intervention",
                extra=with_run_context(run_id=run_id, step_id=state.failed_step_id),
            )
            return False

        cancel_token = self._resume_token(run_id, cancel_token)
        if strategy == RecoveryStrategy.RETRY:
            return self._retry(state, cancel_token)
        if strategy == RecoveryStrategy.SKIP:
            return self._skip(state, cancel_token)
        return self._restart(state, checkpoint_id, cancel_token)

    def auto_recover(self, run_id: str, min_confidence: float = 0.7) -> bool:
        """Recover with the recommended strategy when it is a confident retry."""
        recommendation = self.analyze(run_id)
        if recommendation.confidence < min_confidence or not recommendation.retryable:
            logger.info(
                f"Auto-recovery skipped for run {run_id}: "
                f"confidence={recommendation.confidence:.2f}, retryable={recommendation.retryable}",
                extra=with_run_context(run_id=run_id),
            )
            return False
        return self.recover(run_id, recommendation.strategy)

    def _retry(self, state: RunState, cancel_token: Optional[CancellationToken]) -> bool:
        run_id = state.run_id
        max_retries = self.settings.recovery_max_retries
        base_delay = self.settings.recovery_retry_delay_ms / 1000.0

        while state.status == RunStatus.FAILED or state.status == RunStatus.CANCELLED:
            failed_step_id = state.failed_step_id or self._first_cancelled(state)
            if failed_step_id is None:
                raise RecoveryError(f"Run '{run_id}' has no failed step to retry")
            if state.recovery_attempts >= max_retries:
                logger.warning(
                    f"Max recovery retries ({max_retries}) reached for run {run_id}",
                    extra=with_run_context(run_id=run_id, step_id=failed_step_id),
                )
                return False

            delay = base_delay * (2 ** state.recovery_attempts)
            if state.error is not None and state.error.retry_after:
                delay = max(delay, state.error.retry_after)
            state.recovery_attempts += 1
            logger.info(
                f"Retrying step {failed_step_id} in {delay:.2f}s "
                f"(attempt {state.recovery_attempts}/{max_retries})",
                extra=with_run_context(run_id=run_id, step_id=failed_step_id),
            )
            if delay > 0:
                time.sleep(delay)

            with self.runs.lock(run_id):
                topology = self._topology(state)
                targets = {failed_step_id}
                loops = topology.enclosing_loops(failed_step_id)
                if loops:
                    # Body steps re-run as part of their loop
                    outermost = [
                        loop_id for loop_id in loops if not topology.enclosing_loops(loop_id)
                    ] or loops
                    targets = set(outermost)
                    for loop_id in outermost:
                        targets |= topology.loop_bodies[loop_id]
                        state.loop_counters.pop(loop_id, None)
                        state.step_state.pop(loop_id, None)
                if state.status == RunStatus.CANCELLED:
                    targets |= self._cancelled_steps(state)
                self._reset_steps(state, targets | self._cascaded(state, topology, targets))
                self._clear_failure(state)

            self.scheduler.resume(state, cancel_token, self.runs.lock(run_id))
            if state.status == RunStatus.SUCCEEDED:
                return True
            if state.error is None or not (
                state.error.retryable or categorize(state.error) == FailureCategory.NETWORK
            ):
                return False
        return state.status == RunStatus.SUCCEEDED

    def _skip(self, state: RunState, cancel_token: Optional[CancellationToken]) -> bool:
        run_id = state.run_id
        failed_step_id = state.failed_step_id
        if failed_step_id is None:
            raise RecoveryError(f"Run '{run_id}' has no failed step to skip")

        with self.runs.lock(run_id):
            topology = self._topology(state)
            record = state.steps[failed_step_id]
            record.status = StepStatus.SKIPPED
            record.skip_reason = SkipReason.RECOVERY
            record.outputs = {}
            record.finished_at = utcnow()
            self._reset_steps(state, self._cascaded(state, topology, {failed_step_id}))
            self._clear_failure(state)

        self.scheduler.resume(state, cancel_token, self.runs.lock(run_id))
        return state.status == RunStatus.SUCCEEDED

    def _restart(
        self,
        state: RunState,
        checkpoint_id: Optional[str],
        cancel_token: Optional[CancellationToken],
    ) -> bool:
        run_id = state.run_id
        checkpoints = self.store.list(run_id)
        if not checkpoints:
            raise RecoveryError(f"Run '{run_id}' has no checkpoints to restart from")

        if checkpoint_id is None:
            chosen = checkpoints[-1]
        else:
            chosen = next((c for c in checkpoints if c.checkpoint_id == checkpoint_id), None)
            if chosen is None:
                raise RecoveryError(f"Checkpoint '{checkpoint_id}' does not belong to run '{run_id}'")
        if not chosen.verify():
            raise RecoveryError(f"Checkpoint '{chosen.checkpoint_id}' failed checksum verification")

        with self.runs.lock(run_id):
            topology = self._topology(state)
            usable: Dict[str, Checkpoint] = {}
            for checkpoint in checkpoints:
                if checkpoint.sequence > chosen.sequence:
                    continue
                if not checkpoint.verify():
                    logger.warning(
                        f"Ignoring corrupted checkpoint {checkpoint.checkpoint_id}",
                        extra=with_run_context(run_id=run_id, step_id=checkpoint.step_id),
                    )
                    continue
                usable[checkpoint.step_id] = checkpoint

            restored = self._restorable(state, topology, usable)
            for step_id, record in state.steps.items():
                if step_id in restored:
                    snapshot = usable[step_id].state_snapshot
                    record.status = StepStatus.SUCCEEDED
                    record.skip_reason = None
                    record.error = None
                    record.outputs = bundle_from_json(snapshot.get("outputs", {}))
                    record.iterations = snapshot.get("iterations", record.iterations)
                    if snapshot.get("step_state") is not None:
                        state.step_state[step_id] = snapshot["step_state"]
                elif record.skip_reason not in (SkipReason.DISABLED, SkipReason.NOT_REACHABLE):
                    record.reset()
                    state.step_state.pop(step_id, None)
            state.loop_counters.clear()
            self._clear_failure(state)

        logger.info(
            f"Restarting run {run_id} from checkpoint {chosen.checkpoint_id} "
            f"({len(restored)} steps restored)",
            extra=with_run_context(run_id=run_id, step_id=chosen.step_id),
        )
        self.scheduler.resume(state, cancel_token, self.runs.lock(run_id))
        return state.status == RunStatus.SUCCEEDED

    # ==== Helpers ====

    def _resume_token(self, run_id: str, parent: Optional[CancellationToken]) -> CancellationToken:
        if self.token_factory is not None:
            return self.token_factory(run_id, parent)
        return CancellationToken(parent=parent)

    def _get_state(self, run_id: str) -> Optional[RunState]:
        return self.runs.get(run_id)

    def _topology(self, state: RunState) -> GraphTopology:
        return GraphTopology(
            state.graph,
            loop_ports_from_registry(state.graph, self.scheduler.registry),
        )

    @staticmethod
    def _first_cancelled(state: RunState) -> Optional[str]:
        for step_id, record in state.steps.items():
            if record.status == StepStatus.FAILED:
                return step_id
        return None

    @staticmethod
    def _cancelled_steps(state: RunState) -> Set[str]:
        return {
            step_id for step_id, record in state.steps.items()
            if record.skip_reason == SkipReason.CANCELLED
            or (record.error is not None and record.error.kind == StepErrorKind.CANCELLED)
        }

    @staticmethod
    def _cascaded(state: RunState, topology: GraphTopology, roots: Set[str]) -> Set[str]:
        """Steps skipped because of the given roots (including loop exits)."""
        affected: Set[str] = set()
        for root in roots:
            affected |= topology.descendants(root)
            for loop_id in topology.enclosing_loops(root):
                affected |= topology.descendants(loop_id)
        return {
            step_id for step_id in affected
            if state.steps[step_id].skip_reason in (SkipReason.UPSTREAM_FAILED, SkipReason.CANCELLED)
            or state.steps[step_id].status == StepStatus.FAILED
        }

    @staticmethod
    def _restorable(
        state: RunState,
        topology: GraphTopology,
        usable: Dict[str, Checkpoint],
    ) -> Set[str]:
        """Steps whose checkpoint can stand in for re-execution."""
        in_loops: Set[str] = set(topology.loop_bodies)
        for body in topology.loop_bodies.values():
            in_loops |= body

        restored: Set[str] = set()
        for step_id in topology.execution_order:
            if step_id not in usable or step_id in in_loops:
                continue
            ancestors_ok = all(
                ancestor in restored or state.steps[ancestor].status == StepStatus.SKIPPED
                for ancestor in topology.ancestors(step_id)
            )
            if ancestors_ok:
                restored.add(step_id)
        return restored

    @staticmethod
    def _reset_steps(state: RunState, step_ids: Set[str]) -> None:
        for step_id in step_ids:
            state.steps[step_id].reset()

    @staticmethod
    def _clear_failure(state: RunState) -> None:
        state.failed_step_id = None
        state.error = None
        state.status = RunStatus.PENDING
        state.finished_at = None


__all__ = [
    "RecoveryError",
    "RecoveryManager",
    "categorize",
]
