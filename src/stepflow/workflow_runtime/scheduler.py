"""
Scheduler - walks a step graph in dependency order.

Each step invocation is a unit of work submitted to a bounded worker
pool; the scheduler thread waits on FIRST_COMPLETED, folds the result
into the RunState and marks dependents eligible. RunState is mutated
only here, under the run lock.

SYNC-SAFE: no asyncio; workers are threads.
"""

from __future__ import annotations

import logging
import threading
import time
import traceback
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from stepflow.config import Settings, get_settings
from stepflow.observability.logging import with_run_context
from stepflow.recovery.store import CheckpointStore, write_checkpoint
from stepflow.sandbox.deadline import run_with_deadline
from stepflow.sandbox.executor import CodeExecutor
from stepflow.step_registry.registry import StepRegistry
from stepflow.step_sdk.basestep import BaseStep, ExecutionContext
from stepflow.step_sdk.cancellation import CancellationToken
from stepflow.step_sdk.errors import (
    IterationLimitExceeded,
    StepCancelledError,
    StepError,
    StepErrorKind,
    StepTimeoutError,
    StepValidationError,
)
from stepflow.step_sdk.expressions import VariableResolver
from stepflow.step_sdk.items import InputBundle, Item, PortBundle, bundle_to_json, wrap_payloads

from .graph import GraphTopology, loop_ports_from_registry
from .models import Connection, Step
from .state import RunState, RunStatus, SkipReason, StepRecord, StepStatus, utcnow


logger = logging.getLogger(__name__)

# How long a cancelled run waits for in-flight steps to observe the token
CANCEL_GRACE_SECONDS = 2.0

_UNSET = object()


@dataclass
class _Invocation:
    """One call of execute() for a step."""
    step_id: str
    inputs: InputBundle
    attempt: int = 1
    not_before: float = 0.0
    passthrough: bool = False
    entry: bool = False
    source_key: Optional[tuple] = None


@dataclass
class _Outcome:
    invocation: _Invocation
    outputs: Optional[PortBundle] = None
    error: Optional[StepError] = None
    state: Any = _UNSET
    logs: List[str] = field(default_factory=list)
    duration_ms: float = 0


def error_item(error: StepError) -> Item:
    """Error-shaped output item emitted when a step continues on failure."""
    return Item(
        payload={"error": True, "kind": error.kind.value, "message": error.message},
        tags={"error": True},
    )


class Scheduler:
    """
    Executes runs.

    Collaborators are passed in; nothing is looked up globally except the
    settings fallback.

    Usage:
        scheduler = Scheduler(registry, checkpoint_store=InMemoryCheckpointStore())
        state = scheduler.run(RunState.create(graph, TriggerEvent.manual({"a": 1})))
    """

    def __init__(
        self,
        registry: StepRegistry,
        checkpoint_store: Optional[CheckpointStore] = None,
        variable_resolver: Optional[VariableResolver] = None,
        settings: Optional[Settings] = None,
        code_executor: Optional[CodeExecutor] = None,
    ):
        self.registry = registry
        self.checkpoint_store = checkpoint_store
        self.variable_resolver = variable_resolver
        self.settings = settings or get_settings()
        self.code_executor = code_executor or CodeExecutor(self.settings)

    def run(
        self,
        state: RunState,
        cancel_token: Optional[CancellationToken] = None,
        lock: Optional[threading.RLock] = None,
    ) -> RunState:
        """
        Drive a run until every reachable step is terminal.

        Steps already terminal in `state` (a resumed run) are kept and
        their outputs feed their dependents.

        Returns:
            The same RunState, now terminal
        """
        return _RunExecution(self, state, cancel_token, lock).execute()

    def resume(
        self,
        state: RunState,
        cancel_token: Optional[CancellationToken] = None,
        lock: Optional[threading.RLock] = None,
    ) -> RunState:
        """Continue a run prepared by the recovery manager."""
        logger.info(
            f"Resuming run {state.run_id}",
            extra=with_run_context(run_id=state.run_id),
        )
        return self.run(state, cancel_token, lock)


class _RunExecution:
    """State of one scheduler pass over a run."""

    def __init__(
        self,
        scheduler: Scheduler,
        state: RunState,
        cancel_token: Optional[CancellationToken],
        lock: Optional[threading.RLock],
    ):
        self.scheduler = scheduler
        self.settings = scheduler.settings
        self.state = state
        self.run_id = state.run_id
        self.token = cancel_token or CancellationToken()
        self.lock = lock or threading.RLock()

        graph = state.graph
        self.steps: Dict[str, Step] = {step.id: step for step in graph.steps}
        self.instances: Dict[str, BaseStep] = {
            step.id: scheduler.registry.create(step.type)
            for step in graph.steps
            if not step.disabled
        }
        self.topology = GraphTopology(graph, loop_ports_from_registry(graph, scheduler.registry))
        self.order = self.topology.execution_order

        self.resolved: Dict[tuple, List[Item]] = {}
        self.consumed: Set[tuple] = set()
        self.in_flight: Dict[Future, _Invocation] = {}
        self.timers: List[_Invocation] = []
        self.loop_active: Dict[str, bool] = {}
        self.reentry: Dict[str, InputBundle] = {}
        self.passthrough_outputs: Dict[str, PortBundle] = {}
        self.passthrough_runs: Dict[str, int] = {}

        start = state.trigger.start_step_id
        self.entry_override: Set[str] = {start} if start else set()
        self.max_in_flight = self.settings.max_in_flight_steps
        self.run_timeout_ms = self.settings.run_timeout_ms
        self.deadline: Optional[float] = None
        self.timed_out = False

    # ==== Lifecycle ====

    def _log_extra(self, step_id: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        step = self.steps.get(step_id) if step_id else None
        return with_run_context(
            run_id=self.run_id,
            step_id=step_id,
            step_type=step.type if step else None,
            **kwargs,
        )

    def _prepare(self) -> None:
        state = self.state
        state.status = RunStatus.RUNNING
        if state.started_at is None:
            state.started_at = utcnow()
        state.finished_at = None

        for step_id, step in self.steps.items():
            record = state.steps.setdefault(step_id, StepRecord(step_id=step_id))
            if step.disabled and record.status == StepStatus.PENDING:
                self._skip(step_id, SkipReason.DISABLED, publish=False)

        start = state.trigger.start_step_id
        if start:
            allowed = {start} | self.topology.descendants(start)
            for step_id in self.order:
                if step_id not in allowed and state.steps[step_id].status == StepStatus.PENDING:
                    self._skip(step_id, SkipReason.NOT_REACHABLE, publish=False)

        # Resumed runs: terminal steps feed their dependents
        for step_id in self.order:
            record = state.steps[step_id]
            if record.status == StepStatus.RUNNING:
                record.reset()
            if record.status == StepStatus.FAILED and state.failed_step_id is None:
                state.failed_step_id = step_id
                state.error = record.error
            if record.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED):
                if self.instances[step_id].iterative:
                    self.loop_active[step_id] = False
                self._publish(step_id)

        logger.info(
            f"Run {self.run_id} started ({len(self.order)} active steps)",
            extra=self._log_extra(),
        )

    def execute(self) -> RunState:
        with self.lock:
            self._prepare()
        if self.run_timeout_ms:
            self.deadline = time.monotonic() + self.run_timeout_ms / 1000.0

        pool = ThreadPoolExecutor(
            max_workers=self.max_in_flight,
            thread_name_prefix=f"stepflow-{self.run_id[:8]}",
        )
        try:
            while True:
                with self.lock:
                    if self.deadline is not None and time.monotonic() >= self.deadline:
                        self._expire()
                    if self.token.is_cancelled:
                        break
                    self._dispatch_ready(pool)
                    if not self.in_flight and not self.timers:
                        break
                    futures = list(self.in_flight)
                    timeout = self._next_wakeup()

                if futures:
                    done, _ = wait(futures, timeout=timeout, return_when=FIRST_COMPLETED)
                else:
                    self.token.wait(timeout)
                    done = set()

                with self.lock:
                    for future in done:
                        self.in_flight.pop(future)
                        self._complete(future.result())

            with self.lock:
                self._finish()
        finally:
            pool.shutdown(wait=not self.token.is_cancelled, cancel_futures=True)

        return self.state

    def _next_wakeup(self) -> float:
        timeout = self.settings.scheduler_poll_interval_s
        if self.timers:
            soonest = min(inv.not_before for inv in self.timers) - time.monotonic()
            timeout = max(0.0, min(timeout, soonest))
        if self.deadline is not None:
            timeout = max(0.0, min(timeout, self.deadline - time.monotonic()))
        return timeout

    def _finish(self) -> None:
        state = self.state
        if self.token.is_cancelled:
            self._finish_cancelled()
            if self.timed_out:
                self._fail_timed_out()
        else:
            leftovers = [
                sid for sid in self.order
                if state.steps[sid].status in (StepStatus.PENDING, StepStatus.RUNNING)
            ]
            for step_id in leftovers:
                if state.failed_step_id:
                    self._skip(step_id, SkipReason.UPSTREAM_FAILED, publish=False)
                else:
                    logger.warning(
                        f"Step {step_id} never became eligible; skipping",
                        extra=self._log_extra(step_id),
                    )
                    self._skip(step_id, SkipReason.NO_INPUT_DATA, publish=False)
            state.status = RunStatus.FAILED if state.failed_step_id else RunStatus.SUCCEEDED

        state.finished_at = utcnow()
        logger.info(
            f"Run {self.run_id} finished: {state.status.value}",
            extra=self._log_extra(status=state.status.value),
        )

    def _finish_cancelled(self) -> None:
        state = self.state
        if self.in_flight:
            done, _ = wait(list(self.in_flight), timeout=CANCEL_GRACE_SECONDS)
            for future in done:
                outcome = future.result()
                self.in_flight.pop(future)
                record = state.steps[outcome.invocation.step_id]
                record.duration_ms += outcome.duration_ms
                record.logs.extend(outcome.logs)
                if record.status != StepStatus.RUNNING:
                    continue
                if outcome.error is not None:
                    self._mark_cancelled(outcome.invocation.step_id, outcome.error)
                elif not outcome.invocation.passthrough:
                    self._succeed(outcome.invocation, outcome.outputs or {})

        reason = self.token.reason or "cancelled"
        for step_id in self.order:
            record = state.steps[step_id]
            if record.status == StepStatus.RUNNING:
                self._mark_cancelled(step_id, None)
            elif record.status == StepStatus.PENDING:
                self._skip(step_id, SkipReason.CANCELLED, publish=False)
        self.timers.clear()
        state.status = RunStatus.CANCELLED
        logger.info(f"Run {self.run_id} cancelled: {reason}", extra=self._log_extra())

    def _expire(self) -> None:
        """Run deadline passed: abort in-flight steps and stop dispatching."""
        if self.timed_out:
            return
        self.timed_out = True
        logger.warning(
            f"Run {self.run_id} exceeded its deadline of {self.run_timeout_ms} ms",
            extra=self._log_extra(),
        )
        self.token.cancel(f"run deadline of {self.run_timeout_ms} ms exceeded")

    def _run_timeout_error(self) -> StepTimeoutError:
        return StepTimeoutError(
            f"Run exceeded its deadline of {self.run_timeout_ms} ms",
            details={"timeout_ms": self.run_timeout_ms},
        )

    def _fail_timed_out(self) -> None:
        state = self.state
        state.status = RunStatus.FAILED
        if state.failed_step_id is None:
            interrupted = next(
                (sid for sid in self.order if state.steps[sid].status == StepStatus.FAILED),
                None,
            )
            error = self._run_timeout_error()
            error.step_id = interrupted
            state.failed_step_id = interrupted
            state.error = error.to_info()

    def _mark_cancelled(self, step_id: str, error: Optional[StepError]) -> None:
        if self.timed_out:
            error = self._run_timeout_error()
        elif error is None:
            error = StepCancelledError(f"Run cancelled: {self.token.reason}", retryable=False)
        error.step_id = step_id
        record = self.state.steps[step_id]
        record.status = StepStatus.FAILED
        record.error = error.to_info()
        record.finished_at = utcnow()

    # ==== Eligibility ====

    def _status(self, step_id: str) -> StepStatus:
        return self.state.steps[step_id].status

    def _is_busy(self, step_id: str) -> bool:
        return any(inv.step_id == step_id for inv in self.in_flight.values()) or any(
            inv.step_id == step_id for inv in self.timers
        )

    def _has_capacity(self) -> bool:
        return len(self.in_flight) < self.max_in_flight

    def _entry_inputs(self, step_id: str) -> InputBundle:
        instance = self.instances[step_id]
        step = self.steps[step_id]
        ports = instance.input_ports(step.parameters)
        port = ports[0] if ports else "main"
        seeds = [item.clone() for item in self.state.trigger.seed_items]
        if not seeds and not instance.is_trigger:
            seeds = [Item(payload={})]
        return InputBundle({port: [seeds]})

    def _gather(self, connections: List[Connection]) -> InputBundle:
        """Per-port, per-connection sequences in declaration order."""
        sources: Dict[str, List[List[Item]]] = {}
        for conn in connections:
            sources.setdefault(conn.target_port, []).append(
                [item.clone() for item in self.resolved.get(conn.key, [])]
            )
        return InputBundle(sources)

    def _is_entry(self, step_id: str) -> bool:
        if step_id in self.entry_override:
            return True
        # Inputs only from disabled steps do not make a step an entry step
        return not self.state.graph.incoming(step_id)

    def _eligible(self) -> Iterator[Tuple[str, Optional[InputBundle], bool]]:
        """Yield (step_id, inputs, entry) for Pending steps whose inputs are ready.

        inputs is None when the step should be skipped for lack of data.
        """
        for step_id in self.order:
            if self._status(step_id) != StepStatus.PENDING or self._is_busy(step_id):
                continue

            if step_id in self.reentry:
                yield step_id, self.reentry[step_id], True
                continue

            if self._is_entry(step_id):
                yield step_id, self._entry_inputs(step_id), True
                continue

            incoming = self.topology.incoming(step_id)
            if not incoming:
                yield step_id, None, False
                continue

            step = self.steps[step_id]
            instance = self.instances[step_id]
            if not instance.wait_for_all_inputs(step.parameters):
                continue

            optional = instance.optional_input_ports(step.parameters)
            required = [c for c in incoming if c.target_port not in optional] or incoming
            if not all(c.key in self.resolved for c in required):
                continue

            inputs = self._gather([c for c in incoming if c.key in self.resolved])
            yield step_id, (None if inputs.is_empty else inputs), False

    def _passthrough_ready(self) -> Tuple[List[_Invocation], bool]:
        """Pass-through steps: one invocation per arriving non-empty connection.

        Returns the next invocation per step and whether any step finished.
        """
        ready: List[_Invocation] = []
        finished = False
        for step_id in self.order:
            status = self._status(step_id)
            if status not in (StepStatus.PENDING, StepStatus.RUNNING) or self._is_busy(step_id):
                continue
            if self._is_entry(step_id) or step_id in self.reentry:
                continue
            step = self.steps[step_id]
            if self.instances[step_id].wait_for_all_inputs(step.parameters):
                continue
            incoming = self.topology.incoming(step_id)
            if not incoming:
                continue

            for conn in incoming:
                if conn.key not in self.resolved or conn.key in self.consumed:
                    continue
                if self.resolved[conn.key]:
                    ready.append(_Invocation(
                        step_id=step_id,
                        inputs=self._gather([conn]),
                        passthrough=True,
                        source_key=conn.key,
                    ))
                    break
                self.consumed.add(conn.key)
            else:
                if all(c.key in self.consumed for c in incoming):
                    self._finish_passthrough(step_id)
                    finished = True
        return ready, finished

    def _finish_passthrough(self, step_id: str) -> None:
        if self.passthrough_runs.pop(step_id, 0):
            outputs = self.passthrough_outputs.pop(step_id, {})
            self._succeed(_Invocation(step_id=step_id, inputs=InputBundle()), outputs)
        else:
            self._skip(step_id, SkipReason.NO_INPUT_DATA)

    # ==== Dispatch ====

    def _dispatch_ready(self, pool: ThreadPoolExecutor) -> None:
        """Submit everything runnable until nothing changes."""
        progress = True
        while progress:
            progress = False

            now = time.monotonic()
            for inv in sorted(self.timers, key=lambda i: i.not_before):
                if not self._has_capacity():
                    break
                if inv.not_before <= now:
                    self.timers.remove(inv)
                    self._submit(pool, inv)
                    progress = True

            for step_id, inputs, entry in list(self._eligible()):
                if self._status(step_id) != StepStatus.PENDING:
                    continue
                if inputs is None:
                    self._skip(step_id, SkipReason.NO_INPUT_DATA)
                    progress = True
                    continue
                if not self._has_capacity():
                    continue
                self.reentry.pop(step_id, None)
                self._submit(pool, _Invocation(step_id=step_id, inputs=inputs, entry=entry))
                progress = True

            ready, finished = self._passthrough_ready()
            progress = progress or finished
            for inv in ready:
                if not self._has_capacity():
                    break
                self.consumed.add(inv.source_key)
                self._submit(pool, inv)
                progress = True

            progress = self._check_loops() or progress

    def _submit(self, pool: ThreadPoolExecutor, inv: _Invocation) -> None:
        record = self.state.steps[inv.step_id]
        if record.status == StepStatus.PENDING:
            record.status = StepStatus.RUNNING
        if record.started_at is None:
            record.started_at = utcnow()
        record.attempts += 1
        record.inputs = {
            port: [list(seq) for seq in inv.inputs.sources(port)] for port in inv.inputs
        }
        state_blob = self.state.step_state.get(inv.step_id)
        logger.debug(
            f"Dispatching step {inv.step_id} (attempt {inv.attempt})",
            extra=self._log_extra(inv.step_id, attempt=inv.attempt),
        )
        future = pool.submit(self._invoke, inv, state_blob, record.iterations)
        self.in_flight[future] = inv

    def _invoke(self, inv: _Invocation, state_blob: Any, iteration: int) -> _Outcome:
        """Runs on a worker thread. Never raises."""
        step = self.steps[inv.step_id]
        instance = self.instances[inv.step_id]
        ctx = ExecutionContext(
            run_id=self.run_id,
            step_id=step.id,
            step_type=step.type,
            parameters=step.parameters,
            inputs=inv.inputs,
            parameter_defaults=instance.parameter_defaults(),
            variable_resolver=self.scheduler.variable_resolver,
            state=state_blob,
            cancel_token=self.token,
            settings=self.settings,
            seed_items=self.state.trigger.seed_items,
            attempt=inv.attempt,
            iteration=iteration,
            services={"code_executor": self.scheduler.code_executor},
        )
        timeout_ms = step.timeout_ms or self.settings.step_timeout_ms

        def call(abort: CancellationToken) -> Any:
            ctx.cancel_token = abort
            return instance.execute(inv.inputs, dict(step.parameters), ctx)

        started = time.monotonic()
        outcome = _Outcome(invocation=inv)
        try:
            ctx.check_cancelled()
            if timeout_ms:
                result = run_with_deadline(
                    call,
                    timeout_ms / 1000.0,
                    self.token,
                    name=f"stepflow-step-{step.id}",
                )
            else:
                result = instance.execute(inv.inputs, dict(step.parameters), ctx)
            outcome.outputs = self._normalize_outputs(instance, step, result)
        except StepError as e:
            e.step_id = step.id
            outcome.error = e
        except Exception as e:
            logger.error(
                f"Step {step.id} raised {type(e).__name__}: {e}\n{traceback.format_exc()}",
                extra=self._log_extra(step.id),
            )
            outcome.error = StepError.wrap(e, step_id=step.id)
        if ctx.state_changed:
            outcome.state = ctx.get_state()
        outcome.logs = ctx.log_lines
        outcome.duration_ms = (time.monotonic() - started) * 1000
        return outcome

    @staticmethod
    def _normalize_outputs(instance: BaseStep, step: Step, result: Any) -> PortBundle:
        if result is None:
            result = {}
        if not isinstance(result, dict):
            raise StepValidationError(
                f"Step must return a mapping of port to items, got {type(result).__name__}"
            )
        declared = instance.output_ports(step.parameters)
        outputs: PortBundle = {port: [] for port in declared}
        for port, items in result.items():
            if port not in declared:
                raise StepValidationError(
                    f"Step produced undeclared output port '{port}' (declared: {declared})"
                )
            outputs[port] = wrap_payloads(items or [])
        return outputs

    # ==== Completion ====

    def _complete(self, outcome: _Outcome) -> None:
        inv = outcome.invocation
        step_id = inv.step_id
        step = self.steps[step_id]
        record = self.state.steps[step_id]
        record.duration_ms += outcome.duration_ms
        record.logs.extend(outcome.logs)

        if outcome.state is not _UNSET:
            if outcome.state is None:
                self.state.step_state.pop(step_id, None)
            else:
                self.state.step_state[step_id] = outcome.state

        if record.status != StepStatus.RUNNING:
            # Cascaded while in flight (e.g. run failure skipped it)
            return

        error = outcome.error
        if error is not None and error.kind == StepErrorKind.CANCELLED and self.token.is_cancelled:
            self._mark_cancelled(step_id, error)
            return

        if error is not None:
            if (
                error.retryable
                and step.retry_on_fail
                and inv.attempt < step.max_tries
                and not self.token.is_cancelled
            ):
                delay = max(step.wait_between_tries_ms / 1000.0, error.retry_after or 0.0)
                logger.warning(
                    f"Step {step_id} failed ({error.kind.value}): {error.message}; "
                    f"retrying in {delay:.2f}s (attempt {inv.attempt + 1}/{step.max_tries})",
                    extra=self._log_extra(step_id, attempt=inv.attempt),
                )
                self.timers.append(_Invocation(
                    step_id=step_id,
                    inputs=inv.inputs,
                    attempt=inv.attempt + 1,
                    not_before=time.monotonic() + delay,
                    passthrough=inv.passthrough,
                    entry=inv.entry,
                ))
                return

            if step.continue_on_fail and error.kind != StepErrorKind.CANCELLED:
                logger.warning(
                    f"Step {step_id} failed ({error.kind.value}), continuing: {error.message}",
                    extra=self._log_extra(step_id),
                )
                record.error = error.to_info()
                ports = self.instances[step_id].output_ports(step.parameters)
                outputs = {port: [] for port in ports}
                outputs[ports[0] if ports else "main"] = [error_item(error)]
            else:
                self._fail(step_id, error)
                return
        else:
            outputs = outcome.outputs or {}

        if inv.passthrough:
            accumulated = self.passthrough_outputs.setdefault(step_id, {})
            for port, items in outputs.items():
                accumulated.setdefault(port, []).extend(items)
            self.passthrough_runs[step_id] = self.passthrough_runs.get(step_id, 0) + 1
            return

        self._succeed(inv, outputs)

    def _succeed(self, inv: _Invocation, outputs: PortBundle) -> None:
        step_id = inv.step_id
        record = self.state.steps[step_id]
        record.status = StepStatus.SUCCEEDED
        record.outputs = outputs
        record.finished_at = utcnow()
        record.iterations += 1

        instance = self.instances[step_id]
        if instance.iterative:
            loop_ports = self.topology.loop_ports.get(step_id, set(instance.loop_ports))
            active = any(outputs.get(port) for port in loop_ports)
            if active and self.loop_active.get(step_id):
                self._reset_body(step_id)
            self.loop_active[step_id] = active

        logger.info(
            f"Step {step_id} succeeded "
            f"({sum(len(items) for items in outputs.values())} items)",
            extra=self._log_extra(step_id),
        )
        self._publish(step_id)
        self._checkpoint(step_id)

    def _fail(self, step_id: str, error: StepError) -> None:
        state = self.state
        record = state.steps[step_id]
        record.status = StepStatus.FAILED
        record.error = error.to_info()
        record.finished_at = utcnow()
        if state.failed_step_id is None:
            state.failed_step_id = step_id
            state.error = record.error

        logger.error(
            f"Step {step_id} failed ({error.kind.value}): {error.message}",
            extra=self._log_extra(step_id),
        )

        blocked = set(self.topology.descendants(step_id))
        for loop_id in self.topology.enclosing_loops(step_id) + (
            [step_id] if step_id in self.topology.loop_bodies else []
        ):
            self.loop_active[loop_id] = False
            loop_ports = self.topology.loop_ports.get(loop_id, set())
            exit_ports = set(
                self.instances[loop_id].output_ports(self.steps[loop_id].parameters)
            ) - loop_ports
            blocked |= self.topology.reachable_from_ports(loop_id, exit_ports)
            self.reentry.pop(loop_id, None)

        for downstream_id in self.order:
            if downstream_id not in blocked or self._is_busy(downstream_id):
                continue
            if self._status(downstream_id) in (StepStatus.PENDING, StepStatus.RUNNING):
                self.reentry.pop(downstream_id, None)
                self._skip(downstream_id, SkipReason.UPSTREAM_FAILED, publish=False)

    def _skip(self, step_id: str, reason: SkipReason, publish: bool = True) -> None:
        record = self.state.steps[step_id]
        record.status = StepStatus.SKIPPED
        record.skip_reason = reason
        record.outputs = {}
        record.finished_at = utcnow()
        logger.debug(
            f"Step {step_id} skipped ({reason.value})",
            extra=self._log_extra(step_id),
        )
        if publish and step_id in self.instances:
            self._publish(step_id)

    def _publish(self, step_id: str) -> None:
        """Resolve outgoing connections from a terminal step."""
        record = self.state.steps[step_id]
        instance = self.instances[step_id]
        loop_ports = self.topology.loop_ports.get(step_id, set())
        looping = instance.iterative and self.loop_active.get(step_id, False)

        for conn in self.topology.connections:
            if conn.source_step_id != step_id:
                continue
            if record.status != StepStatus.SUCCEEDED:
                self.resolved[conn.key] = []
            elif looping and conn.source_port not in loop_ports:
                continue
            else:
                self.resolved[conn.key] = list(record.outputs.get(conn.source_port, []))

    def _checkpoint(self, step_id: str) -> None:
        store = self.scheduler.checkpoint_store
        if store is None:
            return
        record = self.state.steps[step_id]
        snapshot = {
            "status": record.status.value,
            "outputs": bundle_to_json(record.outputs),
            "step_state": self.state.step_state.get(step_id),
            "iterations": record.iterations,
            "error": record.error.model_dump(mode="json") if record.error else None,
        }
        try:
            write_checkpoint(store, self.run_id, step_id, snapshot)
        except Exception as e:
            logger.error(
                f"Checkpoint for step {step_id} failed: {e}",
                extra=self._log_extra(step_id),
            )

    # ==== Loops ====

    def _reset_body(self, loop_id: str) -> None:
        """Prepare the loop body for another iteration."""
        body = self.topology.loop_bodies.get(loop_id, set())
        for step_id in body:
            record = self.state.steps[step_id]
            if record.skip_reason in (SkipReason.DISABLED, SkipReason.NOT_REACHABLE):
                continue
            record.reset()
            self.reentry.pop(step_id, None)
            if step_id in self.topology.loop_bodies:
                self.state.step_state.pop(step_id, None)
                self.state.loop_counters.pop(step_id, None)
                self.loop_active.pop(step_id, None)
            self.passthrough_outputs.pop(step_id, None)
            self.passthrough_runs.pop(step_id, None)

        sources = body | {loop_id}
        for conn in self.topology.connections:
            if conn.source_step_id in sources:
                self.resolved.pop(conn.key, None)
                self.consumed.discard(conn.key)

    def _check_loops(self) -> bool:
        """Re-enter loop steps whose body finished an iteration."""
        reentered = False
        for loop_id, body in self.topology.loop_bodies.items():
            if not self.loop_active.get(loop_id) or self._status(loop_id) != StepStatus.SUCCEEDED:
                continue
            statuses = [self._status(step_id) for step_id in body]
            if any(status in (StepStatus.PENDING, StepStatus.RUNNING) for status in statuses):
                continue
            if any(self._is_busy(step_id) for step_id in body):
                continue
            if StepStatus.FAILED in statuses:
                continue
            if any(self.loop_active.get(step_id) for step_id in body):
                continue

            counter = self.state.loop_counters.get(loop_id, 0) + 1
            self.state.loop_counters[loop_id] = counter
            limit = self.settings.max_loop_iterations
            if counter > limit:
                self.loop_active[loop_id] = False
                self._fail(loop_id, IterationLimitExceeded(
                    f"Loop step '{loop_id}' exceeded the iteration ceiling of {limit}",
                    details={"limit": limit},
                ))
                reentered = True
                continue

            back_edges = self.topology.back_edges_into(loop_id)
            self.reentry[loop_id] = self._gather([c for c in back_edges if c.key in self.resolved])
            record = self.state.steps[loop_id]
            record.status = StepStatus.PENDING
            logger.debug(
                f"Loop {loop_id} re-entering (iteration {counter})",
                extra=self._log_extra(loop_id),
            )
            reentered = True
        return reentered


__all__ = [
    "Scheduler",
    "error_item",
]
