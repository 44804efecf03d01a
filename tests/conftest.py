"""Pytest configuration and fixtures."""
import os
import threading
import time

import pytest

# Set test environment variables
os.environ["STEPFLOW_ENV"] = "test"
os.environ["STEPFLOW_CHECKPOINT_BACKEND"] = "memory"
os.environ["STEPFLOW_RECOVERY_RETRY_DELAY_MS"] = "10"
os.environ["STEPFLOW_SCHEDULER_POLL_INTERVAL_S"] = "0.01"

from stepflow.step_sdk.basestep import BaseStep  # noqa: E402
from stepflow.step_sdk.errors import StepError, StepErrorKind  # noqa: E402


# ==============================================================================
# Test steps
# ==============================================================================

class FlakyStep(BaseStep):
    """Fails the first `failTimes` calls per `key`, then passes items through."""

    type = "test.flaky"
    description = {"displayName": "Flaky", "name": "test.flaky", "inputs": ["main"], "outputs": ["main"]}
    properties = {"parameters": [
        {"name": "key", "type": "string", "default": "default"},
        {"name": "failTimes", "type": "number", "default": 1},
        {"name": "kind", "type": "string", "default": "network"},
        {"name": "retryAfter", "type": "number", "default": None},
    ]}

    calls = {}
    call_times = {}
    _lock = threading.Lock()

    @classmethod
    def reset(cls):
        with cls._lock:
            cls.calls.clear()
            cls.call_times.clear()

    def execute(self, inputs, parameters, ctx):
        key = parameters.get("key", "default")
        with self._lock:
            count = self.calls[key] = self.calls.get(key, 0) + 1
            self.call_times.setdefault(key, []).append(time.monotonic())
        if count <= parameters.get("failTimes", 1):
            raise StepError(
                f"flaky failure {count}",
                kind=StepErrorKind(parameters.get("kind", "network")),
                retry_after=parameters.get("retryAfter"),
            )
        return {"main": [item.clone() for item in inputs.get("main", [])]}


class FailStep(BaseStep):
    """Always fails with the configured kind."""

    type = "test.fail"
    description = {"displayName": "Fail", "name": "test.fail", "inputs": ["main"], "outputs": ["main"]}
    properties = {"parameters": [
        {"name": "kind", "type": "string", "default": "validation"},
        {"name": "message", "type": "string", "default": "boom"},
    ]}

    def execute(self, inputs, parameters, ctx):
        raise StepError(
            parameters.get("message", "boom"),
            kind=StepErrorKind(parameters.get("kind", "validation")),
        )


class SleepStep(BaseStep):
    """Sleeps in small slices, honoring cancellation."""

    type = "test.sleep"
    description = {"displayName": "Sleep", "name": "test.sleep", "inputs": ["main"], "outputs": ["main"]}
    properties = {"parameters": [{"name": "seconds", "type": "number", "default": 1.0}]}

    def execute(self, inputs, parameters, ctx):
        deadline = time.monotonic() + parameters.get("seconds", 1.0)
        while time.monotonic() < deadline:
            ctx.check_cancelled()
            time.sleep(0.01)
        return {"main": [item.clone() for item in inputs.get("main", [])]}


class HangStep(BaseStep):
    """Blocks without checking cancellation, like a stuck I/O call."""

    type = "test.hang"
    description = {"displayName": "Hang", "name": "test.hang", "inputs": ["main"], "outputs": ["main"]}
    properties = {"parameters": [{"name": "seconds", "type": "number", "default": 2.0}]}

    def execute(self, inputs, parameters, ctx):
        time.sleep(parameters.get("seconds", 2.0))
        return {"main": [item.clone() for item in inputs.get("main", [])]}


class CrashStep(BaseStep):
    """Raises a plain exception."""

    type = "test.crash"
    description = {"displayName": "Crash", "name": "test.crash", "inputs": ["main"], "outputs": ["main"]}

    def execute(self, inputs, parameters, ctx):
        raise RuntimeError("unexpected crash")


TEST_STEPS = (FlakyStep, FailStep, SleepStep, HangStep, CrashStep)


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture(autouse=True)
def reset_state():
    """Fresh settings and flaky-step counters per test."""
    from stepflow.config import reset_settings

    reset_settings()
    FlakyStep.reset()
    yield
    reset_settings()


@pytest.fixture
def settings():
    from stepflow.config import Settings

    return Settings()


@pytest.fixture
def registry():
    """Core steps plus the test steps."""
    from stepflow.step_registry.registry import StepRegistry

    registry = StepRegistry.with_core_steps()
    for step_class in TEST_STEPS:
        registry.register(step_class)
    return registry


@pytest.fixture
def checkpoint_store():
    from stepflow.recovery.store import InMemoryCheckpointStore

    return InMemoryCheckpointStore()


@pytest.fixture
def engine(registry, checkpoint_store, settings):
    from stepflow.workflow_runtime.engine import Engine

    engine = Engine(registry, checkpoint_store=checkpoint_store, settings=settings)
    yield engine
    engine.shutdown(cancel_runs=True)


@pytest.fixture
def flaky_step():
    return FlakyStep


def build_graph(steps, connections=(), **kwargs):
    """
    Build a Graph from compact specs.

    steps: (id, type) or (id, type, parameters) or full step dicts
    connections: (source, target) or (source, source_port, target, target_port)
    """
    from stepflow.workflow_runtime.models import parse_graph

    step_dicts = []
    for spec in steps:
        if isinstance(spec, dict):
            step_dicts.append(spec)
        else:
            step_id, step_type, *rest = spec
            step_dicts.append({"id": step_id, "type": step_type, "parameters": rest[0] if rest else {}})

    connection_dicts = []
    for conn in connections:
        if len(conn) == 2:
            source, target = conn
            source_port, target_port = "main", "main"
        else:
            source, source_port, target, target_port = conn
        connection_dicts.append({
            "sourceStepId": source,
            "sourcePort": source_port,
            "targetStepId": target,
            "targetPort": target_port,
        })

    return parse_graph({"id": kwargs.pop("id", "test-graph"), "steps": step_dicts, "connections": connection_dicts, **kwargs})


@pytest.fixture
def make_graph():
    return build_graph


@pytest.fixture
def execute_step():
    """Run one step class directly against per-connection input payloads."""
    from stepflow.step_sdk.basestep import ExecutionContext
    from stepflow.step_sdk.items import InputBundle, Item

    def _execute(step_class, parameters=None, inputs=None, state=None, settings=None, services=None):
        parameters = parameters or {}
        sources = {
            port: [[p if isinstance(p, Item) else Item(payload=p) for p in seq] for seq in seqs]
            for port, seqs in (inputs or {}).items()
        }
        bundle = InputBundle(sources)
        ctx = ExecutionContext(
            run_id="test-run",
            step_id="step",
            step_type=step_class.type,
            parameters=parameters,
            inputs=bundle,
            parameter_defaults=step_class.parameter_defaults(),
            state=state,
            settings=settings,
            services=services,
        )
        outputs = step_class().execute(bundle, dict(parameters), ctx)
        return outputs, ctx

    return _execute


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


@pytest.fixture
def poll():
    return wait_for
