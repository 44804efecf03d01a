"""Step and run deadlines enforced by the scheduler."""
import time

import pytest

from stepflow.config import Settings
from stepflow.recovery.store import InMemoryCheckpointStore
from stepflow.step_sdk.errors import StepErrorKind
from stepflow.workflow_runtime.engine import Engine
from stepflow.workflow_runtime.state import RunStatus, SkipReason, StepStatus


@pytest.fixture
def engine_with(registry):
    engines = []

    def _make(**overrides):
        engine = Engine(registry, checkpoint_store=InMemoryCheckpointStore(), settings=Settings(**overrides))
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.shutdown(cancel_runs=True)


def _hang_graph(make_graph, hang_step):
    return make_graph(
        [{"id": "t", "type": "manualTrigger"}, hang_step, {"id": "after", "type": "noOp"}],
        [("t", "h"), ("h", "after")],
    )


class TestStepDeadline:
    """A step that never returns is failed at its deadline."""

    def test_settings_deadline(self, engine_with, make_graph):
        engine = engine_with(step_timeout_ms=100)
        graph = _hang_graph(make_graph, {"id": "h", "type": "test.hang", "parameters": {"seconds": 3}})
        started = time.monotonic()

        state = engine.run(graph, timeout=10)

        assert time.monotonic() - started < 1.5
        assert state.status == RunStatus.FAILED
        assert state.failed_step_id == "h"
        assert state.error.kind == StepErrorKind.TIMEOUT
        assert state.error.details["timeout_ms"] == 100
        assert state.steps["after"].skip_reason == SkipReason.UPSTREAM_FAILED

    def test_per_step_deadline_overrides_settings(self, engine, make_graph):
        graph = _hang_graph(
            make_graph,
            {"id": "h", "type": "test.hang", "timeoutMs": 100, "parameters": {"seconds": 3}},
        )

        state = engine.run(graph, timeout=10)

        assert state.status == RunStatus.FAILED
        assert state.steps["h"].error.kind == StepErrorKind.TIMEOUT

    def test_step_within_deadline_succeeds(self, engine_with, make_graph):
        engine = engine_with(step_timeout_ms=2000)
        graph = _hang_graph(make_graph, {"id": "h", "type": "test.hang", "parameters": {"seconds": 0.05}})

        state = engine.run(graph, timeout=10)

        assert state.status == RunStatus.SUCCEEDED

    def test_timed_out_step_is_retried(self, engine_with, make_graph):
        engine = engine_with(step_timeout_ms=100)
        graph = _hang_graph(
            make_graph,
            {
                "id": "h",
                "type": "test.hang",
                "retryOnFail": True,
                "maxTries": 2,
                "waitBetweenTries": 0,
                "parameters": {"seconds": 3},
            },
        )

        state = engine.run(graph, timeout=10)

        assert state.status == RunStatus.FAILED
        assert state.steps["h"].attempts == 2


class TestRunDeadline:
    """The run as a whole stops at its deadline."""

    def test_run_deadline_fails_run(self, engine_with, make_graph):
        engine = engine_with(run_timeout_ms=300)
        graph = make_graph(
            [("t", "manualTrigger"), ("slow", "test.sleep", {"seconds": 5}), ("after", "noOp")],
            [("t", "slow"), ("slow", "after")],
        )
        started = time.monotonic()

        state = engine.run(graph, timeout=10)

        assert time.monotonic() - started < 2.5
        assert state.status == RunStatus.FAILED
        assert state.failed_step_id == "slow"
        assert state.error.kind == StepErrorKind.TIMEOUT
        assert state.error.details["timeout_ms"] == 300
        assert state.status_of("slow") == StepStatus.FAILED
        assert state.steps["slow"].error.kind == StepErrorKind.TIMEOUT
        assert state.steps["after"].skip_reason == SkipReason.CANCELLED

    def test_run_within_deadline_succeeds(self, engine_with, make_graph):
        engine = engine_with(run_timeout_ms=5000)
        graph = make_graph([("t", "manualTrigger"), ("n", "noOp")], [("t", "n")])

        state = engine.run(graph, timeout=10)

        assert state.status == RunStatus.SUCCEEDED
