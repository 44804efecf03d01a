"""Parallel dispatch and order-independent merging."""
import time

import pytest

from stepflow.config import Settings
from stepflow.recovery.store import InMemoryCheckpointStore
from stepflow.workflow_runtime.engine import Engine
from stepflow.workflow_runtime.models import TriggerEvent
from stepflow.workflow_runtime.state import RunStatus


def payloads(state, step_id, port="main"):
    return [item.payload for item in state.outputs_of(step_id, port)]


def _two_sleepers(make_graph, seconds=0.4):
    return make_graph(
        [
            ("t", "manualTrigger"),
            ("a", "test.sleep", {"seconds": seconds}),
            ("b", "test.sleep", {"seconds": seconds}),
            ("join", "noOp"),
        ],
        [("t", "a"), ("t", "b"), ("a", "join"), ("b", "join")],
    )


def _overlap(state, first, second):
    a, b = state.steps[first], state.steps[second]
    return a.started_at < b.finished_at and b.started_at < a.finished_at


class TestParallelDispatch:
    """Independent branches share the per-run worker pool."""

    def test_independent_branches_overlap(self, engine, make_graph):
        started = time.monotonic()

        state = engine.run(_two_sleepers(make_graph), timeout=10)

        elapsed = time.monotonic() - started
        assert state.status == RunStatus.SUCCEEDED
        assert _overlap(state, "a", "b")
        assert elapsed < 0.75

    def test_in_flight_cap_serializes_branches(self, registry, make_graph):
        settings = Settings(max_in_flight_steps=1)
        started = time.monotonic()

        with Engine(registry, checkpoint_store=InMemoryCheckpointStore(), settings=settings) as engine:
            state = engine.run(_two_sleepers(make_graph, seconds=0.3), timeout=10)

        elapsed = time.monotonic() - started
        assert state.status == RunStatus.SUCCEEDED
        assert not _overlap(state, "a", "b")
        assert elapsed >= 0.6
        assert state.steps["join"].attempts == 1


class TestMergeOrderIndependence:
    """Merge output depends on input ports, not on which branch finished first."""

    @staticmethod
    def _graph(make_graph, mode, left_delay, right_delay):
        return make_graph(
            [
                ("t", "manualTrigger"),
                ("left_wait", "test.sleep", {"seconds": left_delay}),
                ("left", "set", {"values": {"left": "yes"}}),
                ("right_wait", "test.sleep", {"seconds": right_delay}),
                ("right", "set", {"values": {"right": "yes"}}),
                ("m", "merge", {"mode": mode, "mergeByKey": "id"}),
            ],
            [
                ("t", "left_wait"),
                ("left_wait", "left"),
                ("t", "right_wait"),
                ("right_wait", "right"),
                ("left", "main", "m", "input1"),
                ("right", "main", "m", "input2"),
            ],
        )

    def _merged(self, engine, make_graph, mode, left_delay, right_delay):
        graph = self._graph(make_graph, mode, left_delay, right_delay)
        state = engine.run(graph, TriggerEvent.manual({"id": 1}, {"id": 2}), timeout=10)
        assert state.status == RunStatus.SUCCEEDED
        return state

    @pytest.mark.parametrize("mode", ["append", "mergeByKey"])
    def test_swapped_durations_give_same_output(self, engine, make_graph, mode):
        left_last = self._merged(engine, make_graph, mode, 0.3, 0.0)
        right_last = self._merged(engine, make_graph, mode, 0.0, 0.3)

        assert left_last.steps["left"].finished_at > left_last.steps["right"].finished_at
        assert right_last.steps["right"].finished_at > right_last.steps["left"].finished_at
        assert payloads(left_last, "m") == payloads(right_last, "m")

    def test_append_keeps_port_order(self, engine, make_graph):
        state = self._merged(engine, make_graph, "append", 0.3, 0.0)

        assert payloads(state, "m") == [
            {"id": 1, "left": "yes"},
            {"id": 2, "left": "yes"},
            {"id": 1, "right": "yes"},
            {"id": 2, "right": "yes"},
        ]

    def test_merge_by_key_combines_branches(self, engine, make_graph):
        state = self._merged(engine, make_graph, "mergeByKey", 0.0, 0.3)

        assert payloads(state, "m") == [
            {"id": 1, "left": "yes", "right": "yes"},
            {"id": 2, "left": "yes", "right": "yes"},
        ]
