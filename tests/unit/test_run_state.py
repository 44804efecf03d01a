"""Tests for run state records."""
from stepflow.step_sdk.errors import StepError, StepErrorKind
from stepflow.step_sdk.items import Item
from stepflow.workflow_runtime.models import TriggerEvent
from stepflow.workflow_runtime.state import RunRepository, RunState, RunStatus, SkipReason, StepStatus


def _state(make_graph):
    graph = make_graph([("t", "manualTrigger"), ("a", "noOp"), ("b", "noOp")], [("t", "a"), ("a", "b")])
    return RunState.create(graph, TriggerEvent.manual({"x": 1}, run_id="run-1"))


class TestRunState:
    """Test RunState bookkeeping and serialization."""

    def test_create_has_pending_record_per_step(self, make_graph):
        state = _state(make_graph)

        assert state.run_id == "run-1"
        assert state.statuses() == {"t": StepStatus.PENDING, "a": StepStatus.PENDING, "b": StepStatus.PENDING}
        assert not state.is_terminal

    def test_json_round_trip(self, make_graph):
        state = _state(make_graph)
        state.status = RunStatus.FAILED
        state.steps["t"].status = StepStatus.SUCCEEDED
        state.steps["t"].outputs = {"main": [Item(payload={"x": 1}, tags={"src": "t"})]}
        state.steps["a"].status = StepStatus.FAILED
        state.steps["a"].error = StepError("bad", kind=StepErrorKind.VALIDATION, step_id="a").to_info()
        state.steps["b"].status = StepStatus.SKIPPED
        state.steps["b"].skip_reason = SkipReason.UPSTREAM_FAILED
        state.step_state["loop"] = {"index": 2}

        restored = RunState.from_json(state.to_json())

        assert restored.status == RunStatus.FAILED
        assert restored.outputs_of("t")[0].payload == {"x": 1}
        assert restored.outputs_of("t")[0].tags == {"src": "t"}
        assert restored.steps["a"].error.kind == StepErrorKind.VALIDATION
        assert restored.steps["b"].skip_reason == SkipReason.UPSTREAM_FAILED
        assert restored.step_state == {"loop": {"index": 2}}
        assert restored.graph.id == state.graph.id

    def test_summary(self, make_graph):
        state = _state(make_graph)
        state.steps["t"].status = StepStatus.SUCCEEDED
        state.steps["t"].outputs = {"main": [Item(payload={}), Item(payload={})]}

        summary = state.summary()

        assert summary["run_id"] == "run-1"
        assert summary["status"] == "pending"
        assert summary["status_counts"]["succeeded"] == 1
        assert summary["steps"]["t"]["items"] == 2

    def test_record_reset_keeps_counters(self, make_graph):
        record = _state(make_graph).steps["a"]
        record.status = StepStatus.FAILED
        record.attempts = 3
        record.iterations = 2

        record.reset()

        assert record.status == StepStatus.PENDING
        assert (record.attempts, record.iterations) == (3, 2)


class TestRunRepository:
    def test_snapshot_is_independent(self, make_graph):
        runs = RunRepository()
        state = _state(make_graph)
        runs.add(state)

        copy = runs.snapshot("run-1")
        copy.steps["a"].status = StepStatus.SUCCEEDED

        assert state.status_of("a") == StepStatus.PENDING
        assert runs.run_ids() == ["run-1"]
        assert runs.snapshot("missing") is None
