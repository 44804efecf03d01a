"""Tests for graph topology and validation."""
import pytest

from stepflow.workflow_runtime.graph import GraphCycleError, GraphTopology, loop_ports_from_registry
from stepflow.workflow_runtime.validation import validate


def _reasons(issues):
    return [issue.reason for issue in issues]


class TestGraphTopology:
    """Test ordering, loop detection and reachability."""

    def test_diamond_execution_order(self, make_graph):
        """Dependencies come before dependents; ties break by step id."""
        graph = make_graph(
            [("a", "manualTrigger"), ("c", "noOp"), ("b", "noOp"), ("d", "noOp")],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )

        topology = GraphTopology(graph)

        assert topology.execution_order == ["a", "b", "c", "d"]
        assert topology.get_start_steps() == ["a"]
        assert topology.descendants("b") == {"d"}
        assert topology.ancestors("d") == {"a", "b", "c"}

    def test_cycle_raises(self, make_graph):
        """A cycle without a loop step has no execution order."""
        graph = make_graph(
            [("a", "noOp"), ("b", "noOp")],
            [("a", "b"), ("b", "a")],
        )

        topology = GraphTopology(graph)

        assert topology.has_cycle
        assert topology.cycle_steps == {"a", "b"}
        with pytest.raises(GraphCycleError):
            topology.execution_order

    def test_loop_body_and_back_edge(self, make_graph, registry):
        """Steps reachable from a loop port form its body; edges back are back-edges."""
        graph = make_graph(
            [("t", "manualTrigger"), ("loop", "loop"), ("work", "noOp"), ("after", "noOp")],
            [
                ("t", "loop"),
                ("loop", "loop", "work", "main"),
                ("work", "loop"),
                ("loop", "done", "after", "main"),
            ],
        )

        topology = GraphTopology(graph, loop_ports_from_registry(graph, registry))

        assert topology.loop_bodies == {"loop": {"work"}}
        assert [str(c) for c in topology.back_edges] == ["work.main -> loop.main"]
        assert topology.execution_order == ["t", "loop", "after", "work"]
        assert topology.enclosing_loops("work") == ["loop"]
        assert topology.reachable_from_ports("loop", {"done"}) == {"after"}

    def test_disabled_steps_are_excluded(self, make_graph):
        """Disabled steps and their connections drop out of the active topology."""
        graph = make_graph(
            [("a", "manualTrigger"), {"id": "b", "type": "noOp", "disabled": True}, ("c", "noOp")],
            [("a", "b"), ("b", "c")],
        )

        topology = GraphTopology(graph)

        assert topology.step_ids == ["a", "c"]
        assert topology.connections == []


class TestValidate:
    """Test validate() error reporting."""

    def test_valid_graph(self, make_graph, registry):
        """A simple chain validates cleanly."""
        graph = make_graph(
            [("t", "manualTrigger"), ("s", "set", {"values": {"x": 1}})],
            [("t", "s")],
        )

        result = validate(graph, registry)

        assert result.valid
        assert result.errors == []

    def test_unknown_step_type(self, make_graph, registry):
        """Unregistered types are reported against the step."""
        graph = make_graph([("t", "manualTrigger"), ("x", "doesNotExist")], [("t", "x")])

        result = validate(graph, registry)

        assert not result.valid
        assert result.errors[0].step_id == "x"
        assert "Unknown step type 'doesNotExist'" in result.errors[0].reason

    def test_duplicate_step_ids(self, make_graph, registry):
        graph = make_graph([("a", "manualTrigger"), ("a", "noOp")])

        result = validate(graph, registry)

        assert any("Duplicate step id" in reason for reason in _reasons(result.errors))

    def test_connection_to_missing_step(self, make_graph, registry):
        graph = make_graph([("a", "manualTrigger")], [("a", "ghost")])

        result = validate(graph, registry)

        assert result.errors[0].step_id == "ghost"
        assert "missing target step" in result.errors[0].reason

    def test_undeclared_ports(self, make_graph, registry):
        """Connections must name ports the step declares."""
        graph = make_graph(
            [("t", "manualTrigger"), ("i", "if"), ("n", "noOp")],
            [("t", "main", "i", "main"), ("i", "maybe", "n", "main"), ("t", "main", "n", "other")],
        )

        result = validate(graph, registry)
        reasons = _reasons(result.errors)

        assert any("undeclared output port 'maybe'" in r for r in reasons)
        assert any("undeclared input port 'other'" in r for r in reasons)

    def test_duplicate_connection(self, make_graph, registry):
        graph = make_graph([("t", "manualTrigger"), ("n", "noOp")], [("t", "n"), ("t", "n")])

        result = validate(graph, registry)

        assert any("Duplicate connection" in reason for reason in _reasons(result.errors))

    def test_cycle_reported(self, make_graph, registry):
        """Cycles through non-loop steps are errors on every step involved."""
        graph = make_graph(
            [("t", "manualTrigger"), ("a", "noOp"), ("b", "noOp")],
            [("t", "a"), ("a", "b"), ("b", "a")],
        )

        result = validate(graph, registry)

        assert {issue.step_id for issue in result.errors} == {"a", "b"}
        assert all("cycle" in reason for reason in _reasons(result.errors))

    def test_loop_back_edge_is_not_a_cycle(self, make_graph, registry):
        graph = make_graph(
            [("t", "manualTrigger"), ("loop", "loop"), ("work", "noOp")],
            [("t", "loop"), ("loop", "loop", "work", "main"), ("work", "loop")],
        )

        assert validate(graph, registry).valid

    def test_step_after_both_loop_and_exit(self, make_graph, registry):
        """A step fed by both the loop body and the exit port is rejected."""
        graph = make_graph(
            [("t", "manualTrigger"), ("loop", "loop"), ("work", "noOp"), ("join", "noOp")],
            [
                ("t", "loop"),
                ("loop", "loop", "work", "main"),
                ("work", "loop"),
                ("work", "join"),
                ("loop", "done", "join", "main"),
            ],
        )

        result = validate(graph, registry)

        assert not result.valid
        assert result.errors[0].step_id == "join"

    def test_parameter_problems(self, make_graph, registry):
        """Step-level parameter validation surfaces as graph errors."""
        graph = make_graph(
            [
                ("t", "manualTrigger"),
                ("m", "merge", {"mode": "mergeByKey"}),
                ("h", "httpRequest", {"method": "FETCH", "url": "http://x"}),
            ],
            [("t", "main", "m", "input1"), ("t", "h")],
        )

        result = validate(graph, registry)
        reasons = _reasons(result.errors)

        assert any("'mergeByKey' is required" in r for r in reasons)
        assert any("Parameter 'method' must be one of" in r for r in reasons)

    def test_warnings(self, make_graph, registry):
        """Unconnected steps and trigger-less graphs produce warnings only."""
        graph = make_graph([("a", "noOp"), ("b", "noOp")])

        result = validate(graph, registry)

        assert result.valid
        assert len(result.warnings) == 3
        assert result.warnings[-1].step_id is None
