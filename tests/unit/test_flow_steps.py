"""Tests for the merge, loop, split, if and switch steps."""
import pytest

from stepflow.step_sdk.errors import StepValidationError
from stepflow.steppacks.core.flow import IfStep, LoopStep, MergeStep, SplitStep, SwitchStep


def _payloads(items):
    return [item.payload for item in items]


class TestMergeStep:
    """Test MergeStep modes."""

    def test_append_keeps_connection_order(self, execute_step):
        outputs, _ = execute_step(
            MergeStep,
            {"mode": "append"},
            {"input1": [[{"a": 1}], [{"a": 2}]], "input2": [[{"b": 1}]]},
        )

        assert _payloads(outputs["main"]) == [{"a": 1}, {"a": 2}, {"b": 1}]

    def test_merge_by_position_pads_shorter_inputs(self, execute_step):
        outputs, _ = execute_step(
            MergeStep,
            {"mode": "mergeByPosition"},
            {"input1": [[{"a": 1, "x": "left"}]], "input2": [[{"b": 1, "x": "right"}, {"b": 2}]]},
        )

        assert _payloads(outputs["main"]) == [{"a": 1, "b": 1, "x": "right"}, {"b": 2}]

    def test_merge_by_key(self, execute_step):
        """Items sharing a key merge; items without the key are dropped."""
        outputs, _ = execute_step(
            MergeStep,
            {"mode": "mergeByKey", "mergeByKey": "user.id"},
            {
                "input1": [[{"user": {"id": 1}, "name": "ada"}, {"user": {"id": 2}, "name": "bob"}]],
                "input2": [[{"user": {"id": 1}, "age": 36}, {"nokey": True}]],
            },
        )

        assert _payloads(outputs["main"]) == [
            {"user": {"id": 1}, "name": "ada", "age": 36},
            {"user": {"id": 2}, "name": "bob"},
        ]

    def test_keep_first_and_last(self, execute_step):
        inputs = {"input1": [[{"a": 1}]], "input2": [[{"b": 1}]]}

        first, _ = execute_step(MergeStep, {"mode": "keepFirst"}, inputs)
        last, _ = execute_step(MergeStep, {"mode": "keepLast"}, inputs)

        assert _payloads(first["main"]) == [{"a": 1}]
        assert _payloads(last["main"]) == [{"b": 1}]

    def test_ports_follow_number_of_inputs(self):
        step = MergeStep()

        assert step.input_ports({"numberInputs": 3}) == ["input1", "input2", "input3"]
        assert step.wait_for_all_inputs({}) is True
        assert step.wait_for_all_inputs({"waitForAll": False}) is False

    def test_merge_key_required(self):
        problems = MergeStep().validate_parameters({"mode": "mergeByKey"})

        assert any("'mergeByKey' is required" in p for p in problems)


class TestLoopStep:
    """Test LoopStep batching and state threading."""

    def test_iterates_items_in_batches(self, execute_step):
        """Each invocation emits the next batch until done."""
        inputs = {"main": [[{"n": 1}, {"n": 2}, {"n": 3}]]}

        outputs, ctx = execute_step(LoopStep, {"batchSize": 2}, inputs)
        first = _payloads(outputs["loop"])
        assert [p["n"] for p in first] == [1, 2]
        assert first[0]["$isFirst"] and first[0]["$iteration"] == 1
        assert first[1]["$batchIndex"] == 1 and first[1]["$batchSize"] == 2
        assert outputs["done"] == []

        outputs, ctx = execute_step(LoopStep, {"batchSize": 2}, {"main": [[{"n": 1}]]}, state=ctx.get_state())
        second = _payloads(outputs["loop"])
        assert second == [{
            "n": 3, "$index": 2, "$iteration": 3, "$total": 3,
            "$isFirst": False, "$isLast": True, "$batchIndex": 0, "$batchSize": 1,
        }]

        outputs, ctx = execute_step(LoopStep, {"batchSize": 2}, {"main": [[{"n": 3}]]}, state=ctx.get_state())
        assert outputs["loop"] == []
        assert _payloads(outputs["done"]) == [{"completed": True, "totalIterations": 3}]
        assert ctx.state_changed and ctx.get_state() is None

    def test_empty_input_goes_to_done(self, execute_step):
        outputs, _ = execute_step(LoopStep, {}, {"main": [[]]})

        assert outputs["loop"] == []
        assert _payloads(outputs["done"]) == [{"completed": True, "totalIterations": 0}]

    def test_loop_over_field_wraps_scalars(self, execute_step):
        outputs, _ = execute_step(
            LoopStep,
            {"loopOver": "field", "fieldName": "data.tags", "batchSize": 5},
            {"main": [[{"data": {"tags": ["a", "b"]}}]]},
        )

        assert [p["value"] for p in _payloads(outputs["loop"])] == ["a", "b"]

    def test_loop_over_field_requires_list(self, execute_step):
        with pytest.raises(StepValidationError):
            execute_step(LoopStep, {"loopOver": "field", "fieldName": "name"}, {"main": [[{"name": "x"}]]})

    def test_repeat(self, execute_step):
        outputs, ctx = execute_step(LoopStep, {"loopOver": "repeat", "repeatTimes": 2, "batchSize": 10}, {})

        assert [p["iteration"] for p in _payloads(outputs["loop"])] == [1, 2]
        assert ctx.get_state()["total"] == 2

    def test_repeat_limit(self, execute_step):
        with pytest.raises(StepValidationError):
            execute_step(LoopStep, {"loopOver": "repeat", "repeatTimes": 100001}, {})

    def test_loop_port_declaration(self):
        assert LoopStep.iterative
        assert LoopStep.loop_ports == ("loop",)
        assert LoopStep().output_ports({}) == ["loop", "done"]


class TestSplitStep:
    """Test SplitStep modes."""

    ITEMS = [{"n": i, "type": "odd" if i % 2 else "even"} for i in range(1, 6)]

    def test_batch(self, execute_step):
        outputs, _ = execute_step(SplitStep, {"mode": "batch", "batchSize": 2}, {"main": [self.ITEMS]})

        assert [p["batchSize"] for p in _payloads(outputs["main"])] == [2, 2, 1]
        assert _payloads(outputs["main"])[2]["batch"] == [self.ITEMS[4]]

    def test_by_field(self, execute_step):
        outputs, _ = execute_step(SplitStep, {"mode": "byField", "splitField": "type"}, {"main": [self.ITEMS]})

        groups = {p["key"]: p["count"] for p in _payloads(outputs["main"])}
        assert groups == {"odd": 3, "even": 2}

    def test_even_odd_positions(self, execute_step):
        outputs, _ = execute_step(SplitStep, {"mode": "evenOdd"}, {"main": [self.ITEMS]})

        even, odd = _payloads(outputs["main"])
        assert [p["n"] for p in even["items"]] == [1, 3, 5]
        assert [p["n"] for p in odd["items"]] == [2, 4]

    def test_percentage(self, execute_step):
        outputs, _ = execute_step(SplitStep, {"mode": "percentage", "percentage": 40}, {"main": [self.ITEMS]})

        assert [p["count"] for p in _payloads(outputs["main"])] == [2, 3]

    def test_parts_drop_empty_groups(self, execute_step):
        outputs, _ = execute_step(SplitStep, {"mode": "parts", "parts": 4}, {"main": [self.ITEMS[:3]]})

        assert [p["key"] for p in _payloads(outputs["main"])] == [0, 1, 2]

    def test_invalid_percentage(self, execute_step):
        with pytest.raises(StepValidationError):
            execute_step(SplitStep, {"mode": "percentage", "percentage": 150}, {"main": [self.ITEMS]})

    def test_no_items(self, execute_step):
        outputs, _ = execute_step(SplitStep, {"mode": "batch"}, {"main": [[]]})

        assert outputs == {"main": []}


class TestIfStep:
    """Test IfStep routing."""

    def test_routes_per_item(self, execute_step):
        outputs, _ = execute_step(
            IfStep,
            {"conditions": [{"key": "age", "operation": "largerEqual", "value": 18}]},
            {"main": [[{"age": 20}, {"age": 10}, {"age": 18}]]},
        )

        assert _payloads(outputs["true"]) == [{"age": 20}, {"age": 18}]
        assert _payloads(outputs["false"]) == [{"age": 10}]

    def test_or_combination_with_expression_key(self, execute_step):
        outputs, _ = execute_step(
            IfStep,
            {
                "conditions": [
                    {"key": "{{ $json.role }}", "operation": "equal", "value": "admin"},
                    {"key": "name", "operation": "startsWith", "value": "a"},
                ],
                "combineOperation": "OR",
            },
            {"main": [[{"role": "admin", "name": "zed"}, {"role": "user", "name": "ada"}, {"role": "user", "name": "bob"}]]},
        )

        assert [p["name"] for p in _payloads(outputs["true"])] == ["zed", "ada"]

    def test_unknown_operation_rejected(self):
        problems = IfStep().validate_parameters({"conditions": [{"key": "a", "operation": "bogus"}]})

        assert problems == ["Condition 0 has unknown operation 'bogus'"]


class TestSwitchStep:
    """Test SwitchStep routing."""

    RULES = [
        {"key": "status", "operation": "equal", "value": "new"},
        {"key": "status", "operation": "equal", "value": "done"},
    ]

    def test_rules_first_match_wins(self, execute_step):
        outputs, _ = execute_step(
            SwitchStep,
            {"rules": self.RULES},
            {"main": [[{"status": "done"}, {"status": "new"}, {"status": "other"}]]},
        )

        assert _payloads(outputs["output0"]) == [{"status": "new"}]
        assert _payloads(outputs["output1"]) == [{"status": "done"}]
        assert set(outputs) == {"output0", "output1"}

    def test_fallback_collects_unmatched(self, execute_step):
        outputs, _ = execute_step(
            SwitchStep,
            {"rules": self.RULES, "fallbackOutput": True},
            {"main": [[{"status": "other"}]]},
        )

        assert _payloads(outputs["fallback"]) == [{"status": "other"}]

    def test_expression_mode(self, execute_step):
        outputs, _ = execute_step(
            SwitchStep,
            {"mode": "expression", "outputsCount": 3, "outputExpression": "{{ $json.lane }}"},
            {"main": [[{"lane": 2}, {"lane": 0}, {"lane": 7}]]},
        )

        assert _payloads(outputs["output2"]) == [{"lane": 2}]
        assert _payloads(outputs["output0"]) == [{"lane": 0}]
        assert outputs["output1"] == []

    def test_output_ports(self):
        step = SwitchStep()

        assert step.output_ports({"rules": self.RULES, "fallbackOutput": True}) == ["output0", "output1", "fallback"]
        assert step.output_ports({"mode": "expression", "outputsCount": 50}) == [f"output{i}" for i in range(10)]
