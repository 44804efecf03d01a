"""
Flow Steps - branching, merging, looping and splitting.

The scheduler delivers one item sequence per incoming connection; these
steps decide how sequences combine and where items are routed.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Optional, Set

from stepflow.step_sdk.basestep import BaseStep, ExecutionContext
from stepflow.step_sdk.errors import StepValidationError
from stepflow.step_sdk.items import InputBundle, Item, PortBundle

from .conditions import OPERATIONS, evaluate, evaluate_conditions, normalize_condition, operand, resolve_path


logger = logging.getLogger(__name__)

# Upper bound for loopOver=repeat
MAX_REPEAT = 100000

MERGE_MODES = ["append", "mergeByPosition", "mergeByKey", "keepFirst", "keepLast"]


def _key_of(value: Any) -> Any:
    """Hashable stand-in for a JSON value."""
    try:
        hash(value)
        return value
    except TypeError:
        return json.dumps(value, sort_keys=True, default=str)


def _positive_int(value: Any, name: str, minimum: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise StepValidationError(f"Parameter '{name}' must be a number, got {value!r}") from None
    if number < minimum:
        raise StepValidationError(f"Parameter '{name}' must be at least {minimum}, got {number}")
    return number


# ==============================================================================
# Merge
# ==============================================================================

class MergeStep(BaseStep):
    """
    Merge - combine the sequences of several incoming connections.

    Modes:
    - append: concatenate sequences in port / connection order
    - mergeByPosition: index-align; shorter sequences are padded with
      empty objects; later connections overwrite earlier fields
    - mergeByKey: shallow-merge items sharing a key field; items without
      the key are dropped
    - keepFirst / keepLast: the first / last connection's sequence
    """

    type = "merge"
    version = 1

    description = {
        "displayName": "Merge",
        "name": "merge",
        "group": ["transform"],
        "description": "Merge data from multiple inputs",
        "inputs": ["input1", "input2"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Mode",
                "name": "mode",
                "type": "options",
                "default": "append",
                "options": [{"name": mode, "value": mode} for mode in MERGE_MODES],
            },
            {
                "displayName": "Merge Key",
                "name": "mergeByKey",
                "type": "string",
                "default": "",
                "description": "Field path to match items on (e.g. id or user.id)",
                "displayOptions": {"show": {"mode": ["mergeByKey"]}},
            },
            {
                "displayName": "Number of Inputs",
                "name": "numberInputs",
                "type": "number",
                "default": 2,
            },
            {
                "displayName": "Wait for All Inputs",
                "name": "waitForAll",
                "type": "boolean",
                "default": True,
                "description": "When off, runs once per arriving input",
            },
        ],
    }

    def input_ports(self, parameters: Dict[str, Any]) -> List[str]:
        count = parameters.get("numberInputs", 2)
        if not isinstance(count, int) or count < 1:
            count = 2
        return [f"input{i}" for i in range(1, count + 1)]

    def wait_for_all_inputs(self, parameters: Dict[str, Any]) -> bool:
        return bool(parameters.get("waitForAll", True))

    def validate_parameters(self, parameters: Dict[str, Any]) -> List[str]:
        problems = super().validate_parameters(parameters)
        count = parameters.get("numberInputs", 2)
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            problems.append("Parameter 'numberInputs' must be a positive integer")
        if parameters.get("mode") == "mergeByKey" and not parameters.get("mergeByKey"):
            problems.append("Parameter 'mergeByKey' is required for mode 'mergeByKey'")
        return problems

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        mode = ctx.get_parameter("mode", 0, "append")
        sequences = inputs.all_sources(self.input_ports(parameters))

        if mode == "append":
            merged = [item.clone() for seq in sequences for item in seq]
        elif mode == "mergeByPosition":
            merged = self._by_position(sequences)
        elif mode == "mergeByKey":
            key = ctx.get_parameter("mergeByKey", 0, "")
            if not key:
                raise StepValidationError("Merge key is required for 'mergeByKey' mode")
            merged = self._by_key(sequences, key)
        elif mode == "keepFirst":
            merged = [item.clone() for item in (sequences[0] if sequences else [])]
        elif mode == "keepLast":
            merged = [item.clone() for item in (sequences[-1] if sequences else [])]
        else:
            raise StepValidationError(f"Unknown merge mode: {mode}")

        return {"main": merged}

    @staticmethod
    def _by_position(sequences: List[List[Item]]) -> List[Item]:
        length = max((len(seq) for seq in sequences), default=0)
        merged = []
        for i in range(length):
            payload: Dict[str, Any] = {}
            tags: Dict[str, Any] = {}
            for seq in sequences:
                if i < len(seq):
                    payload.update(seq[i].json_payload())
                    tags.update(seq[i].tags)
            merged.append(Item(payload=payload, tags=tags))
        return merged

    @staticmethod
    def _by_key(sequences: List[List[Item]], key: str) -> List[Item]:
        by_key: Dict[Any, Item] = {}
        missing = object()
        for seq in sequences:
            for item in seq:
                payload = item.json_payload()
                value = resolve_path(payload, key, missing)
                if value is missing:
                    continue
                k = _key_of(value)
                existing = by_key.get(k)
                if existing is None:
                    by_key[k] = Item(payload=dict(payload), tags=dict(item.tags))
                else:
                    by_key[k] = Item(
                        payload={**existing.payload, **payload},
                        tags={**existing.tags, **item.tags},
                    )
        return list(by_key.values())


# ==============================================================================
# Loop
# ==============================================================================

class LoopStep(BaseStep):
    """
    Loop - emit items in batches through the loop port until exhausted.

    Connections from the loop body back into this step re-enter it; each
    re-entry emits the next batch. When nothing is left the done port
    receives one {completed, totalIterations} item.
    """

    type = "loop"
    version = 1

    description = {
        "displayName": "Loop",
        "name": "loop",
        "group": ["transform"],
        "description": "Iterate over items, a field or a count",
        "inputs": ["main"],
        "outputs": ["loop", "done"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Loop Over",
                "name": "loopOver",
                "type": "options",
                "default": "items",
                "required": True,
                "options": [
                    {"name": "All Input Items", "value": "items"},
                    {"name": "Field Value", "value": "field"},
                    {"name": "Repeat N Times", "value": "repeat"},
                ],
            },
            {
                "displayName": "Number of Iterations",
                "name": "repeatTimes",
                "type": "number",
                "default": 10,
                "displayOptions": {"show": {"loopOver": ["repeat"]}},
            },
            {
                "displayName": "Field Name",
                "name": "fieldName",
                "type": "string",
                "default": "",
                "description": "Array field to loop over (e.g. users or data.items)",
                "displayOptions": {"show": {"loopOver": ["field"]}},
            },
            {
                "displayName": "Batch Size",
                "name": "batchSize",
                "type": "number",
                "default": 1,
            },
        ],
    }

    iterative = True
    loop_ports = ("loop",)

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        batch_size = _positive_int(ctx.get_parameter("batchSize", 0, 1), "batchSize")

        state = ctx.get_state()
        if state is None:
            values = self._collect(inputs, ctx)
            if not values:
                ctx.clear_state()
                return {"loop": [], "done": [Item(payload={"completed": True, "totalIterations": 0})]}
            state = {"values": values, "index": 0, "total": len(values)}

        index, total = state["index"], state["total"]
        if index >= total:
            ctx.clear_state()
            ctx.logger.info(f"Loop completed after {total} items")
            return {"loop": [], "done": [Item(payload={"completed": True, "totalIterations": total})]}

        end = min(index + batch_size, total)
        batch = state["values"][index:end]
        state["index"] = end
        ctx.set_state(state)

        out = []
        for offset, value in enumerate(batch):
            position = index + offset
            payload = dict(value) if isinstance(value, dict) else {"value": value}
            payload.update({
                "$index": position,
                "$iteration": position + 1,
                "$total": total,
                "$isFirst": position == 0,
                "$isLast": position == total - 1,
                "$batchIndex": offset,
                "$batchSize": len(batch),
            })
            out.append(Item(payload=payload))
        return {"loop": out, "done": []}

    @staticmethod
    def _collect(inputs: InputBundle, ctx: ExecutionContext) -> List[Any]:
        loop_over = ctx.get_parameter("loopOver", 0, "items")
        if loop_over == "repeat":
            times = _positive_int(ctx.get_parameter("repeatTimes", 0, 10), "repeatTimes")
            if times > MAX_REPEAT:
                raise StepValidationError(
                    f"Number of iterations cannot exceed {MAX_REPEAT}, got {times}"
                )
            return [{"iteration": i + 1, "index": i, "total": times} for i in range(times)]

        payloads = [item.payload for item in inputs.get("main", [])]
        if loop_over == "items":
            return payloads
        if loop_over == "field":
            field = ctx.get_parameter("fieldName", 0, "")
            if not field:
                raise StepValidationError("Field name is required when looping over a field")
            if not payloads:
                return []
            value = resolve_path(payloads[0], field)
            if not isinstance(value, list):
                raise StepValidationError(
                    f"Field '{field}' is not an array, got {type(value).__name__}"
                )
            return list(value)
        raise StepValidationError(f"Unknown loopOver value: {loop_over}")


# ==============================================================================
# Split
# ==============================================================================

class SplitStep(BaseStep):
    """
    Split - group input items.

    batch emits one {batch, batchSize} item per batch. The other modes
    emit one {key, items, count} item per group.
    """

    type = "split"
    version = 1

    description = {
        "displayName": "Split",
        "name": "split",
        "group": ["transform"],
        "description": "Split items into batches or groups",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Mode",
                "name": "mode",
                "type": "options",
                "default": "batch",
                "options": [
                    {"name": "Batch", "value": "batch"},
                    {"name": "By Field Value", "value": "byField"},
                    {"name": "Even/Odd", "value": "evenOdd"},
                    {"name": "Percentage", "value": "percentage"},
                    {"name": "Equal Parts", "value": "parts"},
                ],
            },
            {"displayName": "Batch Size", "name": "batchSize", "type": "number", "default": 10},
            {"displayName": "Field Name", "name": "splitField", "type": "string", "default": "type"},
            {"displayName": "Percentage for First Group", "name": "percentage", "type": "number", "default": 50},
            {"displayName": "Number of Parts", "name": "parts", "type": "number", "default": 2},
        ],
    }

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        mode = ctx.get_parameter("mode", 0, "batch")
        values = [item.payload for item in inputs.get("main", [])]
        if not values:
            return {"main": []}

        if mode == "batch":
            size = _positive_int(ctx.get_parameter("batchSize", 0, 10), "batchSize")
            batches = [values[i:i + size] for i in range(0, len(values), size)]
            return {"main": [Item(payload={"batch": b, "batchSize": len(b)}) for b in batches]}

        if mode == "byField":
            field = ctx.get_parameter("splitField", 0, "type")
            if not field:
                raise StepValidationError("Field name is required for 'byField' mode")
            groups: Dict[Any, List[Any]] = {}
            keys: Dict[Any, Any] = {}
            for value in values:
                key = resolve_path(value if isinstance(value, dict) else {"value": value}, field)
                hashed = _key_of(key)
                keys.setdefault(hashed, key)
                groups.setdefault(hashed, []).append(value)
            parts = [(keys[h], group) for h, group in groups.items()]

        elif mode == "evenOdd":
            parts = [("even", values[0::2]), ("odd", values[1::2])]

        elif mode == "percentage":
            percentage = ctx.get_parameter("percentage", 0, 50)
            if not isinstance(percentage, (int, float)) or not 0 <= percentage <= 100:
                raise StepValidationError(f"Percentage must be between 0 and 100, got {percentage!r}")
            cut = math.floor(len(values) * percentage / 100)
            parts = [("first", values[:cut]), ("second", values[cut:])]

        elif mode == "parts":
            count = _positive_int(ctx.get_parameter("parts", 0, 2), "parts")
            per_part = math.ceil(len(values) / count)
            parts = [
                (i, values[i * per_part:(i + 1) * per_part])
                for i in range(count)
                if values[i * per_part:(i + 1) * per_part]
            ]

        else:
            raise StepValidationError(f"Unknown split mode: {mode}")

        return {"main": [
            Item(payload={"key": key, "items": group, "count": len(group)})
            for key, group in parts
        ]}


# ==============================================================================
# If / Switch
# ==============================================================================

class IfStep(BaseStep):
    """
    If - route each item to `true` or `false`.

    Conditions are evaluated per item and combined with AND / OR.
    """

    type = "if"
    version = 1

    description = {
        "displayName": "If",
        "name": "if",
        "group": ["transform"],
        "description": "Route items based on conditions",
        "inputs": ["main"],
        "outputs": ["true", "false"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Conditions",
                "name": "conditions",
                "type": "fixedCollection",
                "default": [],
                "description": "List of {key, operation, value}",
            },
            {
                "displayName": "Combine",
                "name": "combineOperation",
                "type": "options",
                "default": "AND",
                "options": [{"name": "AND", "value": "AND"}, {"name": "OR", "value": "OR"}],
            },
        ],
    }

    def validate_parameters(self, parameters: Dict[str, Any]) -> List[str]:
        problems = super().validate_parameters(parameters)
        conditions = parameters.get("conditions", [])
        if not isinstance(conditions, list):
            return problems + ["Parameter 'conditions' must be a list"]
        for i, condition in enumerate(conditions):
            if not isinstance(condition, dict):
                problems.append(f"Condition {i} must be an object")
                continue
            operation = normalize_condition(condition)["operation"]
            if operation not in OPERATIONS:
                problems.append(f"Condition {i} has unknown operation '{operation}'")
        return problems

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        raw = parameters.get("conditions", []) or []
        combine = ctx.get_parameter("combineOperation", 0, "AND")

        routed: Dict[str, List[Item]] = {"true": [], "false": []}
        for i, item in enumerate(inputs.get("main", [])):
            resolved = ctx.get_parameter("conditions", i, []) or []
            passed = evaluate_conditions(raw, resolved, item.json_payload(), combine)
            routed["true" if passed else "false"].append(item.clone())
        return routed


class SwitchStep(BaseStep):
    """
    Switch - route each item to one of several outputs.

    rules mode: the first matching rule's output (output0, output1, ...);
    unmatched items go to `fallback` when enabled, otherwise they are
    dropped. expression mode: outputExpression yields the output index.
    """

    type = "switch"
    version = 1

    description = {
        "displayName": "Switch",
        "name": "switch",
        "group": ["transform"],
        "description": "Route items to different outputs based on rules",
        "inputs": ["main"],
        "outputs": ["output0", "output1"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Mode",
                "name": "mode",
                "type": "options",
                "default": "rules",
                "options": [
                    {"name": "Rules", "value": "rules"},
                    {"name": "Expression", "value": "expression"},
                ],
            },
            {
                "displayName": "Rules",
                "name": "rules",
                "type": "fixedCollection",
                "default": [],
                "description": "List of {key, operation, value}; rule index = output index",
            },
            {
                "displayName": "Fallback Output",
                "name": "fallbackOutput",
                "type": "boolean",
                "default": False,
            },
            {
                "displayName": "Number of Outputs",
                "name": "outputsCount",
                "type": "number",
                "default": 3,
                "displayOptions": {"show": {"mode": ["expression"]}},
            },
            {
                "displayName": "Output Expression",
                "name": "outputExpression",
                "type": "string",
                "default": "0",
                "displayOptions": {"show": {"mode": ["expression"]}},
            },
        ],
    }

    def _outputs_count(self, parameters: Dict[str, Any]) -> int:
        if parameters.get("mode", "rules") == "expression":
            count = parameters.get("outputsCount", 3)
            if not isinstance(count, int) or isinstance(count, bool):
                count = 3
            return max(2, min(10, count))
        rules = parameters.get("rules", [])
        return len(rules) if isinstance(rules, list) else 0

    def output_ports(self, parameters: Dict[str, Any]) -> List[str]:
        ports = [f"output{i}" for i in range(self._outputs_count(parameters))]
        if parameters.get("fallbackOutput"):
            ports.append("fallback")
        return ports

    def validate_parameters(self, parameters: Dict[str, Any]) -> List[str]:
        problems = super().validate_parameters(parameters)
        if parameters.get("mode", "rules") == "rules":
            rules = parameters.get("rules", [])
            if not isinstance(rules, list):
                problems.append("Parameter 'rules' must be a list")
            else:
                for i, rule in enumerate(rules):
                    if not isinstance(rule, dict):
                        problems.append(f"Rule {i} must be an object")
                    elif normalize_condition(rule)["operation"] not in OPERATIONS:
                        problems.append(f"Rule {i} has an unknown operation")
        return problems

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        ports = self.output_ports(parameters)
        routed: Dict[str, List[Item]] = {port: [] for port in ports}
        mode = ctx.get_parameter("mode", 0, "rules")
        count = self._outputs_count(parameters)

        for i, item in enumerate(inputs.get("main", [])):
            if mode == "expression":
                target = self._expression_target(parameters, ctx, i, item, count)
            else:
                target = self._rules_target(parameters, ctx, i, item)

            if target is not None:
                routed[f"output{target}"].append(item.clone())
            elif "fallback" in routed:
                routed["fallback"].append(item.clone())
            else:
                ctx.logger.debug(f"Item {i} matched no rule and was dropped")
        return routed

    @staticmethod
    def _rules_target(parameters: Dict[str, Any], ctx: ExecutionContext, index: int, item: Item) -> Optional[int]:
        raw_rules = parameters.get("rules", []) or []
        resolved_rules = ctx.get_parameter("rules", index, []) or []
        payload = item.json_payload()
        for rule_index, (raw, resolved) in enumerate(zip(raw_rules, resolved_rules)):
            raw, resolved = normalize_condition(raw), normalize_condition(resolved)
            if raw["key"] in ("", None):
                continue
            left = operand(raw["key"], resolved["key"], payload)
            if evaluate(left, resolved["operation"], resolved["value"]):
                return rule_index
        return None

    @staticmethod
    def _expression_target(
        parameters: Dict[str, Any],
        ctx: ExecutionContext,
        index: int,
        item: Item,
        count: int,
    ) -> Optional[int]:
        raw = parameters.get("outputExpression", "0")
        resolved = ctx.get_parameter("outputExpression", index, "0")
        value = operand(raw, resolved, item.json_payload())
        try:
            target = int(value)
        except (TypeError, ValueError):
            ctx.logger.warning(f"Output expression gave {value!r} for item {index}; not a number")
            return None
        if 0 <= target < count:
            return target
        ctx.logger.warning(f"Output index {target} out of range 0-{count - 1} for item {index}")
        return None


__all__ = [
    "IfStep",
    "LoopStep",
    "MERGE_MODES",
    "MergeStep",
    "SplitStep",
    "SwitchStep",
]
