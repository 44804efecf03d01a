"""
Graph validation.

validate() runs once per trigger before scheduling. The engine never
executes a graph whose result has errors.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from stepflow.step_registry.registry import StepRegistry

from .graph import GraphTopology, loop_ports_from_registry
from .models import Graph


logger = logging.getLogger(__name__)


class ValidationIssue(BaseModel):
    """One (step_id, reason) pair."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    step_id: Optional[str] = Field(None, alias="stepId")
    reason: str

    def __str__(self) -> str:
        return f"{self.step_id or '<graph>'}: {self.reason}"


class ValidationResult(BaseModel):
    """Outcome of validate()."""
    model_config = ConfigDict(populate_by_name=True)

    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add_error(self, step_id: Optional[str], reason: str) -> None:
        self.errors.append(ValidationIssue(step_id=step_id, reason=reason))

    def add_warning(self, step_id: Optional[str], reason: str) -> None:
        self.warnings.append(ValidationIssue(step_id=step_id, reason=reason))

    def summary(self) -> str:
        return "; ".join(str(issue) for issue in self.errors)


class GraphValidationError(ValueError):
    """Raised when a run is started with an invalid graph."""

    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        super().__init__(f"Graph is invalid: {result.summary()}")


def validate(graph: Graph, registry: StepRegistry) -> ValidationResult:
    """
    Validate a graph against a step registry.

    Checks:
    - unique step ids
    - every step type is registered and its parameters are acceptable
    - connection endpoints exist and name declared ports
    - no duplicate connections
    - acyclic apart from loop back-edges
    - no step downstream of both a loop's body and its exit
    """
    result = ValidationResult()

    # Step ids
    counts = Counter(step.id for step in graph.steps)
    for step_id, count in counts.items():
        if count > 1:
            result.add_error(step_id, f"Duplicate step id ({count} steps share it)")

    # Step types and parameters
    instances = {}
    for step in graph.steps:
        if not registry.has(step.type):
            result.add_error(step.id, f"Unknown step type '{step.type}'")
            continue
        instance = registry.create(step.type)
        instances.setdefault(step.id, (step, instance))
        for problem in instance.validate_parameters(step.parameters):
            result.add_error(step.id, problem)

    # Connections
    seen_keys: Dict[tuple, int] = {}
    for conn in graph.connections:
        source = instances.get(conn.source_step_id)
        target = instances.get(conn.target_step_id)

        if conn.source_step_id not in counts:
            result.add_error(conn.source_step_id, f"Connection {conn} references missing source step")
        elif source is not None:
            step, instance = source
            outputs = instance.output_ports(step.parameters)
            if conn.source_port not in outputs:
                result.add_error(
                    conn.source_step_id,
                    f"Connection {conn} uses undeclared output port '{conn.source_port}' "
                    f"(declared: {outputs})",
                )

        if conn.target_step_id not in counts:
            result.add_error(conn.target_step_id, f"Connection {conn} references missing target step")
        elif target is not None:
            step, instance = target
            inputs = instance.input_ports(step.parameters)
            if conn.target_port not in inputs:
                result.add_error(
                    conn.target_step_id,
                    f"Connection {conn} uses undeclared input port '{conn.target_port}' "
                    f"(declared: {inputs})",
                )

        seen_keys[conn.key] = seen_keys.get(conn.key, 0) + 1

    for key, count in seen_keys.items():
        if count > 1:
            result.add_error(key[0], f"Duplicate connection {key[0]}.{key[1]} -> {key[2]}.{key[3]}")

    if result.errors:
        return result

    # Structure
    topology = GraphTopology(
        graph,
        loop_ports=loop_ports_from_registry(graph, registry),
        include_disabled=True,
    )
    if topology.has_cycle:
        for step_id in sorted(topology.cycle_steps):
            result.add_error(step_id, "Step is part of a cycle that is not a loop back-edge")

    for loop_id, body in topology.loop_bodies.items():
        loop_ports = topology.loop_ports[loop_id]
        step, instance = instances[loop_id]
        exit_ports = set(instance.output_ports(step.parameters)) - loop_ports
        after = topology.reachable_from_ports(loop_id, exit_ports)
        for step_id in sorted(body & after):
            result.add_error(
                step_id,
                f"Step is reachable from both the loop and exit ports of '{loop_id}'",
            )

    # Warnings
    if len(graph.steps) > 1:
        connected = {c.source_step_id for c in graph.connections} | {
            c.target_step_id for c in graph.connections
        }
        for step in graph.steps:
            if step.id not in connected:
                result.add_warning(step.id, "Step has no connections")

    if graph.steps and not any(
        getattr(instances.get(s.id, (None, None))[1], "is_trigger", False) for s in graph.steps
    ):
        result.add_warning(None, "Graph has no trigger step; seed items go to entry steps")

    if result.errors:
        logger.info(f"Graph '{graph.name}' failed validation: {result.summary()}")
    return result


__all__ = [
    "GraphValidationError",
    "ValidationIssue",
    "ValidationResult",
    "validate",
]
