"""
Graph Topology - dependency structure of a step graph.

Computes execution order (Kahn's algorithm), loop bodies and back-edges,
and upstream/downstream queries used by validation and the scheduler.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from .models import Connection, Graph


if TYPE_CHECKING:
    from stepflow.step_registry.registry import StepRegistry


logger = logging.getLogger(__name__)


class GraphCycleError(ValueError):
    """The graph has a cycle that is not a declared loop back-edge."""

    def __init__(self, step_ids: Iterable[str]) -> None:
        self.step_ids = sorted(step_ids)
        super().__init__(f"Graph has cycles involving: {self.step_ids}")


def loop_ports_from_registry(graph: Graph, registry: Optional["StepRegistry"]) -> Dict[str, Set[str]]:
    """Map iterative step ids to their loop ports."""
    result: Dict[str, Set[str]] = {}
    if registry is None:
        return result
    for step in graph.steps:
        if not registry.has(step.type):
            continue
        step_class = registry.get_class(step.type)
        if getattr(step_class, "iterative", False):
            result[step.id] = set(getattr(step_class, "loop_ports", ()))
    return result


class GraphTopology:
    """
    Dependency view of a Graph.

    Contains:
    - Active steps (disabled ones removed unless include_disabled)
    - Forward connections (back-edges into loop steps removed)
    - Loop bodies per iterative step
    - Deterministic topological order
    """

    def __init__(
        self,
        graph: Graph,
        loop_ports: Optional[Dict[str, Set[str]]] = None,
        include_disabled: bool = False,
    ):
        self.graph = graph
        self.loop_ports = {k: set(v) for k, v in (loop_ports or {}).items()}

        self.step_ids: List[str] = [
            s.id for s in graph.steps if include_disabled or not s.disabled
        ]
        active = set(self.step_ids)
        self.connections: List[Connection] = [
            c for c in graph.connections
            if c.source_step_id in active and c.target_step_id in active
        ]

        self.loop_bodies: Dict[str, Set[str]] = {}
        self.back_edges: List[Connection] = []
        self._compute_loops()

        back = {c.key for c in self.back_edges}
        self.forward_connections: List[Connection] = [
            c for c in self.connections if c.key not in back
        ]

        self._upstream: Dict[str, List[str]] = {sid: [] for sid in self.step_ids}
        self._downstream: Dict[str, List[str]] = {sid: [] for sid in self.step_ids}
        for conn in self.forward_connections:
            if conn.source_step_id not in self._upstream[conn.target_step_id]:
                self._upstream[conn.target_step_id].append(conn.source_step_id)
            if conn.target_step_id not in self._downstream[conn.source_step_id]:
                self._downstream[conn.source_step_id].append(conn.target_step_id)

        self._execution_order: List[str] = []
        self._cycle: Set[str] = set()
        self._compute_execution_order()

    def _compute_loops(self) -> None:
        """Body of a loop step: everything reachable from its loop ports."""
        for loop_id, ports in self.loop_ports.items():
            if loop_id not in self.step_ids:
                continue
            body: Set[str] = set()
            queue = deque(
                c.target_step_id for c in self.connections
                if c.source_step_id == loop_id and c.source_port in ports
            )
            while queue:
                step_id = queue.popleft()
                if step_id == loop_id or step_id in body:
                    continue
                body.add(step_id)
                for c in self.connections:
                    if c.source_step_id == step_id:
                        queue.append(c.target_step_id)
            self.loop_bodies[loop_id] = body
            self.back_edges.extend(
                c for c in self.connections
                if c.target_step_id == loop_id and c.source_step_id in body
            )

    def _compute_execution_order(self) -> None:
        """
        Compute topological order.

        Uses Kahn's algorithm with a sorted queue for stable ordering.
        """
        in_degree: Dict[str, int] = {sid: len(self._upstream[sid]) for sid in self.step_ids}
        queue = [sid for sid, degree in in_degree.items() if degree == 0]
        order = []

        while queue:
            queue.sort()
            step_id = queue.pop(0)
            order.append(step_id)
            for downstream_id in self._downstream[step_id]:
                in_degree[downstream_id] -= 1
                if in_degree[downstream_id] == 0:
                    queue.append(downstream_id)

        if len(order) != len(self.step_ids):
            self._cycle = set(self.step_ids) - set(order)
        self._execution_order = order

    @property
    def has_cycle(self) -> bool:
        return bool(self._cycle)

    @property
    def cycle_steps(self) -> Set[str]:
        return set(self._cycle)

    @property
    def execution_order(self) -> List[str]:
        """Steps in execution order. Raises GraphCycleError on cycles."""
        if self._cycle:
            raise GraphCycleError(self._cycle)
        return self._execution_order.copy()

    def get_upstream(self, step_id: str) -> List[str]:
        return list(self._upstream.get(step_id, []))

    def get_downstream(self, step_id: str) -> List[str]:
        return list(self._downstream.get(step_id, []))

    def get_start_steps(self) -> List[str]:
        """Steps with no forward incoming connections."""
        return [sid for sid in self.step_ids if not self._upstream[sid]]

    def descendants(self, step_id: str) -> Set[str]:
        """All steps forward-reachable from step_id, excluding itself."""
        seen: Set[str] = set()
        queue = deque(self._downstream.get(step_id, []))
        while queue:
            current = queue.popleft()
            if current in seen or current == step_id:
                continue
            seen.add(current)
            queue.extend(self._downstream.get(current, []))
        return seen

    def ancestors(self, step_id: str) -> Set[str]:
        seen: Set[str] = set()
        queue = deque(self._upstream.get(step_id, []))
        while queue:
            current = queue.popleft()
            if current in seen or current == step_id:
                continue
            seen.add(current)
            queue.extend(self._upstream.get(current, []))
        return seen

    def reachable_from_ports(self, step_id: str, ports: Set[str]) -> Set[str]:
        """Steps forward-reachable through the given output ports of step_id."""
        result: Set[str] = set()
        for conn in self.forward_connections:
            if conn.source_step_id == step_id and conn.source_port in ports:
                result.add(conn.target_step_id)
                result |= self.descendants(conn.target_step_id)
        result.discard(step_id)
        return result

    def incoming(self, step_id: str) -> List[Connection]:
        """Forward connections into step_id in declaration order."""
        return [c for c in self.forward_connections if c.target_step_id == step_id]

    def back_edges_into(self, step_id: str) -> List[Connection]:
        return [c for c in self.back_edges if c.target_step_id == step_id]

    def enclosing_loops(self, step_id: str) -> List[str]:
        return [loop_id for loop_id, body in self.loop_bodies.items() if step_id in body]


__all__ = [
    "GraphCycleError",
    "GraphTopology",
    "loop_ports_from_registry",
]
