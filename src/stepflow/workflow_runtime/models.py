"""
Graph Models - JSON structures for step graphs and trigger events.

A Graph is supplied fresh per run and is read-only to the engine.
"""

from __future__ import annotations

import json
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from stepflow.step_sdk.items import Item, wrap_payloads


class Step(BaseModel):
    """
    A step in a graph.

    Example: {"id": "fetch", "type": "httpRequest", "parameters": {"url": "..."}}
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    # Required
    id: str = Field(..., min_length=1, description="Step id (unique within graph)")
    type: str = Field(..., description="Registered step type")

    # Optional
    name: Optional[str] = Field(None, description="Display name")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    disabled: bool = Field(False, description="If true, step is skipped")
    continue_on_fail: bool = Field(False, alias="continueOnFail")
    retry_on_fail: bool = Field(False, alias="retryOnFail")
    max_tries: int = Field(3, alias="maxTries", ge=1, description="Attempts when retry_on_fail")
    wait_between_tries_ms: int = Field(1000, alias="waitBetweenTries", ge=0)
    timeout_ms: Optional[int] = Field(
        None, alias="timeoutMs", gt=0, description="Deadline per invocation (default: settings.step_timeout_ms)"
    )
    notes: Optional[str] = Field(None, description="Step notes")

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Connection(BaseModel):
    """
    Wire from one step's output port to another step's input port.

    Example: {"sourceStepId": "a", "sourcePort": "main", "targetStepId": "b", "targetPort": "main"}
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    source_step_id: str = Field(..., alias="sourceStepId")
    source_port: str = Field("main", alias="sourcePort")
    target_step_id: str = Field(..., alias="targetStepId")
    target_port: str = Field("main", alias="targetPort")

    @property
    def key(self) -> tuple:
        return (self.source_step_id, self.source_port, self.target_step_id, self.target_port)

    def __str__(self) -> str:
        return (
            f"{self.source_step_id}.{self.source_port} -> "
            f"{self.target_step_id}.{self.target_port}"
        )


class Graph(BaseModel):
    """
    Complete step graph.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    id: Optional[str] = Field(None, description="Graph id")
    name: str = Field("Unnamed Graph", description="Graph name")
    steps: List[Step] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def incoming(self, step_id: str) -> List[Connection]:
        """Connections into a step, in declaration order."""
        return [c for c in self.connections if c.target_step_id == step_id]

    def outgoing(self, step_id: str) -> List[Connection]:
        """Connections out of a step, in declaration order."""
        return [c for c in self.connections if c.source_step_id == step_id]

    def get_upstream_steps(self, step_id: str) -> List[str]:
        seen: List[str] = []
        for conn in self.incoming(step_id):
            if conn.source_step_id not in seen:
                seen.append(conn.source_step_id)
        return seen

    def get_downstream_steps(self, step_id: str) -> List[str]:
        seen: List[str] = []
        for conn in self.outgoing(step_id):
            if conn.target_step_id not in seen:
                seen.append(conn.target_step_id)
        return seen


class TriggerMode(str, Enum):
    """Transport that produced a trigger event."""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    POLLING = "polling"


class TriggerEvent(BaseModel):
    """
    Request to start a run, produced by an external trigger transport.
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="runId")
    seed_items: List[Item] = Field(default_factory=list, alias="seedItems")
    start_step_id: Optional[str] = Field(None, alias="startStepId")
    mode: TriggerMode = Field(TriggerMode.MANUAL)

    @classmethod
    def manual(cls, *payloads: Any, **kwargs: Any) -> "TriggerEvent":
        """Manual trigger seeded with raw payloads."""
        return cls(seed_items=wrap_payloads(payloads), mode=TriggerMode.MANUAL, **kwargs)


def parse_graph(data: Dict[str, Any]) -> Graph:
    """Parse graph JSON into a Graph."""
    return Graph.model_validate(data)


def load_graph(path: Union[str, Path]) -> Graph:
    """Load a graph from a .json, .yaml or .yml file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Graph file {path} must contain a mapping")
    return parse_graph(data)


__all__ = [
    "Connection",
    "Graph",
    "Step",
    "TriggerEvent",
    "TriggerMode",
    "load_graph",
    "parse_graph",
]
