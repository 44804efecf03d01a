"""
Run state - per-run record owned by the scheduler.

Callers only ever see deep copies produced by snapshot(). The JSON form
is the external representation used by checkpoints and persistence.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from stepflow.step_sdk.errors import StepErrorInfo
from stepflow.step_sdk.items import Item

from .models import Graph, TriggerEvent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Status of a step during a run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


class SkipReason(str, Enum):
    """Why a step was skipped."""
    DISABLED = "disabled"
    NO_INPUT_DATA = "no_input_data"
    UPSTREAM_FAILED = "upstream_failed"
    NOT_REACHABLE = "not_reachable"
    RECOVERY = "recovery"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall run status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepRecord(BaseModel):
    """
    Result of running a single step within a run.
    """
    model_config = ConfigDict(populate_by_name=True)

    step_id: str
    status: StepStatus = StepStatus.PENDING
    skip_reason: Optional[SkipReason] = None
    error: Optional[StepErrorInfo] = None
    outputs: Dict[str, List[Item]] = Field(default_factory=dict)
    inputs: Dict[str, List[List[Item]]] = Field(
        default_factory=dict,
        description="Per-port, per-connection input sequences of the last invocation",
    )
    attempts: int = 0
    iterations: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0
    logs: List[str] = Field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    @property
    def is_error(self) -> bool:
        return self.status == StepStatus.FAILED

    def reset(self) -> None:
        """Back to Pending, dropping outputs and errors."""
        self.status = StepStatus.PENDING
        self.skip_reason = None
        self.error = None
        self.outputs = {}
        self.inputs = {}
        self.started_at = None
        self.finished_at = None
        self.duration_ms = 0


class RunState(BaseModel):
    """
    Per-run state: graph snapshot, step records and step state blobs.
    """
    model_config = ConfigDict(populate_by_name=True)

    run_id: str
    graph: Graph
    trigger: TriggerEvent
    status: RunStatus = RunStatus.PENDING
    steps: Dict[str, StepRecord] = Field(default_factory=dict)
    step_state: Dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque per-step state blobs for iterative steps",
    )
    loop_counters: Dict[str, int] = Field(default_factory=dict)
    failed_step_id: Optional[str] = None
    error: Optional[StepErrorInfo] = None
    manual_intervention: bool = False
    recovery_attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def create(cls, graph: Graph, trigger: TriggerEvent) -> "RunState":
        return cls(
            run_id=trigger.run_id,
            graph=graph,
            trigger=trigger,
            steps={step.id: StepRecord(step_id=step.id) for step in graph.steps},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def record(self, step_id: str) -> StepRecord:
        return self.steps[step_id]

    def status_of(self, step_id: str) -> StepStatus:
        return self.steps[step_id].status

    def outputs_of(self, step_id: str, port: str = "main") -> List[Item]:
        return list(self.steps[step_id].outputs.get(port, []))

    def statuses(self) -> Dict[str, StepStatus]:
        return {step_id: record.status for step_id, record in self.steps.items()}

    def snapshot(self) -> "RunState":
        """Deep copy safe to hand to callers."""
        return self.model_copy(deep=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "RunState":
        return cls.model_validate_json(data)

    def summary(self) -> Dict[str, Any]:
        """Get summary of run results."""
        return {
            "run_id": self.run_id,
            "graph_id": self.graph.id,
            "graph_name": self.graph.name,
            "status": self.status.value,
            "failed_step_id": self.failed_step_id,
            "error": self.error.message if self.error else None,
            "status_counts": {
                status.value: sum(1 for r in self.steps.values() if r.status == status)
                for status in StepStatus
            },
            "steps": {
                step_id: {
                    "status": record.status.value,
                    "skip_reason": record.skip_reason.value if record.skip_reason else None,
                    "error": record.error.message if record.error else None,
                    "items": sum(len(items) for items in record.outputs.values()),
                }
                for step_id, record in self.steps.items()
            },
        }


class RunRepository:
    """
    In-memory registry of live runs.

    Each run has a re-entrant lock; the scheduler holds it while mutating
    the state and snapshot() takes it to copy a consistent view.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, RunState] = {}
        self._locks: Dict[str, threading.RLock] = {}

    def add(self, state: RunState) -> threading.RLock:
        with self._lock:
            if state.run_id in self._runs:
                raise ValueError(f"Run '{state.run_id}' already exists")
            self._runs[state.run_id] = state
            lock = self._locks[state.run_id] = threading.RLock()
            return lock

    def get(self, run_id: str) -> Optional[RunState]:
        """Live state. Only the scheduler and recovery manager mutate it."""
        with self._lock:
            return self._runs.get(run_id)

    def lock(self, run_id: str) -> threading.RLock:
        with self._lock:
            return self._locks.setdefault(run_id, threading.RLock())

    def snapshot(self, run_id: str) -> Optional[RunState]:
        state = self.get(run_id)
        if state is None:
            return None
        with self.lock(run_id):
            return state.snapshot()

    def remove(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)
            self._locks.pop(run_id, None)

    def run_ids(self) -> List[str]:
        with self._lock:
            return list(self._runs)


__all__ = [
    "RunRepository",
    "RunState",
    "RunStatus",
    "SkipReason",
    "StepRecord",
    "StepStatus",
    "utcnow",
]
