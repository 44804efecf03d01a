"""
Workflow Runtime - step graph execution.

This package provides:
- Graph / Step / Connection: the declarative graph model
- GraphTopology and validate(): ordering, loops, structural checks
- RunState: per-run record owned by the scheduler
- Scheduler: dependency-ordered execution on a bounded worker pool
- Engine: trigger activation and run handles

All execution is synchronous (threads, no asyncio).
"""

from .models import Connection, Graph, Step, TriggerEvent, TriggerMode, load_graph, parse_graph
from .graph import GraphCycleError, GraphTopology, loop_ports_from_registry
from .validation import GraphValidationError, ValidationIssue, ValidationResult, validate
from .state import RunRepository, RunState, RunStatus, SkipReason, StepRecord, StepStatus
from .scheduler import Scheduler
from .engine import Engine, RunHandle

__all__ = [
    # Models
    "Connection",
    "Graph",
    "Step",
    "TriggerEvent",
    "TriggerMode",
    "load_graph",
    "parse_graph",
    # Topology / validation
    "GraphCycleError",
    "GraphTopology",
    "GraphValidationError",
    "ValidationIssue",
    "ValidationResult",
    "loop_ports_from_registry",
    "validate",
    # State
    "RunRepository",
    "RunState",
    "RunStatus",
    "SkipReason",
    "StepRecord",
    "StepStatus",
    # Execution
    "Engine",
    "RunHandle",
    "Scheduler",
]
