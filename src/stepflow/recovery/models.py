"""
Recovery models - checkpoints and failure analysis results.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def compute_checksum(snapshot: Dict[str, Any]) -> str:
    """sha256 over the canonical JSON encoding of a snapshot."""
    encoded = json.dumps(snapshot, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class Checkpoint(BaseModel):
    """
    Immutable record of a step's successful completion within a run.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    checkpoint_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="checkpointId")
    run_id: str = Field(..., alias="runId")
    step_id: str = Field(..., alias="stepId")
    state_snapshot: Dict[str, Any] = Field(default_factory=dict, alias="stateSnapshot")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="createdAt",
    )
    checksum: str = ""
    sequence: int = Field(0, description="Position in the run's checkpoint list")

    @classmethod
    def create(cls, run_id: str, step_id: str, state_snapshot: Dict[str, Any]) -> "Checkpoint":
        return cls(
            run_id=run_id,
            step_id=step_id,
            state_snapshot=state_snapshot,
            checksum=compute_checksum(state_snapshot),
        )

    def verify(self) -> bool:
        """True when the snapshot still matches its checksum."""
        return self.checksum == compute_checksum(self.state_snapshot)


class FailureCategory(str, Enum):
    """Failure classification used to pick a recovery strategy."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """How a failed run is resumed."""
    RETRY = "retry"
    SKIP = "skip"
    RESTART_FROM_CHECKPOINT = "restartFromCheckpoint"
    MANUAL = "manual"


class RecoveryRecommendation(BaseModel):
    """Result of analyze()."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    failed_step_id: Optional[str] = Field(None, alias="failedStepId")
    category: FailureCategory
    strategy: RecoveryStrategy
    retryable: bool = False
    retry_after: Optional[float] = Field(None, alias="retryAfter")
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    recommendations: List[str] = Field(default_factory=list)
    checkpoint_count: int = Field(0, alias="checkpointCount")


__all__ = [
    "Checkpoint",
    "FailureCategory",
    "RecoveryRecommendation",
    "RecoveryStrategy",
    "compute_checksum",
]
