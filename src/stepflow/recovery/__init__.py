"""
Recovery - checkpoints, failure analysis and resumption of failed runs.
"""

from .manager import RecoveryError, RecoveryManager, categorize
from .models import (
    Checkpoint,
    FailureCategory,
    RecoveryRecommendation,
    RecoveryStrategy,
    compute_checksum,
)
from .store import (
    CheckpointStore,
    InMemoryCheckpointStore,
    SqliteCheckpointStore,
    create_checkpoint_store,
    write_checkpoint,
)

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "FailureCategory",
    "InMemoryCheckpointStore",
    "RecoveryError",
    "RecoveryManager",
    "RecoveryRecommendation",
    "RecoveryStrategy",
    "SqliteCheckpointStore",
    "categorize",
    "compute_checksum",
    "create_checkpoint_store",
    "write_checkpoint",
]
