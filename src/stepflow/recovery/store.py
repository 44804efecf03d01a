"""
Checkpoint stores.

Per-run checkpoint lists are append-only and safe to read while the run
is still appending. Implementations:
- InMemoryCheckpointStore (default, single process)
- SqliteCheckpointStore (stdlib sqlite3, survives restarts)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from stepflow.config import Settings, get_settings

from .models import Checkpoint


logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """
    Abstract interface for checkpoint persistence.

    append() is idempotent per (run_id, step_id): a second append for the
    same pair returns the stored checkpoint unchanged.
    """

    @abstractmethod
    def append(self, checkpoint: Checkpoint) -> Checkpoint:
        """Store a checkpoint, returning the stored record (with sequence set)."""
        ...

    @abstractmethod
    def get(self, run_id: str, step_id: str) -> Optional[Checkpoint]:
        ...

    @abstractmethod
    def get_by_id(self, checkpoint_id: str) -> Optional[Checkpoint]:
        ...

    @abstractmethod
    def list(self, run_id: str) -> List[Checkpoint]:
        """Checkpoints of a run in creation order."""
        ...

    @abstractmethod
    def delete_run(self, run_id: str) -> int:
        """Discard all checkpoints of a run. Returns number removed."""
        ...

    def close(self) -> None:
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """Lock-protected in-memory store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, List[Checkpoint]] = {}
        self._index: Dict[Tuple[str, str], Checkpoint] = {}

    def append(self, checkpoint: Checkpoint) -> Checkpoint:
        key = (checkpoint.run_id, checkpoint.step_id)
        with self._lock:
            existing = self._index.get(key)
            if existing is not None:
                return existing
            run_list = self._runs.setdefault(checkpoint.run_id, [])
            stored = checkpoint.model_copy(update={"sequence": len(run_list) + 1})
            run_list.append(stored)
            self._index[key] = stored
            return stored

    def get(self, run_id: str, step_id: str) -> Optional[Checkpoint]:
        with self._lock:
            return self._index.get((run_id, step_id))

    def get_by_id(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            for checkpoints in self._runs.values():
                for checkpoint in checkpoints:
                    if checkpoint.checkpoint_id == checkpoint_id:
                        return checkpoint
        return None

    def list(self, run_id: str) -> List[Checkpoint]:
        with self._lock:
            return list(self._runs.get(run_id, []))

    def delete_run(self, run_id: str) -> int:
        with self._lock:
            removed = self._runs.pop(run_id, [])
            for checkpoint in removed:
                self._index.pop((checkpoint.run_id, checkpoint.step_id), None)
            return len(removed)


class SqliteCheckpointStore(CheckpointStore):
    """
    SQLite-backed checkpoint store.

    Thread-safe via connection-per-thread plus a write lock.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._init_schema(self._get_connection())

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self._connections.append(conn)
        return conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS checkpoints (
                sequence INTEGER NOT NULL,
                checkpoint_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                state_snapshot TEXT NOT NULL,
                created_at TEXT NOT NULL,
                checksum TEXT NOT NULL,
                UNIQUE (run_id, step_id)
            );
            CREATE INDEX IF NOT EXISTS idx_checkpoints_run
                ON checkpoints (run_id, sequence);
        """)
        conn.commit()

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=row["checkpoint_id"],
            run_id=row["run_id"],
            step_id=row["step_id"],
            state_snapshot=json.loads(row["state_snapshot"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            checksum=row["checksum"],
            sequence=row["sequence"],
        )

    def append(self, checkpoint: Checkpoint) -> Checkpoint:
        conn = self._get_connection()
        with self._write_lock:
            existing = self.get(checkpoint.run_id, checkpoint.step_id)
            if existing is not None:
                return existing

            row = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) AS seq FROM checkpoints WHERE run_id = ?",
                (checkpoint.run_id,),
            ).fetchone()
            stored = checkpoint.model_copy(update={"sequence": row["seq"] + 1})

            conn.execute("""
                INSERT INTO checkpoints
                (sequence, checkpoint_id, run_id, step_id, state_snapshot, created_at, checksum)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                stored.sequence,
                stored.checkpoint_id,
                stored.run_id,
                stored.step_id,
                json.dumps(stored.state_snapshot),
                stored.created_at.isoformat(),
                stored.checksum,
            ))
            conn.commit()
            return stored

    def get(self, run_id: str, step_id: str) -> Optional[Checkpoint]:
        row = self._get_connection().execute(
            "SELECT * FROM checkpoints WHERE run_id = ? AND step_id = ?",
            (run_id, step_id),
        ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def get_by_id(self, checkpoint_id: str) -> Optional[Checkpoint]:
        row = self._get_connection().execute(
            "SELECT * FROM checkpoints WHERE checkpoint_id = ?",
            (checkpoint_id,),
        ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def list(self, run_id: str) -> List[Checkpoint]:
        rows = self._get_connection().execute(
            "SELECT * FROM checkpoints WHERE run_id = ? ORDER BY sequence",
            (run_id,),
        ).fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    def delete_run(self, run_id: str) -> int:
        conn = self._get_connection()
        with self._write_lock:
            cursor = conn.execute("DELETE FROM checkpoints WHERE run_id = ?", (run_id,))
            conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        """Close all connections."""
        for conn in self._connections:
            conn.close()
        self._connections.clear()
        self._local = threading.local()


def write_checkpoint(
    store: CheckpointStore,
    run_id: str,
    step_id: str,
    state_snapshot: dict,
) -> Checkpoint:
    """Append a checkpoint for (run_id, step_id); idempotent per pair."""
    stored = store.append(Checkpoint.create(run_id, step_id, state_snapshot))
    logger.debug(f"Checkpoint {stored.checkpoint_id} for {run_id}/{step_id} (#{stored.sequence})")
    return stored


def create_checkpoint_store(settings: Optional[Settings] = None) -> CheckpointStore:
    """Create the checkpoint store selected by settings.checkpoint_backend."""
    settings = settings or get_settings()
    if settings.checkpoint_backend == "sqlite":
        return SqliteCheckpointStore(settings.checkpoint_db_path)
    return InMemoryCheckpointStore()


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqliteCheckpointStore",
    "create_checkpoint_store",
    "write_checkpoint",
]
