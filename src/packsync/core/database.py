"""Client-local database for packsync.

This module owns the SQLite file that makes offline editing durable:

- queue_entries: the local durable operation queue (see queue.py)
- snapshots: last known canonical snapshot per packing list
- conflicts: unresolved conflict records, one per packing list

All methods return plain Python objects (dataclasses, dicts, primitives).
Every write is committed before the method returns, so a crash or reload
never loses an acknowledged write.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .models import CanonicalSnapshot, ConflictRecord, ProjectedSnapshot
from .timestamp_utils import utc_now_iso

logger = logging.getLogger(__name__)

__all__ = ["LocalDatabase"]

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_entries (
    op_id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_entity_position
    ON queue_entries (entity_id, position);

CREATE TABLE IF NOT EXISTS snapshots (
    entity_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    stored_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conflicts (
    entity_id TEXT PRIMARY KEY,
    offending_op_id TEXT NOT NULL,
    local_data TEXT NOT NULL,
    remote_data TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);
"""


class LocalDatabase:
    """SQLite storage for the client side of the sync engine.

    A single connection is shared between the UI thread and the sync
    driver's worker threads; ``transaction()`` serializes access to it.
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (and create if needed) the local database.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()
        logger.info(f"Opened local database at {self.db_path}")

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(_SCHEMA)
            current = self.conn.execute("PRAGMA user_version").fetchone()[0]
            if current < SCHEMA_VERSION:
                self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; commits on success, rolls back on error."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()

    # ===== Snapshot cache =====

    def get_snapshot(self, entity_id: str) -> Optional[CanonicalSnapshot]:
        """Get the last known canonical snapshot of a packing list."""
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM snapshots WHERE entity_id = ?", (entity_id,)
            ).fetchone()
        if row is None:
            return None
        return CanonicalSnapshot.from_dict(json.loads(row["data"]))

    def save_snapshot(self, snapshot: CanonicalSnapshot) -> None:
        """Replace the cached canonical snapshot of a packing list."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO snapshots (entity_id, version, data, stored_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(entity_id) DO UPDATE SET
                    version = excluded.version,
                    data = excluded.data,
                    stored_at = excluded.stored_at
                """,
                (
                    snapshot.entity_id,
                    snapshot.version,
                    json.dumps(snapshot.to_dict()),
                    utc_now_iso(),
                ),
            )
        logger.debug(f"Stored snapshot {snapshot.entity_id} v{snapshot.version}")

    def list_snapshot_entities(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT entity_id FROM snapshots ORDER BY entity_id"
            ).fetchall()
        return [r["entity_id"] for r in rows]

    # ===== Conflict records =====

    def save_conflict(self, record: ConflictRecord) -> None:
        """Persist an unresolved conflict.

        Raises:
            sqlite3.IntegrityError: If the entity already has a conflict
        """
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO conflicts
                    (entity_id, offending_op_id, local_data, remote_data, message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.entity_id,
                    record.offending_op_id,
                    json.dumps(record.local_data.to_dict()),
                    json.dumps(record.remote_data.to_dict()),
                    record.message,
                    record.created_at,
                ),
            )

    def get_conflict(self, entity_id: str) -> Optional[ConflictRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM conflicts WHERE entity_id = ?", (entity_id,)
            ).fetchone()
        return self._row_to_conflict(row) if row else None

    def list_conflicts(self) -> List[ConflictRecord]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM conflicts ORDER BY created_at"
            ).fetchall()
        return [self._row_to_conflict(r) for r in rows]

    def delete_conflict(self, entity_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM conflicts WHERE entity_id = ?", (entity_id,)
            )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> ConflictRecord:
        return ConflictRecord(
            entity_id=row["entity_id"],
            local_data=ProjectedSnapshot.from_dict(json.loads(row["local_data"])),
            remote_data=CanonicalSnapshot.from_dict(json.loads(row["remote_data"])),
            offending_op_id=row["offending_op_id"],
            created_at=row["created_at"],
            message=row["message"],
        )

    # ===== Diagnostics =====

    def get_stats(self) -> Dict[str, Any]:
        """Get counts for status displays."""
        with self._lock:
            queued = self.conn.execute("SELECT COUNT(*) FROM queue_entries").fetchone()[0]
            lists = self.conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]
            conflicts = self.conn.execute("SELECT COUNT(*) FROM conflicts").fetchone()[0]
        return {"queued_operations": queued, "cached_lists": lists, "conflicts": conflicts}
