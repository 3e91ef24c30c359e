"""Canonical storage for the authoritative packsync server.

Holds the canonical state of every packing list, who may access it, and
which operations have already been applied (for idempotent replays).

Writers must run inside ``transaction()``, which takes a SQLite
``BEGIN IMMEDIATE`` lock so concurrent writers to the same database
serialize instead of interleaving.

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

from .models import CanonicalSnapshot, Item, PermissionLevel
from .timestamp_utils import utc_now_iso

logger = logging.getLogger(__name__)

__all__ = ["CanonicalStore"]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS packing_lists (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    modified_at TEXT
);

CREATE TABLE IF NOT EXISTS packing_list_items (
    id TEXT NOT NULL,
    list_id TEXT NOT NULL REFERENCES packing_lists(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'general',
    qty INTEGER NOT NULL DEFAULT 1,
    packed INTEGER NOT NULL DEFAULT 0,
    notes TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (list_id, id)
);

CREATE TABLE IF NOT EXISTS list_shares (
    list_id TEXT NOT NULL REFERENCES packing_lists(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    permission_level TEXT NOT NULL,
    PRIMARY KEY (list_id, user_id)
);

CREATE TABLE IF NOT EXISTS applied_operations (
    op_id TEXT PRIMARY KEY,
    list_id TEXT NOT NULL,
    requestor_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    version INTEGER NOT NULL,
    snapshot TEXT NOT NULL,
    applied_at TEXT NOT NULL
);
"""


class CanonicalStore:
    """SQLite-backed canonical state of packing lists."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (and create if needed) the canonical store.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, timeout=30, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(_SCHEMA)
        logger.info(f"Opened canonical store at {self.db_path}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Exclusive write transaction; commits on success, rolls back on error."""
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
                self.conn.execute("COMMIT")
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ===== Lists =====

    def insert_list(
        self,
        conn: sqlite3.Connection,
        list_id: str,
        title: str,
        owner_id: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO packing_lists (id, title, owner_id, version, created_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (list_id, title, owner_id, utc_now_iso()),
        )
        conn.execute(
            "INSERT INTO list_shares (list_id, user_id, permission_level) VALUES (?, ?, ?)",
            (list_id, owner_id, PermissionLevel.OWNER.value),
        )

    def list_exists(self, conn: sqlite3.Connection, list_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM packing_lists WHERE id = ?", (list_id,)
        ).fetchone()
        return row is not None

    def load_snapshot(self, conn: sqlite3.Connection, list_id: str) -> Optional[CanonicalSnapshot]:
        """Read the canonical snapshot of a list (None if it does not exist)."""
        row = conn.execute(
            "SELECT id, title, version FROM packing_lists WHERE id = ?", (list_id,)
        ).fetchone()
        if row is None:
            return None
        item_rows = conn.execute(
            """
            SELECT * FROM packing_list_items WHERE list_id = ?
            ORDER BY position
            """,
            (list_id,),
        ).fetchall()
        items = tuple(
            Item(
                id=r["id"],
                name=r["name"],
                category=r["category"],
                qty=r["qty"],
                packed=bool(r["packed"]),
                notes=r["notes"],
                order=r["position"],
            )
            for r in item_rows
        )
        return CanonicalSnapshot(
            entity_id=row["id"], title=row["title"], version=row["version"], items=items
        )

    def write_snapshot(self, conn: sqlite3.Connection, snapshot: CanonicalSnapshot) -> None:
        """Replace the stored state of a list with ``snapshot``."""
        conn.execute(
            "UPDATE packing_lists SET version = ?, modified_at = ? WHERE id = ?",
            (snapshot.version, utc_now_iso(), snapshot.entity_id),
        )
        conn.execute(
            "DELETE FROM packing_list_items WHERE list_id = ?", (snapshot.entity_id,)
        )
        conn.executemany(
            """
            INSERT INTO packing_list_items
                (id, list_id, name, category, qty, packed, notes, position)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    item.id,
                    snapshot.entity_id,
                    item.name,
                    item.category,
                    item.qty,
                    int(item.packed),
                    item.notes,
                    item.order,
                )
                for item in snapshot.items
            ],
        )

    def get_all_list_ids(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id FROM packing_lists ORDER BY created_at"
            ).fetchall()
        return [r["id"] for r in rows]

    # ===== Permissions =====

    def get_permission(
        self, conn: sqlite3.Connection, list_id: str, user_id: str
    ) -> Optional[PermissionLevel]:
        row = conn.execute(
            "SELECT permission_level FROM list_shares WHERE list_id = ? AND user_id = ?",
            (list_id, user_id),
        ).fetchone()
        return PermissionLevel(row["permission_level"]) if row else None

    def set_permission(
        self,
        conn: sqlite3.Connection,
        list_id: str,
        user_id: str,
        level: PermissionLevel,
    ) -> None:
        conn.execute(
            """
            INSERT INTO list_shares (list_id, user_id, permission_level)
            VALUES (?, ?, ?)
            ON CONFLICT(list_id, user_id) DO UPDATE SET
                permission_level = excluded.permission_level
            """,
            (list_id, user_id, level.value),
        )

    # ===== Applied operations =====

    def get_applied(self, conn: sqlite3.Connection, op_id: str) -> Optional[Dict[str, Any]]:
        """Look up a previously applied operation by its idempotency key."""
        row = conn.execute(
            "SELECT * FROM applied_operations WHERE op_id = ?", (op_id,)
        ).fetchone()
        if row is None:
            return None
        return {
            "op_id": row["op_id"],
            "list_id": row["list_id"],
            "requestor_id": row["requestor_id"],
            "kind": row["kind"],
            "version": row["version"],
            "snapshot": CanonicalSnapshot.from_dict(json.loads(row["snapshot"])),
            "applied_at": row["applied_at"],
        }

    def record_applied(
        self,
        conn: sqlite3.Connection,
        op_id: str,
        requestor_id: str,
        kind: str,
        snapshot: CanonicalSnapshot,
    ) -> None:
        conn.execute(
            """
            INSERT INTO applied_operations
                (op_id, list_id, requestor_id, kind, version, snapshot, applied_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                op_id,
                snapshot.entity_id,
                requestor_id,
                kind,
                snapshot.version,
                json.dumps(snapshot.to_dict()),
                utc_now_iso(),
            ),
        )
