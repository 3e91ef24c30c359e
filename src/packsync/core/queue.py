"""Local durable operation queue for packsync.

An ordered, persistent, per-packing-list queue of operations that have not
yet been acknowledged by the authoritative store. Entries are kept in a
per-entity sub-partition (``entity_id``, ``position``) so draining one list
never blocks iterating another.

Rules:
- enqueue is append-only; the queue never reorders entries
- dequeue removes only the head of an entity's sub-queue, after the server
  acknowledged it; anything else is a programming error (QueueError)
- payloads are never modified in place; only status/attempt bookkeeping is

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import List, Optional

from .database import LocalDatabase
from .errors import QueueError
from .models import Operation, OperationKind, QueueEntry, QueueStatus

logger = logging.getLogger(__name__)


class LocalQueue:
    """Durable FIFO of pending operations, partitioned by packing list."""

    def __init__(self, db: LocalDatabase) -> None:
        """Initialize the queue on top of the local database.

        Entries left ``in_flight`` by a crash are reverted to ``pending``:
        their outcome is unknown, and the store's idempotency makes a
        resubmission safe.

        Args:
            db: LocalDatabase instance
        """
        self.db = db
        recovered = self._recover_in_flight()
        if recovered:
            logger.info(f"Recovered {recovered} in-flight operation(s) after restart")

    def _recover_in_flight(self) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE queue_entries SET status = ? WHERE status = ?",
                (QueueStatus.PENDING.value, QueueStatus.IN_FLIGHT.value),
            )
        return cursor.rowcount

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> QueueEntry:
        # Unknown kinds are kept as raw strings so they fail closed when applied
        try:
            kind = OperationKind(row["kind"])
        except ValueError:
            kind = row["kind"]
        return QueueEntry(
            operation=Operation(
                op_id=row["op_id"],
                entity_id=row["entity_id"],
                kind=kind,
                payload=json.loads(row["payload"]),
                enqueued_at=row["enqueued_at"],
                attempt=row["attempt"],
            ),
            status=QueueStatus(row["status"]),
            position=row["position"],
        )

    def _insert(self, conn: sqlite3.Connection, op: Operation, position: int) -> None:
        kind = op.kind.value if isinstance(op.kind, OperationKind) else str(op.kind)
        try:
            conn.execute(
                """
                INSERT INTO queue_entries
                    (op_id, entity_id, position, kind, payload, enqueued_at, attempt, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.op_id,
                    op.entity_id,
                    position,
                    kind,
                    json.dumps(op.payload),
                    op.enqueued_at,
                    op.attempt,
                    QueueStatus.PENDING.value,
                ),
            )
        except sqlite3.IntegrityError:
            raise QueueError(f"Operation already queued: {op.op_id}") from None

    def enqueue(self, op: Operation) -> QueueEntry:
        """Append an operation at the tail of its packing list's sub-queue.

        Returns:
            The stored QueueEntry

        Raises:
            QueueError: If an entry with the same op_id already exists
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT MAX(position) AS last FROM queue_entries WHERE entity_id = ?",
                (op.entity_id,),
            ).fetchone()
            position = (row["last"] + 1) if row["last"] is not None else 0
            self._insert(conn, op, position)
        logger.debug(f"Enqueued {op.kind} {op.op_id} for {op.entity_id} at {position}")
        return QueueEntry(operation=op, position=position)

    def peek_oldest(self, entity_id: str) -> Optional[QueueEntry]:
        """Get the head of a packing list's sub-queue without changing it."""
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM queue_entries WHERE entity_id = ?
                ORDER BY position LIMIT 1
                """,
                (entity_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def claim_oldest(self, entity_id: str) -> Optional[QueueEntry]:
        """Atomically mark the head entry in-flight and return it.

        Returns:
            The claimed entry, or None if the sub-queue is empty
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM queue_entries WHERE entity_id = ?
                ORDER BY position LIMIT 1
                """,
                (entity_id,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE queue_entries SET status = ? WHERE op_id = ?",
                (QueueStatus.IN_FLIGHT.value, row["op_id"]),
            )
        return self._row_to_entry(row).with_status(QueueStatus.IN_FLIGHT)

    def list_pending(self, entity_id: str) -> List[QueueEntry]:
        """List every queued entry of a packing list in enqueue order."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM queue_entries WHERE entity_id = ? ORDER BY position",
                (entity_id,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def list_all_entities(self) -> List[str]:
        """List packing lists that have queued operations."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT DISTINCT entity_id FROM queue_entries ORDER BY entity_id"
            ).fetchall()
        return [r["entity_id"] for r in rows]

    def count(self, entity_id: Optional[str] = None) -> int:
        with self.db.transaction() as conn:
            if entity_id is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM queue_entries").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM queue_entries WHERE entity_id = ?",
                    (entity_id,),
                ).fetchone()
        return row["n"]

    def get(self, op_id: str) -> Optional[QueueEntry]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM queue_entries WHERE op_id = ?", (op_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def _head_row(self, conn: sqlite3.Connection, op_id: str) -> sqlite3.Row:
        """Fetch an entry and verify it is the head of its sub-queue."""
        row = conn.execute(
            "SELECT * FROM queue_entries WHERE op_id = ?", (op_id,)
        ).fetchone()
        if row is None:
            raise QueueError(f"Operation not queued: {op_id}")
        head = conn.execute(
            "SELECT op_id FROM queue_entries WHERE entity_id = ? ORDER BY position LIMIT 1",
            (row["entity_id"],),
        ).fetchone()
        if head["op_id"] != op_id:
            raise QueueError(
                f"Operation {op_id} is not the oldest entry for {row['entity_id']}"
            )
        return row

    def dequeue(self, op_id: str) -> QueueEntry:
        """Remove an acknowledged (or terminally rejected) head entry.

        Raises:
            QueueError: If op_id is unknown or not the head of its sub-queue
        """
        with self.db.transaction() as conn:
            row = self._head_row(conn, op_id)
            conn.execute("DELETE FROM queue_entries WHERE op_id = ?", (op_id,))
        logger.debug(f"Dequeued {op_id}")
        return self._row_to_entry(row)

    def record_failure(self, op_id: str) -> int:
        """Count a failed submission and return the entry to pending.

        Returns:
            The new attempt count

        Raises:
            QueueError: If op_id is not queued
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE queue_entries SET attempt = attempt + 1, status = ?
                WHERE op_id = ?
                """,
                (QueueStatus.PENDING.value, op_id),
            )
            if cursor.rowcount == 0:
                raise QueueError(f"Operation not queued: {op_id}")
            row = conn.execute(
                "SELECT attempt FROM queue_entries WHERE op_id = ?", (op_id,)
            ).fetchone()
        return row["attempt"]

    def release(self, op_id: str) -> None:
        """Return an in-flight entry to pending without counting a failure."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE queue_entries SET status = ? WHERE op_id = ?",
                (QueueStatus.PENDING.value, op_id),
            )

    def cancel(self, op_id: str) -> QueueEntry:
        """Remove a not-yet-submitted entry on explicit user request (undo).

        An entry that was submitted at least once (attempt > 0) may already
        be applied on the store even though no response arrived, so it can
        no longer be withdrawn.

        Raises:
            QueueError: If op_id is unknown, in flight, or already submitted
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM queue_entries WHERE op_id = ?", (op_id,)
            ).fetchone()
            if row is None:
                raise QueueError(f"Operation not queued: {op_id}")
            if row["status"] == QueueStatus.IN_FLIGHT.value:
                raise QueueError(f"Operation {op_id} is being submitted and cannot be undone")
            if row["attempt"] > 0:
                raise QueueError(
                    f"Operation {op_id} was already sent to the store and cannot be undone"
                )
            conn.execute("DELETE FROM queue_entries WHERE op_id = ?", (op_id,))
        logger.info(f"Cancelled queued operation {op_id}")
        return self._row_to_entry(row)

    def replace_head(
        self, entity_id: str, op_id: str, new_op: Optional[Operation] = None
    ) -> None:
        """Close the head entry and optionally put a new operation in its place.

        Used when resolving a conflict: the new operation runs before every
        other still-pending operation of the packing list.

        Raises:
            QueueError: If op_id is not the head of entity_id's sub-queue
        """
        with self.db.transaction() as conn:
            row = self._head_row(conn, op_id)
            if row["entity_id"] != entity_id:
                raise QueueError(f"Operation {op_id} does not belong to {entity_id}")
            conn.execute("DELETE FROM queue_entries WHERE op_id = ?", (op_id,))
            if new_op is not None:
                if new_op.entity_id != entity_id:
                    raise QueueError(f"Operation {new_op.op_id} does not belong to {entity_id}")
                self._insert(conn, new_op, row["position"])
        logger.debug(f"Replaced head {op_id} of {entity_id} with {new_op.op_id if new_op else None}")

    def discard_entity(self, entity_id: str) -> int:
        """Drop every queued entry of a packing list.

        Returns:
            Number of entries removed
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM queue_entries WHERE entity_id = ?", (entity_id,)
            )
        logger.info(f"Discarded {cursor.rowcount} queued operation(s) for {entity_id}")
        return cursor.rowcount
