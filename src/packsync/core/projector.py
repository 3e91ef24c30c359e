"""Optimistic projection for packsync.

Folds the last known canonical snapshot plus every still-pending queued
operation into the state the UI should render, and pushes the result to a
UI state surface. The fold uses the same ``apply_operation`` as the server,
so once every pending operation is acknowledged the canonical state equals
what the user already saw.

This module never touches the network and never blocks on I/O other than
reading the local database.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence

from .database import LocalDatabase
from .errors import ItemConflictError, ItemNotFoundError, UnsupportedOperationError
from .models import CanonicalSnapshot, Operation, ProjectedSnapshot
from .operations import apply_operation
from .queue import LocalQueue
from .validation import ValidationError

logger = logging.getLogger(__name__)

# Failures that make a pending operation unfoldable locally
_FOLD_ERRORS = (
    ItemNotFoundError,
    ItemConflictError,
    UnsupportedOperationError,
    ValidationError,
)


def project(
    canonical: CanonicalSnapshot, pending_ops: Sequence[Operation]
) -> ProjectedSnapshot:
    """Fold pending operations on top of a canonical snapshot.

    Operations are applied left to right in enqueue order. An operation
    that cannot be applied (e.g. it updates an item another editor
    removed) is skipped and reported in ``skipped_op_ids``; the server
    will classify it when it is submitted.

    Args:
        canonical: Last known authoritative snapshot
        pending_ops: Queued operations, oldest first

    Returns:
        ProjectedSnapshot for rendering
    """
    snapshot = canonical
    skipped: List[str] = []
    for op in pending_ops:
        try:
            snapshot = apply_operation(snapshot, op)
        except _FOLD_ERRORS as e:
            logger.debug(f"Projection skipped {op.op_id}: {e}")
            skipped.append(op.op_id)
    return ProjectedSnapshot(
        snapshot=snapshot,
        base_version=canonical.version,
        pending_op_ids=tuple(op.op_id for op in pending_ops),
        skipped_op_ids=tuple(skipped),
    )


class UIStateSink:
    """Write-only surface the engine pushes projected snapshots into."""

    def publish(self, projected: ProjectedSnapshot) -> None:
        raise NotImplementedError


class InMemoryUIState(UIStateSink):
    """Read-optimized cache keyed by packing list, with change listeners."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: Dict[str, ProjectedSnapshot] = {}
        self._listeners: List[Callable[[ProjectedSnapshot], None]] = []

    def publish(self, projected: ProjectedSnapshot) -> None:
        with self._lock:
            self._snapshots[projected.entity_id] = projected
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(projected)
            except Exception as e:
                logger.error(f"UI listener failed for {projected.entity_id}: {e}")

    def get(self, entity_id: str) -> Optional[ProjectedSnapshot]:
        with self._lock:
            return self._snapshots.get(entity_id)

    def subscribe(self, listener: Callable[[ProjectedSnapshot], None]) -> None:
        with self._lock:
            self._listeners.append(listener)


class LoggingUIState(UIStateSink):
    """Sink for headless use (CLI, background service): logs each update."""

    def publish(self, projected: ProjectedSnapshot) -> None:
        logger.debug(
            f"Projection {projected.entity_id}: {len(projected.items)} items, "
            f"{len(projected.pending_op_ids)} pending"
        )


class OptimisticProjector:
    """Recomputes projections from the local database and publishes them."""

    def __init__(self, db: LocalDatabase, queue: LocalQueue, sink: UIStateSink) -> None:
        """Initialize projector.

        Args:
            db: Local database holding cached canonical snapshots
            queue: Local durable queue holding pending operations
            sink: UI state surface to publish into
        """
        self.db = db
        self.queue = queue
        self.sink = sink

    def canonical(self, entity_id: str) -> CanonicalSnapshot:
        """Last known canonical snapshot, or an empty one if never fetched."""
        return self.db.get_snapshot(entity_id) or CanonicalSnapshot.empty(entity_id)

    def compute(self, entity_id: str) -> ProjectedSnapshot:
        pending = [entry.operation for entry in self.queue.list_pending(entity_id)]
        return project(self.canonical(entity_id), pending)

    def refresh(self, entity_id: str) -> ProjectedSnapshot:
        """Recompute the projection of a packing list and publish it."""
        projected = self.compute(entity_id)
        self.sink.publish(projected)
        return projected

    def store_canonical(self, snapshot: CanonicalSnapshot) -> bool:
        """Replace the cached canonical snapshot without publishing.

        A snapshot older than the cached one (a late response overtaken by a
        newer one) is ignored.

        Returns:
            True if the snapshot was stored
        """
        cached = self.db.get_snapshot(snapshot.entity_id)
        if cached is not None and snapshot.version < cached.version:
            logger.debug(
                f"Ignoring stale snapshot {snapshot.entity_id} v{snapshot.version} "
                f"(have v{cached.version})"
            )
            return False
        self.db.save_snapshot(snapshot)
        return True

    def install_canonical(self, snapshot: CanonicalSnapshot) -> ProjectedSnapshot:
        """Store a fresh canonical snapshot and publish the new projection."""
        self.store_canonical(snapshot)
        return self.refresh(snapshot.entity_id)
