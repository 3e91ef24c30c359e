"""Conflict mediation for packsync.

When the authoritative store refuses an operation because its precondition
is stale, the sync driver pauses the packing list and hands the
ConflictRecord here. Nothing is resolved automatically; the user (through a
prompt callable, the CLI, or an API) picks one of three resolutions:

- accept_remote: drop the offending operation and everything queued behind
  it, adopt the server state
- accept_local: rebase the offending operation onto the server state and
  resubmit it first
- manual_merge: replace the offending operation with a caller-built one

After any resolution the conflict record is deleted, the server state
becomes the canonical snapshot and draining resumes.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .database import LocalDatabase
from .driver import SyncDriver, log_notice
from .errors import QueueError
from .models import (
    CanonicalSnapshot,
    ConflictRecord,
    Item,
    Notice,
    NoticeKind,
    Operation,
    OperationKind,
    ProjectedSnapshot,
    MUTABLE_ITEM_FIELDS,
)
from .operations import new_operation
from .projector import OptimisticProjector
from .queue import LocalQueue
from .validation import ValidationError

logger = logging.getLogger(__name__)


class ResolutionKind(Enum):
    """How the user chose to settle a conflict."""

    ACCEPT_REMOTE = "accept_remote"
    ACCEPT_LOCAL = "accept_local"
    MANUAL_MERGE = "manual_merge"


@dataclass(frozen=True)
class Resolution:
    """A user's decision on a conflict.

    For MANUAL_MERGE, ``merge_kind`` and ``merge_payload`` describe the
    operation that replaces the offending one.
    """

    kind: ResolutionKind
    merge_kind: Optional[OperationKind] = None
    merge_payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accept_remote(cls) -> "Resolution":
        return cls(ResolutionKind.ACCEPT_REMOTE)

    @classmethod
    def accept_local(cls) -> "Resolution":
        return cls(ResolutionKind.ACCEPT_LOCAL)

    @classmethod
    def manual_merge(cls, kind: Any, payload: Dict[str, Any]) -> "Resolution":
        return cls(
            ResolutionKind.MANUAL_MERGE,
            merge_kind=OperationKind(kind),
            merge_payload=dict(payload),
        )


@dataclass(frozen=True)
class ItemDiff:
    """Difference between the local and remote version of one item.

    ``status`` is "local_only", "remote_only" or "changed"; for changed
    items ``fields`` maps each differing field to (local, remote).
    """

    item_id: str
    name: str
    status: str
    fields: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "status": self.status,
            "fields": {k: list(v) for k, v in self.fields.items()},
        }


_DIFF_FIELDS = ("name", "category", "qty", "packed", "notes", "order")


def diff_snapshots(
    local: ProjectedSnapshot, remote: CanonicalSnapshot
) -> List[ItemDiff]:
    """List per-item differences between what the user saw and the server.

    Local items come first in local order, followed by items only the
    server has.
    """
    diffs: List[ItemDiff] = []
    remote_by_id = {item.id: item for item in remote.items}
    seen = set()

    for item in local.items:
        seen.add(item.id)
        theirs = remote_by_id.get(item.id)
        if theirs is None:
            diffs.append(ItemDiff(item.id, item.name, "local_only"))
            continue
        changed = {
            name: (getattr(item, name), getattr(theirs, name))
            for name in _DIFF_FIELDS
            if getattr(item, name) != getattr(theirs, name)
        }
        if changed:
            diffs.append(ItemDiff(item.id, item.name, "changed", changed))

    for item in remote.ordered_items():
        if item.id not in seen:
            diffs.append(ItemDiff(item.id, item.name, "remote_only"))
    return diffs


def _item_payload(item: Item) -> Dict[str, Any]:
    data = item.to_dict()
    del data["order"]
    return data


def rebase_operation(
    op: Operation, remote: CanonicalSnapshot, local: ProjectedSnapshot
) -> Operation:
    """Rewrite an operation so it applies cleanly on top of ``remote``.

    The result always carries a new op_id: the original one is recorded as
    refused by the server.

    - add_item: same item; if the id already exists remotely, the local
      fields are written over it instead
    - update_item: same fields; if the item was removed remotely, it is
      recreated from the local version with the fields applied
    - remove_item: unchanged
    - reorder_items: ordering restricted to ids the server still has

    Raises:
        ValidationError: If the item cannot be recreated (no local copy)
    """
    kind = op.kind
    payload = op.payload

    if kind == OperationKind.ADD_ITEM:
        item = payload["item"]
        if remote.find_item(item["id"]) is not None:
            fields = {k: v for k, v in item.items() if k in MUTABLE_ITEM_FIELDS}
            return new_operation(
                op.entity_id,
                OperationKind.UPDATE_ITEM,
                {"item_id": item["id"], "fields": fields},
            )
        return new_operation(op.entity_id, kind, payload)

    if kind == OperationKind.UPDATE_ITEM:
        item_id = payload["item_id"]
        if remote.find_item(item_id) is not None:
            return new_operation(op.entity_id, kind, payload)
        mine = local.snapshot.find_item(item_id)
        base = _item_payload(mine) if mine is not None else {"id": item_id}
        base.update(payload["fields"])
        if "name" not in base:
            raise ValidationError(
                "item_id", f"item {item_id} was removed and no local copy exists"
            )
        return new_operation(op.entity_id, OperationKind.ADD_ITEM, {"item": base})

    if kind == OperationKind.REMOVE_ITEM:
        return new_operation(op.entity_id, kind, payload)

    if kind == OperationKind.REORDER_ITEMS:
        present = set(remote.item_ids())
        item_ids = [i for i in payload["item_ids"] if i in present]
        return new_operation(op.entity_id, kind, {"item_ids": item_ids})

    return new_operation(op.entity_id, kind, payload)


class ConflictMediator:
    """Presents conflicts to the user and applies their decisions."""

    def __init__(
        self,
        driver: SyncDriver,
        db: LocalDatabase,
        queue: LocalQueue,
        projector: OptimisticProjector,
        prompt: Optional[Callable[[ConflictRecord], Optional[Resolution]]] = None,
        notify: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        """Initialize mediator and register it with the driver.

        Args:
            driver: Sync driver that pauses entities on conflict
            db: Local database holding conflict records
            queue: Local durable queue
            projector: Projector to refresh after resolution
            prompt: Called with each new conflict; returns a Resolution, or
                None to decide later via resolve()
            notify: Callback for user-visible notices
        """
        self.driver = driver
        self.db = db
        self.queue = queue
        self.projector = projector
        self.prompt = prompt
        self.notify = notify or log_notice
        self._lock = threading.Lock()

        driver.on_conflict = self.present

    def present(self, record: ConflictRecord) -> None:
        """Show a conflict to the user; resolve it at once if they answer."""
        if self.prompt is None:
            logger.info(f"Conflict on {record.entity_id} awaiting resolution")
            return
        resolution = self.prompt(record)
        if resolution is None:
            logger.info(f"Resolution of {record.entity_id} deferred")
            return
        self.resolve(record.entity_id, resolution)

    def pending(self) -> List[ConflictRecord]:
        return self.db.list_conflicts()

    def get(self, entity_id: str) -> Optional[ConflictRecord]:
        return self.db.get_conflict(entity_id)

    def resolve(self, entity_id: str, resolution: Resolution) -> ProjectedSnapshot:
        """Settle the conflict of a packing list and resume syncing it.

        Args:
            entity_id: Packing list in CONFLICT_PAUSED
            resolution: The user's decision

        Returns:
            The projection after resolution

        Raises:
            ValidationError: If there is no conflict, or the merge operation
                is invalid
        """
        with self._lock:
            record = self.db.get_conflict(entity_id)
            if record is None:
                raise ValidationError("entity_id", f"no unresolved conflict for {entity_id}")

            if resolution.kind == ResolutionKind.ACCEPT_REMOTE:
                dropped = self.queue.discard_entity(entity_id)
                message = f"Kept server version; discarded {dropped} local change(s)"
            else:
                entry = self.queue.get(record.offending_op_id)
                if entry is None:
                    raise QueueError(
                        f"Conflicting operation {record.offending_op_id} is no longer queued"
                    )
                if resolution.kind == ResolutionKind.ACCEPT_LOCAL:
                    new_op = rebase_operation(
                        entry.operation, record.remote_data, record.local_data
                    )
                    message = "Kept your version; change will be resubmitted"
                else:
                    if resolution.merge_kind is None:
                        raise ValidationError("kind", "manual merge needs an operation kind")
                    new_op = new_operation(
                        entity_id, resolution.merge_kind, resolution.merge_payload
                    )
                    message = "Merged change will be submitted"
                self.queue.replace_head(entity_id, record.offending_op_id, new_op)

            self.projector.store_canonical(record.remote_data)
            self.db.delete_conflict(entity_id)
            projected = self.projector.refresh(entity_id)

        logger.info(f"Resolved conflict on {entity_id}: {resolution.kind.value}")
        self.notify(Notice(
            kind=NoticeKind.RESOLVED,
            entity_id=entity_id,
            op_id=record.offending_op_id,
            message=message,
        ))
        self.driver.resume(entity_id)
        return projected
