"""Data models for packsync.

This module defines immutable dataclasses representing the core entities:
Item, Operation, CanonicalSnapshot, ProjectedSnapshot, QueueEntry,
ConflictRecord and Notice.

All IDs are UUID7 hex strings (32 characters, no hyphens).
Timestamps are ISO-8601 strings in UTC.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class OperationKind(Enum):
    """The closed set of mutations that can be applied to a packing list."""

    ADD_ITEM = "add_item"
    UPDATE_ITEM = "update_item"
    REMOVE_ITEM = "remove_item"
    REORDER_ITEMS = "reorder_items"


class QueueStatus(Enum):
    """Bookkeeping status of a queued operation."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class PermissionLevel(Enum):
    """Access level a user holds on a packing list."""

    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"

    @property
    def can_write(self) -> bool:
        return self in (PermissionLevel.OWNER, PermissionLevel.EDITOR)


class NoticeKind(Enum):
    """Kinds of user-visible notifications emitted by the sync engine."""

    REJECTED = "rejected"
    STUCK_OFFLINE = "stuck_offline"
    CONFLICT = "conflict"
    RESOLVED = "resolved"
    SYNCED = "synced"


# Fields of an item that an update_item operation may change
MUTABLE_ITEM_FIELDS = frozenset(["name", "category", "qty", "packed", "notes"])


@dataclass(frozen=True)
class Item:
    """A single packing-list entry.

    Attributes:
        id: Unique identifier for the item (UUID7 hex)
        name: Display name (never empty)
        category: Grouping category, e.g. "clothes"
        qty: How many to pack (positive)
        packed: Whether the item has been packed
        notes: Free-form notes (None if absent)
        order: Position of the item within its list
    """

    id: str
    name: str
    category: str = "general"
    qty: int = 1
    packed: bool = False
    notes: Optional[str] = None
    order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "qty": self.qty,
            "packed": self.packed,
            "notes": self.notes,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        return cls(
            id=data["id"],
            name=data["name"],
            category=data.get("category", "general"),
            qty=data.get("qty", 1),
            packed=data.get("packed", False),
            notes=data.get("notes"),
            order=data.get("order", 0),
        )


@dataclass(frozen=True)
class Operation:
    """A single, self-contained mutation request with a stable identity.

    Attributes:
        op_id: Idempotency key (UUID7 hex), generated at creation time
        entity_id: ID of the packing list being mutated
        kind: Which mutation this is
        payload: Kind-specific data, never requiring external lookups
        enqueued_at: When the operation was created (ISO format)
        attempt: Number of failed submissions so far
    """

    op_id: str
    entity_id: str
    kind: OperationKind
    payload: Dict[str, Any]
    enqueued_at: str
    attempt: int = 0


@dataclass(frozen=True)
class CanonicalSnapshot:
    """Last-known authoritative state of a packing list.

    Replaced wholesale whenever a fresh server response arrives, never
    mutated in place. ``version`` advances by one for every applied
    operation.
    """

    entity_id: str
    items: Tuple[Item, ...] = ()
    version: int = 0
    title: str = ""

    def ordered_items(self) -> List[Item]:
        return sorted(self.items, key=lambda i: i.order)

    def find_item(self, item_id: str) -> Optional[Item]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def item_ids(self) -> List[str]:
        return [i.id for i in self.ordered_items()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "title": self.title,
            "version": self.version,
            "items": [i.to_dict() for i in self.ordered_items()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalSnapshot":
        return cls(
            entity_id=data["entity_id"],
            title=data.get("title", ""),
            version=int(data.get("version", 0)),
            items=tuple(Item.from_dict(i) for i in data.get("items", [])),
        )

    @classmethod
    def empty(cls, entity_id: str) -> "CanonicalSnapshot":
        return cls(entity_id=entity_id)


@dataclass(frozen=True)
class ProjectedSnapshot:
    """Canonical state with all pending operations folded on top.

    Derived, never persisted. ``skipped_op_ids`` lists pending operations
    that could not be folded locally; the server decides their fate.
    """

    snapshot: CanonicalSnapshot
    base_version: int
    pending_op_ids: Tuple[str, ...] = ()
    skipped_op_ids: Tuple[str, ...] = ()

    @property
    def entity_id(self) -> str:
        return self.snapshot.entity_id

    @property
    def items(self) -> List[Item]:
        return self.snapshot.ordered_items()

    @property
    def has_pending(self) -> bool:
        return bool(self.pending_op_ids)

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot.to_dict()
        data["base_version"] = self.base_version
        data["pending_op_ids"] = list(self.pending_op_ids)
        data["skipped_op_ids"] = list(self.skipped_op_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectedSnapshot":
        return cls(
            snapshot=CanonicalSnapshot.from_dict(data),
            base_version=int(data.get("base_version", 0)),
            pending_op_ids=tuple(data.get("pending_op_ids", [])),
            skipped_op_ids=tuple(data.get("skipped_op_ids", [])),
        )


@dataclass(frozen=True)
class QueueEntry:
    """An operation plus queue bookkeeping."""

    operation: Operation
    status: QueueStatus = QueueStatus.PENDING
    position: int = 0

    @property
    def op_id(self) -> str:
        return self.operation.op_id

    @property
    def entity_id(self) -> str:
        return self.operation.entity_id

    def with_status(self, status: QueueStatus) -> "QueueEntry":
        return replace(self, status=status)


@dataclass(frozen=True)
class ConflictRecord:
    """A detected divergence between local and remote state of a list.

    Attributes:
        entity_id: Packing list the conflict belongs to
        local_data: What the user saw when the conflict was detected
        remote_data: Authoritative state reported with the conflict
        offending_op_id: Queued operation the server refused
        created_at: When the conflict was detected (ISO format)
        message: Server explanation of the refusal
    """

    entity_id: str
    local_data: ProjectedSnapshot
    remote_data: CanonicalSnapshot
    offending_op_id: str
    created_at: str
    message: str = ""


@dataclass(frozen=True)
class Notice:
    """A user-visible notification."""

    kind: NoticeKind
    entity_id: str
    message: str
    op_id: Optional[str] = None


@dataclass
class DrainResult:
    """Summary of one drain pass over an entity's queue."""

    entity_id: str
    applied: int = 0
    rejected: int = 0
    conflict: bool = False
    transient_error: Optional[str] = None
    skipped: bool = False  # Drain did not run (offline, paused, backing off)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.conflict and self.transient_error is None and not self.errors
