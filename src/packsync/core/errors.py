"""Error taxonomy for packsync.

Every failure that reaches the sync driver is classified into exactly one
FailureKind:

- TRANSIENT: network/timeout. The operation stays queued and is retried.
- PERMANENT: validation/forbidden/not found. The operation is dropped and
  the user is notified; the rest of the queue continues.
- CONFLICT: stale precondition. The entity is paused until resolved.
- DUPLICATE_NOOP: idempotent replay of an already applied operation.
  Treated as success.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .models import CanonicalSnapshot


class FailureKind(Enum):
    """Classification of a failed (or duplicate) submission."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFLICT = "conflict"
    DUPLICATE_NOOP = "duplicate_noop"


class PackSyncError(Exception):
    """Base class for packsync errors."""


class ItemNotFoundError(PackSyncError):
    """An operation referenced an item the snapshot does not contain."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class ItemConflictError(PackSyncError):
    """An add_item operation collided with an existing item id."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item already exists: {item_id}")


class UnsupportedOperationError(PackSyncError):
    """An operation kind outside the supported set."""

    def __init__(self, kind: Any) -> None:
        self.kind = kind
        super().__init__(f"Unsupported operation: {kind}")


class UnknownEntityError(PackSyncError):
    """A packing list that does not exist."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Packing list not found: {entity_id}")


class ForbiddenError(PackSyncError):
    """The requestor lacks the permission level an action needs."""

    def __init__(self, entity_id: str, requestor: str, action: str = "modify") -> None:
        self.entity_id = entity_id
        self.requestor = requestor
        super().__init__(f"{requestor} is not allowed to {action} {entity_id}")


class QueueError(PackSyncError):
    """Misuse of the local durable queue (a programming error)."""


class TransientError(PackSyncError):
    """The authoritative store could not be reached or did not answer in time."""


class ApplyStatus(Enum):
    """Status values returned by the authoritative store apply endpoint."""

    APPLIED = "applied"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID = "invalid"


# HTTP status code for each apply status
HTTP_STATUS_CODES = {
    ApplyStatus.APPLIED: 200,
    ApplyStatus.FORBIDDEN: 403,
    ApplyStatus.NOT_FOUND: 404,
    ApplyStatus.CONFLICT: 409,
    ApplyStatus.INVALID: 422,
}


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of applying one operation on the authoritative store.

    Attributes:
        status: What happened
        snapshot: New canonical state (applied) or current state (conflict)
        error: Human-readable reason for a refusal
        duplicate: True if the op_id had already been applied
    """

    status: ApplyStatus
    snapshot: Optional[CanonicalSnapshot] = None
    error: Optional[str] = None
    duplicate: bool = False

    @property
    def failure_kind(self) -> Optional[FailureKind]:
        """Classify the outcome; None means a fresh successful application."""
        if self.status == ApplyStatus.APPLIED:
            return FailureKind.DUPLICATE_NOOP if self.duplicate else None
        if self.status == ApplyStatus.CONFLICT:
            return FailureKind.CONFLICT
        return FailureKind.PERMANENT

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_CODES[self.status]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.snapshot is not None:
            data["snapshot"] = self.snapshot.to_dict()
        if self.error:
            data["error"] = self.error
        if self.status == ApplyStatus.APPLIED:
            data["duplicate"] = self.duplicate
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplyOutcome":
        snapshot_data = data.get("snapshot")
        return cls(
            status=ApplyStatus(data["status"]),
            snapshot=CanonicalSnapshot.from_dict(snapshot_data) if snapshot_data else None,
            error=data.get("error"),
            duplicate=bool(data.get("duplicate", False)),
        )
