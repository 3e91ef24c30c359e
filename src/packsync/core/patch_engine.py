"""Patch application engine for the authoritative packsync server.

Applies exactly one operation at a time to the canonical record of a
packing list and returns either the new canonical state or a typed
failure. Failures are never raised to the caller; each is mapped to an
ApplyStatus:

- not_found: the packing list does not exist
- forbidden: the requestor is not the owner or an editor
- invalid: malformed payload, unsupported kind, or op_id reused elsewhere
- conflict: stale precondition; carries the current canonical snapshot
- applied: new canonical snapshot (``duplicate`` set on idempotent replay)

Applications to the same packing list are serialized by a per-list lock
and a SQLite write transaction.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Union

from uuid6 import uuid7

from .errors import (
    ApplyOutcome,
    ApplyStatus,
    ForbiddenError,
    ItemConflictError,
    ItemNotFoundError,
    UnknownEntityError,
    UnsupportedOperationError,
)
from .models import CanonicalSnapshot, Item, Operation, OperationKind, PermissionLevel
from .operations import apply_operation, operation_from_dict, validate_payload
from .store import CanonicalStore
from .validation import (
    ValidationError,
    validate_entity_id,
    validate_new_item,
    validate_requestor_id,
    validate_title,
)

logger = logging.getLogger(__name__)


class PatchEngine:
    """Server-side authority for packing-list state."""

    def __init__(self, store: CanonicalStore) -> None:
        """Initialize patch engine.

        Args:
            store: Canonical storage
        """
        self.store = store
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _entity_lock(self, entity_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    def _decode(self, entity_id: str, op: Union[Operation, Dict[str, Any]]) -> Operation:
        """Validate an operation received from a client.

        Raises:
            ValidationError, UnsupportedOperationError
        """
        if isinstance(op, Operation):
            if not isinstance(op.kind, OperationKind):
                raise UnsupportedOperationError(op.kind)
            decoded = replace(op, payload=validate_payload(op.kind, op.payload))
        else:
            data = dict(op)
            data.setdefault("entity_id", entity_id)
            decoded = operation_from_dict(data)
        if decoded.entity_id != entity_id:
            raise ValidationError(
                "entity_id", f"operation targets {decoded.entity_id}, not {entity_id}"
            )
        return decoded

    def apply(
        self,
        entity_id: str,
        op: Union[Operation, Dict[str, Any]],
        requestor: str,
    ) -> ApplyOutcome:
        """Apply one operation atomically.

        Args:
            entity_id: Packing list ID
            op: Operation (or its wire dict)
            requestor: Identity of the user submitting the operation

        Returns:
            ApplyOutcome describing the result
        """
        try:
            entity_id = validate_entity_id(entity_id)
            requestor = validate_requestor_id(requestor)
            operation = self._decode(entity_id, op)
        except (ValidationError, UnsupportedOperationError) as e:
            logger.warning(f"Rejected invalid operation for {entity_id}: {e}")
            return ApplyOutcome(status=ApplyStatus.INVALID, error=str(e))

        with self._entity_lock(entity_id), self.store.transaction() as conn:
            if not self.store.list_exists(conn, entity_id):
                return ApplyOutcome(
                    status=ApplyStatus.NOT_FOUND,
                    error=f"Packing list not found: {entity_id}",
                )

            level = self.store.get_permission(conn, entity_id, requestor)
            if level is None or not level.can_write:
                logger.warning(f"Forbidden: {requestor} tried to modify {entity_id}")
                return ApplyOutcome(
                    status=ApplyStatus.FORBIDDEN,
                    error=f"{requestor} may not modify {entity_id}",
                )

            previous = self.store.get_applied(conn, operation.op_id)
            if previous is not None:
                if previous["list_id"] != entity_id:
                    return ApplyOutcome(
                        status=ApplyStatus.INVALID,
                        error=f"op_id {operation.op_id} was used for another list",
                    )
                logger.info(f"Duplicate delivery of {operation.op_id}, returning stored result")
                return ApplyOutcome(
                    status=ApplyStatus.APPLIED,
                    snapshot=previous["snapshot"],
                    duplicate=True,
                )

            current = self.store.load_snapshot(conn, entity_id)
            try:
                updated = apply_operation(current, operation)
            except (ItemNotFoundError, ItemConflictError) as e:
                logger.info(f"Conflict applying {operation.op_id} to {entity_id}: {e}")
                return ApplyOutcome(
                    status=ApplyStatus.CONFLICT, snapshot=current, error=str(e)
                )

            self.store.write_snapshot(conn, updated)
            self.store.record_applied(
                conn, operation.op_id, requestor, operation.kind.value, updated
            )

        logger.info(
            f"Applied {operation.kind.value} {operation.op_id} to {entity_id} "
            f"(v{updated.version}) for {requestor}"
        )
        return ApplyOutcome(status=ApplyStatus.APPLIED, snapshot=updated)

    # ===== List administration =====

    def create_list(
        self,
        title: str,
        owner_id: str,
        items: Optional[Iterable[Dict[str, Any]]] = None,
        list_id: Optional[str] = None,
    ) -> CanonicalSnapshot:
        """Create a packing list owned by ``owner_id``.

        Args:
            title: List title
            owner_id: Identity of the owner
            items: Initial items (name, category, qty, packed, notes)
            list_id: Explicit list ID (generated if omitted)

        Returns:
            The canonical snapshot of the new list (version 0)

        Raises:
            ValidationError: If any argument is invalid
        """
        title = validate_title(title)
        owner_id = validate_requestor_id(owner_id, "owner_id")
        list_id = validate_entity_id(list_id) if list_id else uuid7().hex

        new_items: List[Item] = []
        for index, raw in enumerate(items or []):
            data = dict(raw)
            data.setdefault("id", uuid7().hex)
            fields = validate_new_item(data)
            new_items.append(Item(order=index, **fields))

        snapshot = CanonicalSnapshot(
            entity_id=list_id, title=title, version=0, items=tuple(new_items)
        )
        with self.store.transaction() as conn:
            if self.store.list_exists(conn, list_id):
                raise ValidationError("list_id", "already exists")
            self.store.insert_list(conn, list_id, title, owner_id)
            self.store.write_snapshot(conn, snapshot)
        logger.info(f"Created packing list {list_id} '{title}' for {owner_id}")
        return snapshot

    def get_snapshot(self, entity_id: str, requestor: str) -> CanonicalSnapshot:
        """Read the canonical snapshot (any permission level may read).

        Raises:
            UnknownEntityError: If the list does not exist
            ForbiddenError: If the requestor has no access
        """
        entity_id = validate_entity_id(entity_id)
        requestor = validate_requestor_id(requestor)
        with self.store.transaction() as conn:
            snapshot = self.store.load_snapshot(conn, entity_id)
            if snapshot is None:
                raise UnknownEntityError(entity_id)
            if self.store.get_permission(conn, entity_id, requestor) is None:
                raise ForbiddenError(entity_id, requestor, "read")
        return snapshot

    def share_list(
        self,
        entity_id: str,
        requestor: str,
        user_id: str,
        level: Union[PermissionLevel, str],
    ) -> None:
        """Grant ``user_id`` editor or viewer access; only the owner may share.

        Raises:
            UnknownEntityError, ForbiddenError, ValidationError
        """
        entity_id = validate_entity_id(entity_id)
        requestor = validate_requestor_id(requestor)
        user_id = validate_requestor_id(user_id, "user_id")
        try:
            level = PermissionLevel(level)
        except ValueError:
            raise ValidationError("permission_level", f"unknown level: {level}") from None
        if level == PermissionLevel.OWNER:
            raise ValidationError("permission_level", "ownership cannot be shared")

        with self.store.transaction() as conn:
            if not self.store.list_exists(conn, entity_id):
                raise UnknownEntityError(entity_id)
            if self.store.get_permission(conn, entity_id, requestor) != PermissionLevel.OWNER:
                raise ForbiddenError(entity_id, requestor, "share")
            if user_id == requestor:
                raise ValidationError("user_id", "owner cannot change their own access")
            self.store.set_permission(conn, entity_id, user_id, level)
        logger.info(f"Shared {entity_id} with {user_id} as {level.value}")
