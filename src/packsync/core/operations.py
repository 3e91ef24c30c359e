"""Operation model for packsync.

Defines how each kind of mutation is built, validated, serialized and
applied to a snapshot. ``apply_operation`` is the single deterministic
transform shared by the optimistic projector (client) and the patch
engine (server), so replaying the same operations in the same order
always yields the same snapshot on both sides.

Operation kinds and payloads:
    add_item       {"item": {"id", "name", "category", "qty", "packed", "notes"}}
    update_item    {"item_id": ..., "fields": {subset of item fields}}
    remove_item    {"item_id": ...}
    reorder_items  {"item_ids": [...full ordering...]}

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from uuid6 import uuid7

from .errors import ItemConflictError, ItemNotFoundError, UnsupportedOperationError
from .models import CanonicalSnapshot, Item, Operation, OperationKind
from .timestamp_utils import utc_now_iso
from .validation import (
    ValidationError,
    validate_entity_id,
    validate_item_fields,
    validate_item_ids,
    validate_new_item,
    validate_uuid_hex,
)

logger = logging.getLogger(__name__)


def parse_kind(value: Any) -> OperationKind:
    """Convert a wire value into an OperationKind.

    Raises:
        UnsupportedOperationError: For anything outside the closed set
    """
    if isinstance(value, OperationKind):
        return value
    try:
        return OperationKind(value)
    except ValueError:
        raise UnsupportedOperationError(value) from None


def validate_payload(kind: OperationKind, payload: Any) -> Dict[str, Any]:
    """Validate and normalize a payload for the given operation kind.

    Returns:
        Normalized payload dict

    Raises:
        ValidationError: If the payload does not match the kind's shape
        UnsupportedOperationError: If the kind is unknown
    """
    if not isinstance(payload, dict):
        raise ValidationError("payload", "must be an object")

    if kind == OperationKind.ADD_ITEM:
        return {"item": validate_new_item(payload.get("item"))}
    if kind == OperationKind.UPDATE_ITEM:
        return {
            "item_id": validate_uuid_hex(payload.get("item_id"), "item_id"),
            "fields": validate_item_fields(payload.get("fields")),
        }
    if kind == OperationKind.REMOVE_ITEM:
        return {"item_id": validate_uuid_hex(payload.get("item_id"), "item_id")}
    if kind == OperationKind.REORDER_ITEMS:
        return {"item_ids": validate_item_ids(payload.get("item_ids"))}
    raise UnsupportedOperationError(kind)


def new_operation(
    entity_id: str,
    kind: Any,
    payload: Dict[str, Any],
    op_id: Optional[str] = None,
) -> Operation:
    """Create a validated operation with a fresh UUID7 op_id.

    Args:
        entity_id: Packing list ID
        kind: OperationKind or its string value
        payload: Kind-specific payload
        op_id: Explicit op_id (only for decoding; new operations omit it)

    Returns:
        New Operation with attempt=0
    """
    op_kind = parse_kind(kind)
    return Operation(
        op_id=validate_uuid_hex(op_id, "op_id") if op_id else uuid7().hex,
        entity_id=validate_entity_id(entity_id),
        kind=op_kind,
        payload=validate_payload(op_kind, payload),
        enqueued_at=utc_now_iso(),
    )


def new_add_item(
    entity_id: str,
    name: str,
    category: str = "general",
    qty: int = 1,
    packed: bool = False,
    notes: Optional[str] = None,
) -> Operation:
    """Build an add_item operation; the item ID is generated here."""
    item = {
        "id": uuid7().hex,
        "name": name,
        "category": category,
        "qty": qty,
        "packed": packed,
        "notes": notes,
    }
    return new_operation(entity_id, OperationKind.ADD_ITEM, {"item": item})


def new_update_item(entity_id: str, item_id: str, fields: Dict[str, Any]) -> Operation:
    return new_operation(
        entity_id, OperationKind.UPDATE_ITEM, {"item_id": item_id, "fields": fields}
    )


def new_remove_item(entity_id: str, item_id: str) -> Operation:
    return new_operation(entity_id, OperationKind.REMOVE_ITEM, {"item_id": item_id})


def new_reorder_items(entity_id: str, item_ids: List[str]) -> Operation:
    return new_operation(
        entity_id, OperationKind.REORDER_ITEMS, {"item_ids": list(item_ids)}
    )


def operation_to_dict(op: Operation) -> Dict[str, Any]:
    """Serialize an operation for the wire and for persistence."""
    return {
        "op_id": op.op_id,
        "entity_id": op.entity_id,
        "kind": op.kind.value,
        "payload": op.payload,
        "enqueued_at": op.enqueued_at,
        "attempt": op.attempt,
    }


def operation_from_dict(data: Dict[str, Any]) -> Operation:
    """Decode and validate an operation.

    Raises:
        ValidationError: If a field is missing or malformed
        UnsupportedOperationError: If the kind is unknown
    """
    if not isinstance(data, dict):
        raise ValidationError("operation", "must be an object")
    for key in ("op_id", "entity_id", "kind", "payload"):
        if key not in data:
            raise ValidationError(key, "is required")
    kind = parse_kind(data["kind"])
    return Operation(
        op_id=validate_uuid_hex(data["op_id"], "op_id"),
        entity_id=validate_entity_id(data["entity_id"]),
        kind=kind,
        payload=validate_payload(kind, data["payload"]),
        enqueued_at=data.get("enqueued_at") or utc_now_iso(),
        attempt=int(data.get("attempt", 0)),
    )


# ===== Deterministic transform =====


def _apply_add(snapshot: CanonicalSnapshot, payload: Dict[str, Any]) -> List[Item]:
    fields = payload["item"]
    if snapshot.find_item(fields["id"]) is not None:
        raise ItemConflictError(fields["id"])
    next_order = max((i.order for i in snapshot.items), default=-1) + 1
    new_item = Item(
        id=fields["id"],
        name=fields["name"],
        category=fields.get("category", "general"),
        qty=fields.get("qty", 1),
        packed=fields.get("packed", False),
        notes=fields.get("notes"),
        order=next_order,
    )
    return snapshot.ordered_items() + [new_item]


def _apply_update(snapshot: CanonicalSnapshot, payload: Dict[str, Any]) -> List[Item]:
    item_id = payload["item_id"]
    if snapshot.find_item(item_id) is None:
        raise ItemNotFoundError(item_id)
    return [
        replace(item, **payload["fields"]) if item.id == item_id else item
        for item in snapshot.ordered_items()
    ]


def _apply_remove(snapshot: CanonicalSnapshot, payload: Dict[str, Any]) -> List[Item]:
    # Removing an absent item is a no-op so duplicate replays are harmless
    return [i for i in snapshot.ordered_items() if i.id != payload["item_id"]]


def _apply_reorder(snapshot: CanonicalSnapshot, payload: Dict[str, Any]) -> List[Item]:
    by_id = {item.id: item for item in snapshot.items}
    requested: List[str] = payload["item_ids"]
    for item_id in requested:
        if item_id not in by_id:
            raise ItemNotFoundError(item_id)
    mentioned = set(requested)
    # Items left out of the ordering keep their relative position, at the end
    leftovers = [i.id for i in snapshot.ordered_items() if i.id not in mentioned]
    return [
        replace(by_id[item_id], order=index)
        for index, item_id in enumerate(requested + leftovers)
    ]


_APPLIERS: Dict[OperationKind, Callable[[CanonicalSnapshot, Dict[str, Any]], List[Item]]] = {
    OperationKind.ADD_ITEM: _apply_add,
    OperationKind.UPDATE_ITEM: _apply_update,
    OperationKind.REMOVE_ITEM: _apply_remove,
    OperationKind.REORDER_ITEMS: _apply_reorder,
}


def apply_operation(snapshot: CanonicalSnapshot, op: Operation) -> CanonicalSnapshot:
    """Apply one operation to a snapshot, returning a new snapshot.

    Pure and deterministic: the input snapshot is never modified and the
    result depends only on (snapshot, op). The version advances by one.

    Raises:
        ItemNotFoundError: update/reorder referencing an absent item
        ItemConflictError: add_item whose item ID already exists
        UnsupportedOperationError: unknown kind (fails closed)
    """
    applier = _APPLIERS.get(op.kind) if isinstance(op.kind, OperationKind) else None
    if applier is None:
        raise UnsupportedOperationError(op.kind)
    items = applier(snapshot, op.payload)
    return replace(snapshot, items=tuple(items), version=snapshot.version + 1)


def apply_all(snapshot: CanonicalSnapshot, ops: List[Operation]) -> CanonicalSnapshot:
    """Apply operations left to right, raising on the first failure."""
    for op in ops:
        snapshot = apply_operation(snapshot, op)
    return snapshot
