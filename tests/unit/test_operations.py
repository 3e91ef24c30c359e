"""Unit tests for the operation model.

Tests operation construction, wire decoding and the deterministic
apply_operation transform in core/operations.py.
"""

from __future__ import annotations

import pytest

from packsync.core.errors import (
    ItemConflictError,
    ItemNotFoundError,
    UnsupportedOperationError,
)
from packsync.core.models import CanonicalSnapshot, Item, Operation, OperationKind
from packsync.core.operations import (
    apply_all,
    apply_operation,
    new_add_item,
    new_operation,
    new_remove_item,
    new_reorder_items,
    new_update_item,
    operation_from_dict,
    operation_to_dict,
)
from packsync.core.validation import ValidationError


LIST_ID = "00000000000070008000000000000a01"
ITEM_A = "00000000000070008000000000000001"
ITEM_B = "00000000000070008000000000000002"
ITEM_C = "00000000000070008000000000000003"
ITEM_X = "000000000000700080000000000000ff"


@pytest.fixture
def abc() -> CanonicalSnapshot:
    """Snapshot with items A(0), B(1), C(2) at version 5."""
    return CanonicalSnapshot(
        entity_id=LIST_ID,
        title="Weekend",
        version=5,
        items=(
            Item(id=ITEM_A, name="A", order=0),
            Item(id=ITEM_B, name="B", order=1),
            Item(id=ITEM_C, name="C", order=2),
        ),
    )


@pytest.mark.unit
class TestConstructors:
    """Tests for operation builders."""

    def test_add_item_generates_ids(self) -> None:
        """add_item gets a fresh op_id and a client-generated item id."""
        op1 = new_add_item(LIST_ID, "Tent")
        op2 = new_add_item(LIST_ID, "Tent")
        assert op1.kind == OperationKind.ADD_ITEM
        assert op1.op_id != op2.op_id
        assert op1.payload["item"]["id"] != op2.payload["item"]["id"]
        assert len(op1.op_id) == 32
        assert op1.attempt == 0

    def test_add_item_fills_defaults(self) -> None:
        op = new_add_item(LIST_ID, "  Tent  ")
        item = op.payload["item"]
        assert item["name"] == "Tent"
        assert item["category"] == "general"
        assert item["qty"] == 1
        assert item["packed"] is False
        assert item["notes"] is None

    def test_add_item_rejects_empty_name(self) -> None:
        with pytest.raises(ValidationError) as exc:
            new_add_item(LIST_ID, "   ")
        assert exc.value.field == "name"

    def test_add_item_rejects_zero_qty(self) -> None:
        with pytest.raises(ValidationError) as exc:
            new_add_item(LIST_ID, "Tent", qty=0)
        assert exc.value.field == "qty"

    def test_update_item_requires_fields(self) -> None:
        with pytest.raises(ValidationError) as exc:
            new_update_item(LIST_ID, ITEM_A, {})
        assert exc.value.field == "fields"

    def test_update_item_rejects_immutable_field(self) -> None:
        """Order can only change through reorder_items."""
        with pytest.raises(ValidationError):
            new_update_item(LIST_ID, ITEM_A, {"order": 3})

    def test_reorder_rejects_duplicates(self) -> None:
        with pytest.raises(ValidationError) as exc:
            new_reorder_items(LIST_ID, [ITEM_A, ITEM_A])
        assert "duplicate" in exc.value.message

    def test_invalid_entity_id(self) -> None:
        with pytest.raises(ValidationError) as exc:
            new_remove_item("not-a-uuid", ITEM_A)
        assert exc.value.field == "entity_id"

    def test_unknown_kind_fails_closed(self) -> None:
        with pytest.raises(UnsupportedOperationError):
            new_operation(LIST_ID, "rename_list", {"title": "x"})


@pytest.mark.unit
class TestWireCodec:
    """Tests for operation_to_dict / operation_from_dict."""

    def test_decode_encoded_operation(self) -> None:
        op = new_update_item(LIST_ID, ITEM_A, {"packed": True})
        decoded = operation_from_dict(operation_to_dict(op))
        assert decoded == op

    def test_decode_normalizes_hyphenated_ids(self) -> None:
        data = operation_to_dict(new_remove_item(LIST_ID, ITEM_A))
        data["op_id"] = "0190a1b2-c3d4-7e5f-8a6b-7c8d9e0f1a2b"
        assert operation_from_dict(data).op_id == "0190a1b2c3d47e5f8a6b7c8d9e0f1a2b"

    @pytest.mark.parametrize("missing", ["op_id", "entity_id", "kind", "payload"])
    def test_missing_field(self, missing: str) -> None:
        data = operation_to_dict(new_remove_item(LIST_ID, ITEM_A))
        del data[missing]
        with pytest.raises(ValidationError) as exc:
            operation_from_dict(data)
        assert exc.value.field == missing

    def test_payload_shape_checked_per_kind(self) -> None:
        data = operation_to_dict(new_remove_item(LIST_ID, ITEM_A))
        data["kind"] = "reorder_items"
        with pytest.raises(ValidationError) as exc:
            operation_from_dict(data)
        assert exc.value.field == "item_ids"


@pytest.mark.unit
class TestApplyAdd:
    """Tests for add_item application."""

    def test_appends_with_next_order(self, abc: CanonicalSnapshot) -> None:
        op = new_add_item(LIST_ID, "D")
        result = apply_operation(abc, op)
        added = result.find_item(op.payload["item"]["id"])
        assert added is not None
        assert added.order == 3
        assert [i.name for i in result.ordered_items()] == ["A", "B", "C", "D"]

    def test_first_item_gets_order_zero(self) -> None:
        empty = CanonicalSnapshot.empty(LIST_ID)
        result = apply_operation(empty, new_add_item(LIST_ID, "Only"))
        assert result.items[0].order == 0
        assert result.version == 1

    def test_existing_id_conflicts(self, abc: CanonicalSnapshot) -> None:
        op = new_operation(
            LIST_ID, OperationKind.ADD_ITEM, {"item": {"id": ITEM_A, "name": "Again"}}
        )
        with pytest.raises(ItemConflictError):
            apply_operation(abc, op)


@pytest.mark.unit
class TestApplyUpdate:
    """Tests for update_item application."""

    def test_merges_fields(self, abc: CanonicalSnapshot) -> None:
        result = apply_operation(
            abc, new_update_item(LIST_ID, ITEM_B, {"packed": True, "qty": 2})
        )
        item = result.find_item(ITEM_B)
        assert item.packed is True
        assert item.qty == 2
        assert item.name == "B"
        assert item.order == 1

    def test_missing_item_raises(self, abc: CanonicalSnapshot) -> None:
        with pytest.raises(ItemNotFoundError) as exc:
            apply_operation(abc, new_update_item(LIST_ID, ITEM_X, {"packed": True}))
        assert exc.value.item_id == ITEM_X


@pytest.mark.unit
class TestApplyRemove:
    """Tests for remove_item application."""

    def test_removes_item(self, abc: CanonicalSnapshot) -> None:
        result = apply_operation(abc, new_remove_item(LIST_ID, ITEM_B))
        assert result.item_ids() == [ITEM_A, ITEM_C]

    def test_absent_item_is_noop(self, abc: CanonicalSnapshot) -> None:
        """Removing an absent item changes nothing but the version."""
        result = apply_operation(abc, new_remove_item(LIST_ID, ITEM_X))
        assert result.ordered_items() == abc.ordered_items()
        assert result.version == abc.version + 1


@pytest.mark.unit
class TestApplyReorder:
    """Tests for reorder_items application."""

    def test_full_ordering(self, abc: CanonicalSnapshot) -> None:
        result = apply_operation(abc, new_reorder_items(LIST_ID, [ITEM_C, ITEM_A, ITEM_B]))
        assert [(i.name, i.order) for i in result.ordered_items()] == [
            ("C", 0), ("A", 1), ("B", 2)
        ]

    def test_missing_ids_are_appended(self, abc: CanonicalSnapshot) -> None:
        """Items left out keep their relative order at the end."""
        result = apply_operation(abc, new_reorder_items(LIST_ID, [ITEM_C]))
        assert [i.name for i in result.ordered_items()] == ["C", "A", "B"]
        assert [i.order for i in result.ordered_items()] == [0, 1, 2]

    def test_unknown_id_raises(self, abc: CanonicalSnapshot) -> None:
        with pytest.raises(ItemNotFoundError):
            apply_operation(abc, new_reorder_items(LIST_ID, [ITEM_X, ITEM_A]))


@pytest.mark.unit
class TestApplyGeneral:
    """Properties shared by every kind."""

    def test_input_not_modified(self, abc: CanonicalSnapshot) -> None:
        before = abc.to_dict()
        apply_operation(abc, new_remove_item(LIST_ID, ITEM_A))
        assert abc.to_dict() == before

    def test_deterministic(self, abc: CanonicalSnapshot) -> None:
        ops = [
            new_reorder_items(LIST_ID, [ITEM_B, ITEM_A, ITEM_C]),
            new_add_item(LIST_ID, "D"),
            new_update_item(LIST_ID, ITEM_A, {"notes": "waterproof"}),
        ]
        assert apply_all(abc, ops) == apply_all(abc, ops)

    def test_version_increments_per_operation(self, abc: CanonicalSnapshot) -> None:
        ops = [new_add_item(LIST_ID, "D"), new_remove_item(LIST_ID, ITEM_A)]
        assert apply_all(abc, ops).version == abc.version + 2

    def test_unknown_kind_fails_closed(self, abc: CanonicalSnapshot) -> None:
        op = Operation(
            op_id=ITEM_X, entity_id=LIST_ID, kind="rename_list",  # type: ignore[arg-type]
            payload={}, enqueued_at="2024-01-01T00:00:00+00:00",
        )
        with pytest.raises(UnsupportedOperationError):
            apply_operation(abc, op)
