"""Unit tests for input validation.

Tests the validation functions in core/validation.py.
"""

from __future__ import annotations

import pytest

from packsync.core.validation import (
    MAX_ITEM_NAME_LENGTH,
    MAX_NOTES_LENGTH,
    MAX_QTY,
    MAX_REQUESTOR_ID_LENGTH,
    ValidationError,
    validate_category,
    validate_item_fields,
    validate_item_ids,
    validate_item_name,
    validate_new_item,
    validate_notes,
    validate_qty,
    validate_requestor_id,
    validate_title,
    validate_uuid_hex,
)


ITEM_ID = "00000000000070008000000000000001"


@pytest.mark.unit
class TestValidateUuidHex:
    """Tests for validate_uuid_hex."""

    def test_valid_hex(self) -> None:
        assert validate_uuid_hex(ITEM_ID) == ITEM_ID

    def test_hyphenated_is_normalized(self) -> None:
        assert validate_uuid_hex("00000000-0000-7000-8000-000000000001") == ITEM_ID

    def test_not_a_string(self) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_uuid_hex(123, "op_id")
        assert exc.value.field == "op_id"

    def test_garbage(self) -> None:
        with pytest.raises(ValidationError):
            validate_uuid_hex("xyz")


@pytest.mark.unit
class TestItemFields:
    """Tests for individual item field validators."""

    def test_name_stripped(self) -> None:
        assert validate_item_name("  Boots ") == "Boots"

    def test_name_too_long(self) -> None:
        with pytest.raises(ValidationError):
            validate_item_name("x" * (MAX_ITEM_NAME_LENGTH + 1))

    def test_blank_category_becomes_general(self) -> None:
        assert validate_category("   ") == "general"

    @pytest.mark.parametrize("value", [0, -1, MAX_QTY + 1, 1.5, "2", True])
    def test_invalid_qty(self, value: object) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_qty(value)
        assert exc.value.field == "qty"

    def test_valid_qty(self) -> None:
        assert validate_qty(MAX_QTY) == MAX_QTY

    def test_notes_optional(self) -> None:
        assert validate_notes(None) is None

    def test_notes_too_long(self) -> None:
        with pytest.raises(ValidationError):
            validate_notes("n" * (MAX_NOTES_LENGTH + 1))

    def test_title_required(self) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_title("")
        assert exc.value.field == "title"


@pytest.mark.unit
class TestValidateNewItem:
    """Tests for validate_new_item."""

    def test_defaults(self) -> None:
        result = validate_new_item({"id": ITEM_ID, "name": "Boots"})
        assert result == {
            "id": ITEM_ID,
            "name": "Boots",
            "category": "general",
            "qty": 1,
            "packed": False,
            "notes": None,
        }

    def test_name_required(self) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_new_item({"id": ITEM_ID})
        assert exc.value.field == "name"

    def test_id_required(self) -> None:
        with pytest.raises(ValidationError):
            validate_new_item({"name": "Boots"})

    def test_unknown_field(self) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_new_item({"id": ITEM_ID, "name": "Boots", "colour": "red"})
        assert "colour" in exc.value.message


@pytest.mark.unit
class TestValidateItemFieldsAndIds:
    """Tests for validate_item_fields and validate_item_ids."""

    def test_partial_fields(self) -> None:
        assert validate_item_fields({"packed": True}) == {"packed": True}

    def test_id_cannot_be_updated(self) -> None:
        with pytest.raises(ValidationError):
            validate_item_fields({"id": ITEM_ID})

    def test_ids_must_be_list(self) -> None:
        with pytest.raises(ValidationError):
            validate_item_ids(ITEM_ID)

    def test_empty_ordering_allowed(self) -> None:
        assert validate_item_ids([]) == []


@pytest.mark.unit
class TestValidateRequestorId:
    """Tests for validate_requestor_id."""

    def test_valid(self) -> None:
        assert validate_requestor_id(" alice ") == "alice"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_invalid(self, value: object) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_requestor_id(value)
        assert exc.value.field == "requestor_identity"

    def test_too_long(self) -> None:
        with pytest.raises(ValidationError):
            validate_requestor_id("a" * (MAX_REQUESTOR_ID_LENGTH + 1))
