"""Input validation for packsync.

This module provides validation functions for all user and wire inputs.
All validators raise ValidationError with descriptive messages.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


__all__ = [
    "ValidationError",
    "validate_uuid_hex",
    "validate_entity_id",
    "validate_requestor_id",
    "validate_item_name",
    "validate_category",
    "validate_qty",
    "validate_packed",
    "validate_notes",
    "validate_title",
    "validate_new_item",
    "validate_item_fields",
    "validate_item_ids",
]

# Limits
MAX_ITEM_NAME_LENGTH = 200
MAX_CATEGORY_LENGTH = 100
MAX_NOTES_LENGTH = 2000
MAX_TITLE_LENGTH = 200
MAX_QTY = 10_000
MAX_REQUESTOR_ID_LENGTH = 128
MAX_ITEMS_PER_LIST = 5_000


def validate_uuid_hex(value: Any, field_name: str = "id") -> str:
    """Validate a UUID hex string and return it normalized (32 chars, no hyphens)."""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    try:
        return uuid.UUID(hex=value.replace("-", "")).hex
    except ValueError as e:
        raise ValidationError(field_name, f"invalid UUID format: {e}") from None


def validate_entity_id(value: Any, field_name: str = "entity_id") -> str:
    """Validate a packing list ID."""
    return validate_uuid_hex(value, field_name)


def validate_requestor_id(value: Any, field_name: str = "requestor_identity") -> str:
    """Validate a requestor identity (opaque, non-empty user ID)."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field_name, "must be a non-empty string")
    if len(value) > MAX_REQUESTOR_ID_LENGTH:
        raise ValidationError(
            field_name, f"must be at most {MAX_REQUESTOR_ID_LENGTH} characters"
        )
    return value.strip()


def validate_item_name(value: Any) -> str:
    """Validate an item name (non-empty, bounded, stripped)."""
    if not isinstance(value, str):
        raise ValidationError("name", f"must be a string, got {type(value).__name__}")
    name = value.strip()
    if not name:
        raise ValidationError("name", "cannot be empty")
    if len(name) > MAX_ITEM_NAME_LENGTH:
        raise ValidationError(
            "name", f"must be at most {MAX_ITEM_NAME_LENGTH} characters"
        )
    return name


def validate_category(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError(
            "category", f"must be a string, got {type(value).__name__}"
        )
    category = value.strip() or "general"
    if len(category) > MAX_CATEGORY_LENGTH:
        raise ValidationError(
            "category", f"must be at most {MAX_CATEGORY_LENGTH} characters"
        )
    return category


def validate_qty(value: Any) -> int:
    # bool is a subclass of int and must not pass as a quantity
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("qty", f"must be an integer, got {type(value).__name__}")
    if value < 1 or value > MAX_QTY:
        raise ValidationError("qty", f"must be between 1 and {MAX_QTY}")
    return value


def validate_packed(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError("packed", f"must be a boolean, got {type(value).__name__}")
    return value


def validate_notes(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("notes", f"must be a string, got {type(value).__name__}")
    if len(value) > MAX_NOTES_LENGTH:
        raise ValidationError("notes", f"must be at most {MAX_NOTES_LENGTH} characters")
    return value


def validate_title(value: Any) -> str:
    """Validate a packing list title."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("title", "must be a non-empty string")
    if len(value.strip()) > MAX_TITLE_LENGTH:
        raise ValidationError("title", f"must be at most {MAX_TITLE_LENGTH} characters")
    return value.strip()


_FIELD_VALIDATORS = {
    "name": validate_item_name,
    "category": validate_category,
    "qty": validate_qty,
    "packed": validate_packed,
    "notes": validate_notes,
}


def validate_new_item(data: Any) -> Dict[str, Any]:
    """Validate the fields of an item being added.

    Args:
        data: Dict with id, name and optional category, qty, packed, notes

    Returns:
        Normalized dict with every field present (order excluded)

    Raises:
        ValidationError: If any field is missing or invalid
    """
    if not isinstance(data, dict):
        raise ValidationError("item", "must be an object")
    unknown = set(data) - set(_FIELD_VALIDATORS) - {"id", "order"}
    if unknown:
        raise ValidationError("item", f"unknown fields: {', '.join(sorted(unknown))}")
    if "name" not in data:
        raise ValidationError("name", "is required")
    return {
        "id": validate_uuid_hex(data.get("id"), "item.id"),
        "name": validate_item_name(data["name"]),
        "category": validate_category(data.get("category", "general")),
        "qty": validate_qty(data.get("qty", 1)),
        "packed": validate_packed(data.get("packed", False)),
        "notes": validate_notes(data.get("notes")),
    }


def validate_item_fields(fields: Any) -> Dict[str, Any]:
    """Validate a partial set of item fields for update_item.

    Raises:
        ValidationError: If empty, or a field is unknown, immutable or invalid
    """
    if not isinstance(fields, dict):
        raise ValidationError("fields", "must be an object")
    if not fields:
        raise ValidationError("fields", "must contain at least one field")
    result: Dict[str, Any] = {}
    for key, value in fields.items():
        validator = _FIELD_VALIDATORS.get(key)
        if validator is None:
            raise ValidationError("fields", f"field '{key}' cannot be updated")
        result[key] = validator(value)
    return result


def validate_item_ids(value: Any, field_name: str = "item_ids") -> List[str]:
    """Validate an explicit ordering of item IDs (no duplicates)."""
    if not isinstance(value, list):
        raise ValidationError(field_name, "must be a list of item IDs")
    if len(value) > MAX_ITEMS_PER_LIST:
        raise ValidationError(field_name, f"must contain at most {MAX_ITEMS_PER_LIST} IDs")
    ids = [validate_uuid_hex(v, field_name) for v in value]
    if len(set(ids)) != len(ids):
        raise ValidationError(field_name, "contains duplicate IDs")
    return ids
