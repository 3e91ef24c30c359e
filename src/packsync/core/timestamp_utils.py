"""Timestamp utilities for packsync.

All stored timestamps are ISO-8601 strings in UTC so they sort
lexicographically; display helpers convert them to local time.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    """Get the current time as an ISO-8601 UTC string.

    Returns:
        String like "2024-01-01T12:00:00.123456+00:00"
    """
    return datetime.now(timezone.utc).isoformat()


def format_timestamp(value: Optional[str]) -> str:
    """Format an ISO timestamp in the local timezone for display.

    Args:
        value: ISO-8601 string or None

    Returns:
        Formatted string "YYYY-MM-DD HH:MM:SS" in local timezone,
        or empty string if value is None or unparseable
    """
    if not value:
        return ""
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")
