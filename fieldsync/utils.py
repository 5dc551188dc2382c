"""Shared utility functions for the sync engine.

Timestamps are always timezone-aware UTC inside the engine and stored as
ISO 8601 strings, so lexicographic order in SQLite matches time order.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 string (or datetime) into an aware UTC datetime.

    Naive values are assumed to be UTC. A trailing ``Z`` is accepted.
    Returns None for empty input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime as a fixed-width UTC ISO string."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used to compare payload values."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
