"""
Utility functions for the project automation engine.

Includes:
- UTC datetime helpers
- Pagination offsets
- JSON-safe snapshots of execution context
"""

import copy
import json
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite hands timezone-aware columns back without tzinfo; values
    are always stored in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def json_snapshot(value: Any) -> Any:
    """Deep copy of a value that is guaranteed to be JSON-serializable.

    Non-JSON leaves (datetimes, enums, sets) are converted with ``str``.
    """
    try:
        json.dumps(value)
        return copy.deepcopy(value)
    except (TypeError, ValueError):
        return json.loads(json.dumps(value, default=str))


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """Calculate database offset from page and per_page values."""
    return (page - 1) * per_page
