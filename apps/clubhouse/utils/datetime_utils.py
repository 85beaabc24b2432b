"""
Datetime utility functions.
Provides replacements for deprecated datetime functions.
"""

from datetime import datetime
from typing import Optional, Union
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage inside JSON columns."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = pytz.UTC.localize(value)
    return value.isoformat()


def parse_iso(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp stored in a JSON column.

    Naive values are treated as UTC so that comparisons between entries
    written by different code paths stay well defined.

    Args:
        value: ISO string, datetime, or None

    Returns:
        Timezone-aware datetime, or None if value is empty
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = pytz.UTC.localize(parsed)
    return parsed


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from databases without timezone support."""
    if value is None or value.tzinfo is not None:
        return value
    return pytz.UTC.localize(value)
