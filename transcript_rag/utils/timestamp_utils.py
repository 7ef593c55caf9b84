"""
Timestamp utilities for transcript offsets and stored documents.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_offset(seconds: Optional[float]) -> str:
    """Format a transcript offset as `m:ss`.

    Args:
        seconds: Offset from the start of the audio in seconds

    Returns:
        Formatted offset, e.g. `3:07`; empty string when the offset is unknown
    """
    if seconds is None:
        return ''
    seconds = max(0.0, float(seconds))
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f'{mins}:{secs:02d}'


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string, accepting a trailing `Z`. Returns None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
