"""Utility functions for time operations."""

from datetime import datetime, timezone


def now_iso() -> str:
    """Get current UTC timestamp as ``YYYY-MM-DDTHH:MM:SS.sssZ``."""
    return format_iso(datetime.now(timezone.utc))


def format_iso(dt: datetime) -> str:
    """Format a datetime as a millisecond precision UTC ISO 8601 string."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(iso_string: str) -> datetime:
    """Parse an ISO 8601 string into an aware datetime (UTC when naive)."""
    try:
        dt = datetime.fromisoformat(iso_string.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Unable to parse timestamp: {iso_string}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_valid_iso(iso_string: str) -> bool:
    """Check whether a string is a full ISO 8601 timestamp."""
    try:
        parse_iso(iso_string)
    except ValueError:
        return False
    return "T" in iso_string


def format_duration(seconds: float) -> str:
    """Format duration in human readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"
