"""Formatting utilities for CLI output."""

import time
from typing import Optional


def format_time_ago(timestamp_ms: Optional[int], now: Optional[float] = None) -> str:
    """Format an epoch-millisecond timestamp as relative time.

    Args:
        timestamp_ms: Milliseconds since the Unix epoch, as stored in the
            device registry.
        now: Current Unix time in seconds (defaults to time.time()).

    Returns:
        Human-readable string like "2 hours ago", or "Never".

    Examples:
        >>> format_time_ago(0, now=90)
        '1 minute ago'
        >>> format_time_ago(None)
        'Never'
    """
    if not timestamp_ms:
        return "Never"

    if now is None:
        now = time.time()
    seconds = now - timestamp_ms / 1000

    if seconds < 60:
        return "Just now"
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = int(seconds // size)
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "Just now"


def short(value: Optional[str], length: int = 8) -> str:
    """Truncate an id or token for table and log output."""
    if not value:
        return "-"
    return value[:length]
