"""Notification time parsing and next-fire computation."""

import re
from datetime import datetime, time, timedelta

from prompts.errors import FormatError

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_notification_time(value: str) -> time:
    """Parse a strict two-digit ``HH:MM`` string."""
    if not isinstance(value, str):
        raise FormatError(f"Notification time must be a string, got {type(value).__name__}")
    match = TIME_PATTERN.match(value)
    if not match:
        raise FormatError(f"Invalid notification time {value!r}, expected HH:MM (00:00-23:59)")
    return time(int(match.group(1)), int(match.group(2)))


def next_fire_time(value: str, now: datetime) -> datetime:
    """Today's occurrence of ``value``, or tomorrow's if that is not after ``now``.

    The result carries ``now``'s tzinfo, so wall-clock time is kept across
    DST changes.
    """
    at = parse_notification_time(value)
    candidate = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate = datetime.combine(now.date() + timedelta(days=1), at, tzinfo=now.tzinfo)
    return candidate
