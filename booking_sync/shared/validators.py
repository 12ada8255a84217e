"""Shared validation utilities"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

EMAIL_LIKE_PATTERN = re.compile(r".+@.+\..+")

# Epoch values above this are treated as milliseconds
EPOCH_MILLIS_THRESHOLD = 100_000_000_000

# Differ in year, month and day; identical time of day
_PARSE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


def is_email_like(value: Any) -> bool:
    """Loose email shape check used for identity heuristics (not RFC validation)"""
    return isinstance(value, str) and EMAIL_LIKE_PATTERN.search(value) is not None


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for all timestamps"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_instant(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into a naive UTC datetime.

    Accepts ISO-8601 / RFC-style strings and epoch numbers (seconds or
    milliseconds). Returns None for anything unparseable instead of raising.

    Args:
        value: Raw timestamp value from a webhook payload

    Returns:
        Naive UTC datetime, or None if the value is not a valid instant
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str) or not value.strip():
        return None

    try:
        parsed = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError):
        parsed = _parse_complete_date(value.strip())
        if parsed is None:
            return None

    return to_naive_utc(parsed)


def _parse_complete_date(value: str) -> Optional[datetime]:
    """
    Lenient parse that refuses strings without a full calendar date.

    dateutil fills missing year/month/day from its default, so the string is
    parsed against two defaults that differ in every date part; any difference
    in the results means the date was incomplete ("10:00", "Jan 5").
    """
    try:
        first = date_parser.parse(value, default=_PARSE_DEFAULTS[0])
        second = date_parser.parse(value, default=_PARSE_DEFAULTS[1])
    except (ValueError, OverflowError):
        return None
    if first != second:
        return None
    return first
