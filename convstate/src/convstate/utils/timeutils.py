"""Timestamp parsing and formatting for conversation histories.

What:
  Convert the ISO-8601 strings carried by messages and persisted state into
  timezone-aware UTC datetimes, and render datetimes back into the canonical
  millisecond ``...Z`` form used in inference results.

Why:
  Upstream collaborators hand over timestamps as strings. A malformed value
  must behave like a missing signal rather than an exception, and every output
  timestamp has to be byte-stable so repeated resolutions compare equal.

How:
  Parsing delegates to :func:`dateutil.parser.isoparse`; naive values are
  interpreted as UTC. Formatting truncates to milliseconds.

Interfaces:
  :func:`parse_timestamp`, :func:`format_timestamp`, :func:`utc_now`,
  :func:`days_between`, :func:`hours_between`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from dateutil.parser import isoparse


_DAY_SECONDS = 24 * 60 * 60

TimestampLike = Union[str, datetime, None]


def utc_now() -> datetime:
    """Return the current wall-clock time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def ensure_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_timestamp(value: TimestampLike) -> Optional[datetime]:
    """Parse ``value`` into an aware UTC datetime.

    Args:
      value: ISO-8601 string, datetime or ``None``.

    Returns:
      The parsed datetime, or ``None`` when the value is absent or malformed.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = isoparse(text)
    except (ValueError, OverflowError):
        return None
    return ensure_utc(parsed)


def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""

    moment = ensure_utc(moment)
    millis = moment.microsecond // 1000
    return f"{moment.strftime('%Y-%m-%dT%H:%M:%S')}.{millis:03d}Z"


def days_between(later: datetime, earlier: datetime) -> float:
    """Return the signed difference ``later - earlier`` in fractional days."""

    return (later - earlier).total_seconds() / _DAY_SECONDS


def hours_between(later: datetime, earlier: datetime) -> float:
    """Return the signed difference ``later - earlier`` in fractional hours."""

    return (later - earlier).total_seconds() / 3600
