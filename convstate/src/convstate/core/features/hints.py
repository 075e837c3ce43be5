"""Deferral date hint parser.

What:
  Reduce free-text timing references ("next month", "this spring", "in 2
  weeks") to a small closed vocabulary of hint tokens.

Why:
  The extractor must stay independent of the clock. Returning tokens instead of
  dates lets the scheduler resolve them later against the timestamp of the
  message that carried them.

How:
  Checks run in a fixed order and the first match wins: ``tomorrow``,
  ``next_week``, ``next_month``, ``next_<season>``, ``this_<season>``, a bare
  season when deferral context vocabulary is present, then ``in_<N>_days``
  from day, week (x7) or month (x30) counts. ``autumn`` is folded into
  ``fall``.

Interfaces:
  :func:`infer_deferral_hint`, :func:`is_season_hint`.
"""
from __future__ import annotations

from typing import Optional

from .patterns import (
    BARE_SEASON_RE,
    DEFERRAL_CONTEXT_RE,
    IN_DAYS_RE,
    IN_MONTHS_RE,
    IN_WEEKS_RE,
    NEXT_SEASON_RE,
    SEASON_HINT_RE,
    THIS_SEASON_RE,
)


def _season(value: str) -> str:
    value = value.lower()
    return "fall" if value == "autumn" else value


def infer_deferral_hint(text: Optional[str]) -> Optional[str]:
    """Return the hint token for ``text`` or ``None``.

    Args:
      text: Raw message text; ``None`` yields ``None``.

    Returns:
      One of ``tomorrow``, ``next_week``, ``next_month``, ``next_<season>``,
      ``this_<season>``, ``<season>`` or ``in_<N>_days``.
    """

    if not text:
        return None
    lower = text.lower()
    if "tomorrow" in lower:
        return "tomorrow"
    if "next week" in lower:
        return "next_week"
    if "next month" in lower:
        return "next_month"
    match = NEXT_SEASON_RE.search(lower)
    if match:
        return f"next_{_season(match.group(1))}"
    match = THIS_SEASON_RE.search(lower)
    if match:
        return f"this_{_season(match.group(1))}"
    if DEFERRAL_CONTEXT_RE.search(lower):
        match = BARE_SEASON_RE.search(lower)
        if match:
            return _season(match.group(1))
    match = IN_DAYS_RE.search(lower)
    if match:
        return f"in_{int(match.group(1))}_days"
    match = IN_WEEKS_RE.search(lower)
    if match:
        return f"in_{int(match.group(1)) * 7}_days"
    match = IN_MONTHS_RE.search(lower)
    if match:
        return f"in_{int(match.group(1)) * 30}_days"
    return None


def is_season_hint(hint: Optional[str]) -> bool:
    return bool(hint) and SEASON_HINT_RE.match(hint) is not None
