"""Follow-up scheduling and resurrection timers.

What:
  Resolve deferral hint tokens and AI deferral buckets into concrete due
  dates, compute the business-day follow-up window after an outbound message,
  and decide whether a dormant conversation came back to life or a price
  rejection was revived.

Why:
  These are the only clock-dependent computations of the engine. Isolating
  them behind functions that take every reference time explicitly keeps the
  resolver deterministic and lets the calendar rules be tested on their own.

How:
  Calendar arithmetic uses :class:`datetime.timedelta` for day offsets and
  :class:`dateutil.relativedelta.relativedelta` for calendar months. Seasons
  resolve to the 15th of their anchor month at noon UTC.

Interfaces:
  :func:`derive_followup_due_at`, :func:`resolve_season`,
  :func:`add_business_days`, :func:`map_deferred_bucket_to_date`,
  :func:`date_only_to_datetime`, :func:`detect_resurrection`,
  :func:`has_rejection_revival`.

Invariants & Safety:
  - No function reads the wall clock.
  - Unknown hint tokens fall back to the default deferral window.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .features.heuristics import is_hard_negative_reply
from .features.patterns import SEASON_ANCHORS
from .features.schema import AnnotatedMessage
from .states import DORMANT_STATES, ConversationState


_IN_DAYS_HINT_RE = re.compile(r"^in_(\d+)_days$")
_QUALIFIED_SEASON_RE = re.compile(r"^(?:(this|next)_)?(spring|summer|fall|winter)$")

DUE_SOURCE_CUSTOMER = "customer_intent"
DUE_SOURCE_AI = "ai"
DUE_SOURCE_DEFAULT = "default"


def resolve_season(season: str, qualifier: Optional[str], base: datetime) -> datetime:
    """Return the anchor date of ``season`` relative to ``base``.

    Args:
      season: ``spring``, ``summer``, ``fall`` or ``winter``.
      qualifier: ``"next"`` rolls over when ``base`` is on or after this year's
        anchor, ``"this"`` always uses ``base``'s year, ``None`` (a bare
        season) rolls over only when ``base`` is strictly after the anchor.
      base: Reference timestamp, usually the message that carried the hint.

    Returns:
      Noon UTC on the anchor day.
    """

    month, day = SEASON_ANCHORS[season]
    year = base.year
    candidate = datetime(year, month, day, 12, tzinfo=timezone.utc)
    if qualifier == "next" and base >= candidate:
        year += 1
    elif qualifier is None and base > candidate:
        year += 1
    return datetime(year, month, day, 12, tzinfo=timezone.utc)


def derive_followup_due_at(hint: Optional[str], base: datetime, default_days: int) -> datetime:
    """Turn a deferral hint token into a due timestamp.

    Args:
      hint: Token from :func:`~convstate.core.features.hints.infer_deferral_hint`.
      base: Timestamp the hint is relative to.
      default_days: Offset used without a hint or for unknown tokens.

    Returns:
      The due timestamp in UTC.
    """

    if not hint:
        return base + timedelta(days=default_days)
    if hint == "tomorrow":
        return base + timedelta(days=1)
    if hint == "next_week":
        return base + timedelta(days=7)
    if hint == "next_month":
        return base + relativedelta(months=1)
    season_match = _QUALIFIED_SEASON_RE.match(hint)
    if season_match:
        return resolve_season(season_match.group(2), season_match.group(1), base)
    days_match = _IN_DAYS_HINT_RE.match(hint)
    if days_match:
        return base + timedelta(days=int(days_match.group(1)))
    return base + timedelta(days=default_days)


def add_business_days(base: datetime, business_days: int) -> datetime:
    """Advance ``base`` by ``business_days`` weekdays, skipping Sat/Sun."""

    result = base
    added = 0
    while added < business_days:
        result += timedelta(days=1)
        if result.weekday() < 5:
            added += 1
    return result


def map_deferred_bucket_to_date(bucket: Optional[str], now: datetime) -> str:
    """Map an AI deferral bucket to a ``YYYY-MM-DD`` date relative to ``now``.

    ``AFTER_HOLIDAYS`` lands on January 15th of the following year when asked
    in November or December; unknown buckets behave like ``SOMETIME_LATER``.
    """

    if bucket == "NEXT_WEEK":
        target = now + timedelta(days=7)
    elif bucket == "NEXT_MONTH":
        target = now + timedelta(days=30)
    elif bucket == "NEXT_QUARTER":
        target = now + timedelta(days=90)
    elif bucket == "AFTER_HOLIDAYS":
        if now.month >= 11:
            target = now.replace(year=now.year + 1, month=1, day=15)
        else:
            target = now + timedelta(days=60)
    else:
        target = now + timedelta(days=30)
    return target.astimezone(timezone.utc).date().isoformat()


def date_only_to_datetime(value: Optional[str]) -> Optional[datetime]:
    """Interpret ``YYYY-MM-DD`` as midnight UTC; malformed values give ``None``."""

    if not value:
        return None
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        return None
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)


def _has_renewed_intent(message: Optional[AnnotatedMessage]) -> bool:
    if message is None:
        return False
    features = message.features
    return (
        features.contains_price_terms
        or features.has_currency
        or features.contains_schedule_terms
        or features.contains_deferral_phrase
    )


def detect_resurrection(
    *,
    previous_state: Optional[ConversationState],
    previous_evaluated_at: Optional[datetime],
    last_inbound: Optional[AnnotatedMessage],
    last_inbound_at: Optional[datetime],
    final_touch_sent: bool,
    resurrect_gap_days: int,
) -> bool:
    """Decide whether a dormant conversation came back to life.

    What:
      True when a LOST, DEFERRED or OFF_PLATFORM conversation received a
      substantive inbound message at least ``resurrect_gap_days`` after it was
      last evaluated.

    Why:
      Dormant leads that write back deserve attention, but a polite "thanks"
      or a reply to a last-ditch final touch without renewed buying intent
      must not reopen them.

    How:
      Rejects missing state or inbound, ack-only replies and non-dormant
      previous states; after a final touch requires price, currency, schedule
      or deferral vocabulary; finally compares the gap.
    """

    if previous_state is None or last_inbound is None or last_inbound_at is None:
        return False
    if last_inbound.features.ack_only:
        return False
    if previous_state not in DORMANT_STATES:
        return False
    if final_touch_sent and not _has_renewed_intent(last_inbound):
        return False
    if previous_evaluated_at is None:
        return False
    return last_inbound_at - previous_evaluated_at >= timedelta(days=resurrect_gap_days)


def has_rejection_revival(
    inbound: Iterable[Tuple[AnnotatedMessage, Optional[datetime]]],
    last_rejection_at: Optional[datetime],
    window_days: int,
) -> bool:
    """Return ``True`` if the customer re-engaged after a price rejection.

    A revival is an inbound message strictly after the rejection, within
    ``window_days``, with text that is neither ack-only, a bare "no", nor
    another rejection or indefinite deferral.
    """

    if last_rejection_at is None:
        return False
    window = timedelta(days=window_days)
    for message, at in inbound:
        if at is None or at <= last_rejection_at:
            continue
        if at - last_rejection_at > window:
            continue
        if not message.text:
            continue
        features = message.features
        if features.ack_only or is_hard_negative_reply(message.text):
            continue
        if features.has_price_rejection_phrase or features.has_indefinite_deferral_phrase:
            continue
        return True
    return False
