"""Explicit-lost sub-classifier.

What:
  Decide *why* a customer is lost when an inbound message says so in plain
  words, returning the first matching reason code with its evidence.

Why:
  A generic "lost" tag is of little use for follow-up analytics; knowing that a
  lead bought elsewhere versus found the price out of range drives different
  playbooks. The cascade is ordered from the most specific and least ambiguous
  phrasing to the softest, and guards keep deferrals such as "no thank you,
  maybe later" from being read as a hard decline.

How:
  :func:`detect_explicit_lost` normalises the text and walks
  :data:`EXPLICIT_LOST_ORDER`. Simple codes are table driven; the decline,
  indefinite-future and timing codes carry guards. The resolver applies the
  extra context checks for feasibility and timing across the whole
  conversation.

Interfaces:
  :data:`EXPLICIT_LOST_ORDER`, :func:`detect_explicit_lost`.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional, Tuple

from ..states import Confidence
from .hints import infer_deferral_hint
from .patterns import (
    DEFERRAL_TERMS_RE,
    LOST_BOUGHT_ELSEWHERE_RE,
    LOST_CHOSE_EXISTING_RES,
    LOST_EXPLICIT_DECLINE_GUARD_RE,
    LOST_EXPLICIT_DECLINE_RE,
    LOST_FEASIBILITY_RE,
    LOST_INDEFINITE_DECLINE_RE,
    LOST_INDEFINITE_FUTURE_RE,
    LOST_INDEFINITE_GUARD_RE,
    LOST_NOT_INTENTIONAL_RE,
    LOST_PRICE_OUT_OF_RANGE_RE,
    LOST_TIMING_MAX_LENGTH,
    LOST_TIMING_NOT_NOW_RE,
    normalize_text,
)
from .schema import ExplicitLostEvidence


LOST_NOT_INTENTIONAL = "LOST_NOT_INTENTIONAL"
LOST_BOUGHT_ELSEWHERE = "LOST_BOUGHT_ELSEWHERE"
LOST_CHOSE_EXISTING = "LOST_CHOSE_EXISTING"
LOST_PRICE_OUT_OF_RANGE = "LOST_PRICE_OUT_OF_RANGE"
LOST_EXPLICIT_DECLINE = "LOST_EXPLICIT_DECLINE"
LOST_INDEFINITE_FUTURE = "LOST_INDEFINITE_FUTURE"
LOST_FEASIBILITY = "LOST_FEASIBILITY"
LOST_TIMING_NOT_NOW = "LOST_TIMING_NOT_NOW"
LOST_INACTIVE_TIMEOUT = "LOST_INACTIVE_TIMEOUT"

# Resolver precedence when several messages carry different codes.
EXPLICIT_LOST_ORDER: Tuple[str, ...] = (
    LOST_NOT_INTENTIONAL,
    LOST_BOUGHT_ELSEWHERE,
    LOST_CHOSE_EXISTING,
    LOST_PRICE_OUT_OF_RANGE,
    LOST_EXPLICIT_DECLINE,
    LOST_INDEFINITE_FUTURE,
    LOST_FEASIBILITY,
    LOST_TIMING_NOT_NOW,
)

_HIGH_PRECISION: Tuple[Tuple[str, Tuple[re.Pattern, ...]], ...] = (
    (LOST_NOT_INTENTIONAL, (LOST_NOT_INTENTIONAL_RE,)),
    (LOST_BOUGHT_ELSEWHERE, (LOST_BOUGHT_ELSEWHERE_RE,)),
    (LOST_CHOSE_EXISTING, LOST_CHOSE_EXISTING_RES),
    (LOST_PRICE_OUT_OF_RANGE, (LOST_PRICE_OUT_OF_RANGE_RE,)),
)


def _first_match(patterns: Iterable[re.Pattern], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(0):
            return match.group(0)
    return None


def _has_future_guard(normalized: str) -> bool:
    return bool(
        LOST_INDEFINITE_GUARD_RE.search(normalized)
        or DEFERRAL_TERMS_RE.search(normalized)
        or infer_deferral_hint(normalized)
    )


def detect_explicit_lost(text: Optional[str]) -> Optional[ExplicitLostEvidence]:
    """Return the first explicit-lost reason expressed by ``text``.

    What:
      Runs the fixed-priority cascade not-intentional, bought-elsewhere,
      chose-existing, price-out-of-range, explicit-decline, indefinite-future,
      timing-not-now, feasibility.

    Why:
      Only the most specific reason is kept so that one message maps to one
      code and reports stay comparable over time.

    How:
      Matches against the normalised text. Explicit declines are skipped when a
      timing qualifier softens them; indefinite-future needs both a decline and
      a vague future reference and no concrete follow-up language; timing
      applies to short messages only. Timing and feasibility are MEDIUM
      confidence, everything else HIGH.

    Args:
      text: Raw inbound message text.

    Returns:
      Evidence with the matched excerpt, or ``None``.
    """

    normalized = normalize_text(text or "")
    if not normalized:
        return None

    for code, patterns in _HIGH_PRECISION:
        evidence = _first_match(patterns, normalized)
        if evidence:
            return ExplicitLostEvidence(code, evidence, Confidence.HIGH)

    decline = LOST_EXPLICIT_DECLINE_RE.search(normalized)
    if decline and not LOST_EXPLICIT_DECLINE_GUARD_RE.search(normalized):
        return ExplicitLostEvidence(LOST_EXPLICIT_DECLINE, decline.group(0), Confidence.HIGH)

    indefinite_decline = LOST_INDEFINITE_DECLINE_RE.search(normalized)
    indefinite_future = LOST_INDEFINITE_FUTURE_RE.search(normalized)
    if indefinite_decline and indefinite_future and not _has_future_guard(normalized):
        return ExplicitLostEvidence(
            LOST_INDEFINITE_FUTURE, indefinite_decline.group(0), Confidence.HIGH
        )

    timing = LOST_TIMING_NOT_NOW_RE.search(normalized)
    if timing and len(normalized) <= LOST_TIMING_MAX_LENGTH:
        return ExplicitLostEvidence(LOST_TIMING_NOT_NOW, timing.group(0), Confidence.MEDIUM)

    feasibility = LOST_FEASIBILITY_RE.search(normalized)
    if feasibility:
        return ExplicitLostEvidence(LOST_FEASIBILITY, feasibility.group(0), Confidence.MEDIUM)

    return None
