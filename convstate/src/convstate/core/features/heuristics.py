"""Message-level heuristics: acknowledgements, hard negatives and rants.

What:
  Small predicates over a single message's text that do not fit a single
  pattern: ack-only replies, bare "no" answers and the long-rant spam shape.

Why:
  A "thanks!" must never revive a dead conversation and a conspiracy rant must
  be told apart from a long but genuine inquiry. Both judgements combine
  length limits, keyword exclusions and patterns, so they live here rather
  than inline in the extractor.

Interfaces:
  :func:`is_ack_only`, :func:`is_emoji_only`, :func:`is_hard_negative_reply`,
  :func:`is_spam_content`.
"""
from __future__ import annotations

import unicodedata
from typing import Optional

from .patterns import (
    ACK_ONLY_RE,
    ACK_PREFIXES,
    HARD_NEGATIVE_RE,
    HARD_NEGATIVE_STRIP_RE,
    INTENT_KEYWORDS_RE,
    PRODUCT_INTENT_RE,
    RANT_VOCAB_RE,
    SPAM_CONTENT_MIN_LENGTH,
    SPAM_RANT_RE,
    normalize_text,
)


# Joiners and selectors that appear inside emoji sequences.
_EMOJI_GLUE = frozenset({"\u200d", "\ufe0e", "\ufe0f", "\u20e3"})


def is_emoji_only(text: str) -> bool:
    """Return ``True`` when ``text`` holds only emoji, symbols and spaces."""

    seen_symbol = False
    for char in text:
        if char.isspace() or char in _EMOJI_GLUE:
            continue
        # So: pictographs; Sk: skin-tone modifiers.
        if unicodedata.category(char) in ("So", "Sk"):
            seen_symbol = True
            continue
        return False
    return seen_symbol


def is_ack_only(text: Optional[str]) -> bool:
    """Return ``True`` for a short, intent-free acknowledgement.

    Questions and messages mentioning price or scheduling vocabulary are never
    acknowledgements. Otherwise an ack phrase qualifies up to 20 characters
    (60 when it starts with "thank"), any message up to 80 characters that
    opens with a thank-you qualifies, and emoji-only replies qualify.
    """

    normalized = normalize_text(text or "")
    if not normalized:
        return False
    if "?" in normalized:
        return False
    if INTENT_KEYWORDS_RE.search(normalized):
        return False
    if ACK_ONLY_RE.match(normalized):
        if len(normalized) <= 20:
            return True
        if len(normalized) <= 60 and normalized.startswith("thank"):
            return True
    if len(normalized) <= 80 and normalized.startswith(ACK_PREFIXES):
        return True
    return is_emoji_only(normalized)


def is_hard_negative_reply(text: Optional[str]) -> bool:
    """Return ``True`` for a bare "no", "nope" or "nah"."""

    stripped = HARD_NEGATIVE_STRIP_RE.sub("", normalize_text(text or "")).strip()
    return HARD_NEGATIVE_RE.match(stripped) is not None


def is_spam_content(text: Optional[str]) -> bool:
    """Return ``True`` when ``text`` has the shape of a conspiracy rant.

    What:
      Flags long messages dense with surveillance/corruption vocabulary.

    Why:
      Such rants rarely use the spam phrases customers type ("this is spam"),
      but still need to land in SPAM. The rule stays conservative so long,
      legitimate inquiries are never caught.

    How:
      Requires at least 180 normalised characters, two or more distinct rant
      terms, no question mark, no product vocabulary, and one of the stronger
      rant phrases.
    """

    normalized = normalize_text(text or "")
    if len(normalized) < SPAM_CONTENT_MIN_LENGTH:
        return False
    distinct_hits = {match.group(1) for match in RANT_VOCAB_RE.finditer(normalized)}
    if len(distinct_hits) < 2:
        return False
    if PRODUCT_INTENT_RE.search(normalized):
        return False
    if "?" in normalized:
        return False
    return SPAM_RANT_RE.search(normalized) is not None
