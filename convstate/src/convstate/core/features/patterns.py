"""convstate.core.features.patterns

What:
  The static pattern catalog consulted by the feature extractor, the
  explicit-lost sub-classifier, the deferral hint parser and the resolver's
  context checks.

Why:
  Every signal the engine derives from text comes from this table. Compiling
  the expressions once at import time keeps per-message extraction cheap, and
  a single module makes the vocabulary reviewable without reading control
  flow.

How:
  Module-level ``re.Pattern`` constants, case-insensitive unless stated
  otherwise, plus keyword tuples for the AI gate. Nothing in this module is
  mutated after import.

Invariants & Safety:
  - Patterns that operate on normalised text assume lower case and collapsed
    whitespace; the raw-body patterns carry ``re.IGNORECASE``.
  - Apostrophes accept both ASCII ``'`` and the typographic ``’``.
"""
from __future__ import annotations

import re
from typing import Dict, Tuple


_I = re.IGNORECASE

SEASONS: Tuple[str, ...] = ("spring", "summer", "fall", "autumn", "winter")
_SEASON_ALT = "|".join(SEASONS)

# Contact details and links
LINK_RE = re.compile(r"(https?://\S+)", _I)
PHONE_RE = re.compile(r"(?:(?:\+?\d{1,3})?[\s\-()]*)?(?:\d[\s\-()]*){8,}\d")
EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", _I)

# Price vocabulary
CURRENCY_RE = re.compile(r"(\$|€|£)\s?\d+|\d+(?:\.\d{2})?\s?(usd|eur|gbp|dollars)", _I)
PRICE_TERMS_RE = re.compile(r"(price|pricing|cost|quote|rate|budget)", _I)
PRICE_REJECTION_RE = re.compile(
    r"\b(too expensive|out of my budget|can't afford|cant afford|can['’]?t swing that"
    r"|price is too high|that's too high|thats too high|cant aford)\b",
    _I,
)
TOO_MUCH_RE = re.compile(r"\b(?:too|to|2)\s*much\b|\btoomuch\b", _I)
PRICE_CONTEXT_RE = re.compile(
    r"\b(price|pricing|cost|quote|budget|dollars?|usd|expensive|afford|payment|pay)\b", _I
)
POLITE_DECLINE_RE = re.compile(r"\b(thank(?:s| you)?|thank u|thx|ty)\b", _I)
WAIT_TO_PROCEED_RE = re.compile(
    r"\b(i['’]?ll have to wait|i will have to wait|have to wait|need to wait|hold off"
    r"|can['’]?t do (?:it )?right now|cant do (?:it )?right now)\b",
    _I,
)

# Deferral vocabulary
INDEFINITE_DEFERRAL_RE = re.compile(
    r"\b(maybe someday|someday|not right now|down the road|we['’]?ll see|not at this time"
    r"|circle back later|have to wait|need to wait|hold off)\b",
    _I,
)
DEFERRAL_TERMS_RE = re.compile(
    r"(next week|next month|tomorrow|remind me|check back|after"
    r"|in\s+\d{1,2}\s+days?|in\s+\d{1,2}\s+weeks?|in\s+\d{1,2}\s+months?"
    rf"|(?:this|next)\s+(?:{_SEASON_ALT})"
    rf"|(?:in|until|by|around|during)\s+(?:{_SEASON_ALT}))",
    _I,
)
DEFERRAL_CONTEXT_RE = re.compile(
    r"(follow up|follow-up|check back|circle back|reach out|later|sometime"
    r"|when the time comes|down the road)",
    _I,
)
NEXT_SEASON_RE = re.compile(rf"\b(?:until|in|by|around|during)?\s*next\s+({_SEASON_ALT})\b", _I)
THIS_SEASON_RE = re.compile(rf"\b(?:until|in|by|around|during)?\s*this\s+({_SEASON_ALT})\b", _I)
BARE_SEASON_RE = re.compile(rf"\b({_SEASON_ALT})\b", _I)
IN_DAYS_RE = re.compile(r"in\s+(\d{1,2})\s+days?", _I)
IN_WEEKS_RE = re.compile(r"in\s+(\d{1,2})\s+weeks?", _I)
IN_MONTHS_RE = re.compile(r"in\s+(\d{1,2})\s+months?", _I)
SEASON_HINT_RE = re.compile(r"^(this_|next_)?(spring|summer|fall|winter)$")

# Scheduling, opt-out, conversion and loss
OPT_OUT_RE = re.compile(r"(stop|unsubscribe|opt\s*out|do not contact|dont contact|remove me)", _I)
SCHEDULE_RE = re.compile(
    r"(schedule|scheduled|appointment|book|booking|meet|meeting|call|demo|reserve|reserved|reservation)",
    _I,
)
CONVERSION_RE = re.compile(r"\b(purchased|paid|signed|converted|closed|done deal|we went with)\b", _I)
LOSS_RE = re.compile(r"(not interested|no thanks|lost|we went with someone else|already have)", _I)
SYSTEM_ASSIGNMENT_RE = re.compile(
    r"assigned to.*automation|assigned through an automation|assigned by an automation", _I
)

# Spam
SPAM_RE = re.compile(r"\b(spam\w*|scam\w*|bots?|report\w*|fraud\w*|block you)\b", _I)
SPAM_RANT_RE = re.compile(
    r"\b(fbi|cia|city hall|corruption|conspiracy|government|police are|hacked my phone"
    r"|they are watching me|surveillance)\b",
    _I,
)
RANT_VOCAB_RE = re.compile(
    r"\b(fbi|cia|city hall|corruption|conspiracy|government|police|surveillance|hacked)\b", _I
)
PRODUCT_INTENT_RE = re.compile(
    r"\b(table|sofa|chair|desk|project|quote|delivery|finish|wood|dimensions?|measurements?"
    r"|price|budget|order)\b",
    _I,
)
SPAM_CONTENT_MIN_LENGTH = 180

# Acknowledgements
ACK_ONLY_RE = re.compile(r"^(thanks|thank you|you too|ok|okay|sounds good|thx|ty)[!.:\s-]*$", _I)
ACK_PREFIXES: Tuple[str, ...] = ("thank you", "thanks", "thx", "ty")
INTENT_KEYWORDS_RE = re.compile(
    r"(price|pricing|cost|quote|rate|budget|schedule|appointment|book|booking|meet|meeting"
    r"|call|demo|tomorrow|next|after|remind|check back|follow up)",
    _I,
)
HARD_NEGATIVE_RE = re.compile(r"^(no|nope|nah)$")
HARD_NEGATIVE_STRIP_RE = re.compile(r"[.!?,]+")

# Explicit-lost cascade (normalised text)
LOST_NOT_INTENTIONAL_RE = re.compile(
    r"\b(wrong button|didn['’]?t mean to|didnt mean to|accidental|mistake)\b", _I
)
LOST_BOUGHT_ELSEWHERE_RE = re.compile(
    r"\b(bought one|bought it|already bought|already purchased|already ordered|purchased elsewhere)\b",
    _I,
)
LOST_CHOSE_EXISTING_RES: Tuple[re.Pattern, ...] = (
    re.compile(r"\b(decided (?:just )?(?:to )?keep|going to keep|keep what i have|keeping what i have)\b", _I),
    re.compile(r"\b(i have an?.*(so|and) i(’|')?m going to keep)\b", _I),
    re.compile(r"\b(already have)\b", _I),
)
LOST_PRICE_OUT_OF_RANGE_RE = re.compile(
    r"\b(out of (my )?price range|can['’]?t afford|cant afford|beyond my budget|out of my budget)\b", _I
)
LOST_EXPLICIT_DECLINE_RE = re.compile(
    r"\b(no[, ]+thank(s| you)|no thanks|not interested|i['’]?m not interested|we['’]?re not interested)\b",
    _I,
)
LOST_EXPLICIT_DECLINE_GUARD_RE = re.compile(
    r"\b(right now|at the moment|yet|maybe|later|in the future|when the time comes)\b", _I
)
LOST_INDEFINITE_DECLINE_RE = re.compile(
    r"\b(not my time|not right now|not at this time|can['’]?t do this now|not ready)\b", _I
)
LOST_INDEFINITE_FUTURE_RE = re.compile(
    r"\b(someday|one day|when the time comes|in the future|possibly|if.*going strong|when.*doors open)\b",
    _I,
)
LOST_INDEFINITE_GUARD_RE = re.compile(r"\b(check back|reach out again|follow up)\b", _I)
LOST_TIMING_NOT_NOW_RE = re.compile(r"\b(not right now|not my time|not at this time)\b", _I)
LOST_TIMING_MAX_LENGTH = 40
LOST_FEASIBILITY_RE = re.compile(
    r"\b(won['’]?t work|probably won['’]?t work|won['’]?t fit|doesn['’]?t fit)\b", _I
)
FEASIBILITY_CONTEXT_RE = re.compile(
    r"\b(dimensions?|size|fit|apartment|room|feet|foot|inches|\d{2,3}(\")?)\b", _I
)

# AI gate keywords, matched as substrings of normalised text
HANDOFF_KEYWORDS: Tuple[str, ...] = (
    "call",
    "phone",
    "text",
    "sms",
    "cell",
    "number",
    "reach out",
    "offline",
    "email",
    "contact me",
    "whatsapp",
)
DEFER_KEYWORDS: Tuple[str, ...] = (
    "next",
    "later",
    "after",
    "holiday",
    "holidays",
    "month",
    "week",
    "year",
    "q1",
    "q2",
    "q3",
    "q4",
    "summer",
    "winter",
    "spring",
    "fall",
    "circle back",
    "touch base",
    "check back",
)

# Mock interpreter vocabulary
MOCK_DEFERRED_RE = re.compile(
    r"(next month|after the holidays|after holidays|next week|next quarter|next year)", _I
)
MOCK_HANDOFF_RE = re.compile(r"(call me|text me|reach out|contact me|phone|whatsapp)", _I)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Trim, lower-case and collapse whitespace runs to a single space."""

    return _WHITESPACE_RE.sub(" ", value.strip().lower())


# Month/day a bare or qualified season resolves to (noon UTC).
SEASON_ANCHORS: Dict[str, Tuple[int, int]] = {
    "spring": (4, 15),
    "summer": (7, 15),
    "fall": (10, 15),
    "winter": (1, 15),
}
