"""convstate.core.features.extract

What:
  Turn one message's text and direction into a :class:`MessageFeatures`
  record.

Why:
  The resolver reasons over signals, not prose. Extracting every signal in a
  single pure pass keeps the per-message cost predictable and lets the same
  record be cached alongside the message.

How:
  - Strip the first link before phone and schedule matching so URLs with long
    digit runs or words like "book" do not masquerade as contact details or
    scheduling.
  - Gate the customer-intent signals (ack-only, explicit-lost, price
    rejection, indefinite deferral, spam) on inbound direction; business copy
    must never make a conversation look lost or spammy.
  - Evaluate price rejection in two tiers: explicit phrases, or a "too much" /
    "have to wait" token combined with price or polite-decline vocabulary.

Interfaces:
  :func:`extract_features`.

Invariants & Safety:
  - Never raises; absent matches yield ``False`` / ``None``.
  - The ``ai`` field is left empty; it is attached by the upstream runner.
"""
from __future__ import annotations

from typing import Optional

from .explicit_lost import detect_explicit_lost
from .heuristics import is_ack_only, is_spam_content
from .hints import infer_deferral_hint
from .patterns import (
    CONVERSION_RE,
    CURRENCY_RE,
    DEFERRAL_TERMS_RE,
    EMAIL_RE,
    INDEFINITE_DEFERRAL_RE,
    LINK_RE,
    LOSS_RE,
    OPT_OUT_RE,
    PHONE_RE,
    POLITE_DECLINE_RE,
    PRICE_CONTEXT_RE,
    PRICE_REJECTION_RE,
    PRICE_TERMS_RE,
    SCHEDULE_RE,
    SPAM_RE,
    SYSTEM_ASSIGNMENT_RE,
    TOO_MUCH_RE,
    WAIT_TO_PROCEED_RE,
    normalize_text,
)
from .schema import MessageFeatures


def _has_price_rejection(normalized: str) -> bool:
    if PRICE_REJECTION_RE.search(normalized):
        return True
    softened = TOO_MUCH_RE.search(normalized) or WAIT_TO_PROCEED_RE.search(normalized)
    if not softened:
        return False
    return bool(PRICE_CONTEXT_RE.search(normalized) or POLITE_DECLINE_RE.search(normalized))


def extract_features(text: Optional[str], direction: str = "inbound") -> MessageFeatures:
    """Extract the signal record for a single message.

    Args:
      text: Message body; ``None`` is treated as an empty string.
      direction: ``inbound`` or ``outbound``.

    Returns:
      A frozen :class:`MessageFeatures` instance.
    """

    body = text or ""
    normalized = normalize_text(body)
    body_without_links = LINK_RE.sub("", body, count=1)
    inbound = direction == "inbound"
    hint = infer_deferral_hint(body)
    spam_content = inbound and is_spam_content(body)

    return MessageFeatures(
        has_phone_number=PHONE_RE.search(body_without_links) is not None,
        has_email=EMAIL_RE.search(body) is not None,
        has_price_rejection_phrase=inbound and _has_price_rejection(normalized),
        has_indefinite_deferral_phrase=(
            inbound and hint is None and INDEFINITE_DEFERRAL_RE.search(normalized) is not None
        ),
        has_spam_content=spam_content,
        has_currency=CURRENCY_RE.search(body) is not None,
        contains_price_terms=PRICE_TERMS_RE.search(body) is not None,
        contains_opt_out=OPT_OUT_RE.search(body) is not None,
        contains_schedule_terms=SCHEDULE_RE.search(body_without_links) is not None,
        contains_deferral_phrase=DEFERRAL_TERMS_RE.search(body) is not None,
        deferral_date_hint=hint,
        contains_conversion_phrase=CONVERSION_RE.search(body) is not None,
        contains_loss_phrase=LOSS_RE.search(body) is not None,
        contains_spam_phrase=inbound and (SPAM_RE.search(body) is not None or spam_content),
        contains_system_assignment=SYSTEM_ASSIGNMENT_RE.search(body) is not None,
        has_link=LINK_RE.search(body) is not None,
        message_length=len(body),
        ack_only=inbound and is_ack_only(body),
        explicit_lost=detect_explicit_lost(body) if inbound else None,
    )
