"""Rule-hit builder and message annotation.

What:
  Map a :class:`MessageFeatures` record to the ordered tuple of rule tags the
  resolver looks up, and bundle message, features and tags into an
  :class:`AnnotatedMessage`.

Why:
  Tags give the resolver cheap ``has_rule`` checks without re-inspecting
  text, and they double as a human-readable explanation of what fired on each
  message.

How:
  :data:`RULE_TABLE` lists ``(tag, predicate)`` pairs in emission order; the
  builder keeps the tags whose predicate holds and drops duplicates. Explicit
  lost evidence contributes a dynamic ``EXPLICIT_<code>`` tag at the end.

Interfaces:
  :data:`RULE_TABLE`, :func:`build_rule_hits`, :func:`annotate_message`,
  :func:`annotate_messages`.
"""
from __future__ import annotations

from typing import Callable, Iterable, List, Tuple

from .features.extract import extract_features
from .features.schema import AnnotatedMessage, Message, MessageFeatures


RulePredicate = Callable[[MessageFeatures], bool]

RULE_TABLE: Tuple[Tuple[str, RulePredicate], ...] = (
    ("SPAM_PHRASE_MATCH", lambda f: f.contains_spam_phrase),
    ("SPAM_CONTENT", lambda f: f.has_spam_content),
    ("CONVERSION_PHRASE", lambda f: f.contains_conversion_phrase and not f.contains_system_assignment),
    ("SYSTEM_ASSIGNMENT", lambda f: f.contains_system_assignment),
    ("LOSS_PHRASE", lambda f: f.contains_loss_phrase),
    ("PHONE_OR_EMAIL", lambda f: f.has_phone_number or f.has_email),
    ("DEFERRAL_PHRASE", lambda f: f.contains_deferral_phrase),
    ("PRICE_REJECTION", lambda f: f.has_price_rejection_phrase),
    ("WAIT_TO_PROCEED", lambda f: f.has_price_rejection_phrase and f.has_indefinite_deferral_phrase),
    ("INDEFINITE_DEFERRAL", lambda f: f.has_indefinite_deferral_phrase),
    ("PRICE_MENTION", lambda f: f.has_currency),
    ("SCHEDULE_MENTION", lambda f: f.contains_schedule_terms),
    ("OPT_OUT", lambda f: f.contains_opt_out),
    ("LINK", lambda f: f.has_link),
    ("ACK_ONLY", lambda f: f.ack_only),
)


def build_rule_hits(features: MessageFeatures) -> Tuple[str, ...]:
    """Return the rule tags asserted by ``features`` in emission order."""

    hits: List[str] = []
    for tag, predicate in RULE_TABLE:
        if predicate(features) and tag not in hits:
            hits.append(tag)
    if features.explicit_lost is not None:
        tag = f"EXPLICIT_{features.explicit_lost.reason_code}"
        if tag not in hits:
            hits.append(tag)
    return tuple(hits)


def annotate_message(message: Message) -> AnnotatedMessage:
    """Extract features and rule hits for ``message``.

    Any AI sub-record already attached to ``message`` is carried over to the
    feature record untouched.
    """

    features = extract_features(message.text, message.direction)
    if message.ai is not None:
        features = features.with_ai(message.ai)
    return AnnotatedMessage(
        id=message.id,
        direction=message.direction,
        text=message.text,
        created_at=message.created_at,
        message_type=message.message_type,
        features=features,
        rule_hits=build_rule_hits(features),
    )


def annotate_messages(messages: Iterable[Message]) -> List[AnnotatedMessage]:
    return [annotate_message(message) for message in messages]
