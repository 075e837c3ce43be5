"""convstate.core.features

What:
  Per-message signal extraction: the pattern catalog, the extractor, the
  explicit-lost sub-classifier, the deferral hint parser and the record types
  they produce.

Why:
  Everything the resolver knows about a message comes through this package,
  so it is the single place to review when a phrase is misclassified.

Interfaces:
  :func:`extract_features`, :func:`detect_explicit_lost`,
  :func:`infer_deferral_hint`, :func:`is_ack_only`,
  :func:`is_hard_negative_reply`, :func:`is_spam_content`, and the record
  types from :mod:`convstate.core.features.schema`.
"""
from __future__ import annotations

from .explicit_lost import EXPLICIT_LOST_ORDER, detect_explicit_lost
from .extract import extract_features
from .heuristics import is_ack_only, is_hard_negative_reply, is_spam_content
from .hints import infer_deferral_hint, is_season_hint
from .schema import (
    AiDeferred,
    AiFeatures,
    AiHandoff,
    AiInterpretation,
    AnnotatedMessage,
    ExplicitLostEvidence,
    Message,
    MessageFeatures,
    attach_ai,
)

__all__ = [
    "EXPLICIT_LOST_ORDER",
    "AiDeferred",
    "AiFeatures",
    "AiHandoff",
    "AiInterpretation",
    "AnnotatedMessage",
    "ExplicitLostEvidence",
    "Message",
    "MessageFeatures",
    "attach_ai",
    "detect_explicit_lost",
    "extract_features",
    "infer_deferral_hint",
    "is_ack_only",
    "is_hard_negative_reply",
    "is_season_hint",
    "is_spam_content",
]
