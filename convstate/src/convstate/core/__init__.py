"""Aggregated exports for convstate's inference core.

What:
  Provide a light-weight facade over the resolver, the rule-hit builder, the
  feature extractor, the AI contract and the audit helpers.

Why:
  The CLI's ``features`` command only needs the extractor; importing the AI
  runner and audit builder eagerly would pull in the whole stack for nothing.

How:
  Defines ``__all__`` explicitly and implements ``__getattr__`` to import the
  owning submodule on first access.

Invariants & Safety:
  - Only names listed in ``__all__`` are resolved; anything else raises
    :class:`AttributeError`.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ConversationInference",
    "InferenceEngine",
    "infer_conversation",
    "annotate_message",
    "annotate_messages",
    "build_rule_hits",
    "extract_features",
    "ConversationState",
    "Confidence",
    "AiInterpreter",
    "run_ai_attempt",
    "augment_messages",
    "build_feature_snapshot",
    "resolve_computed_classification",
]


def __getattr__(name: str) -> Any:
    """Resolve attributes lazily from their owning submodule.

    Raises:
      AttributeError: If ``name`` is not part of the public surface.
    """

    if name in {"ConversationInference", "InferenceEngine", "infer_conversation"}:
        from . import engine

        return getattr(engine, name)
    if name in {"annotate_message", "annotate_messages", "build_rule_hits"}:
        from . import rule_hits

        return getattr(rule_hits, name)
    if name == "extract_features":
        from . import features

        return features.extract_features
    if name in {"ConversationState", "Confidence"}:
        from . import states

        return getattr(states, name)
    if name in {"AiInterpreter", "run_ai_attempt", "augment_messages"}:
        from . import ai_contract

        return getattr(ai_contract, name)
    if name in {"build_feature_snapshot", "resolve_computed_classification"}:
        from . import audit

        return getattr(audit, name)
    raise AttributeError(name)
