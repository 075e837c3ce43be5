"""convstate.core.cascade

What:
  Hold the derived signals of one conversation in a :class:`ResolutionContext`
  and map them to a base verdict through an ordered list of
  :class:`CascadeRule` entries.

Why:
  The priority order between hard terminals (opt-out, blocks, spam,
  conversions, explicit losses) and softer states (off-platform, deferral,
  productivity tiers) is the heart of the classifier. Keeping it as data makes
  the precedence readable top to bottom and lets tests pin individual rules.

How:
  - The engine builds a frozen context once per resolution.
  - :func:`run_cascade` walks :data:`CASCADE` and returns the outcome of the
    first rule whose predicate holds; the final rule always matches.
  - Outcomes carry the state, confidence, reasons, optional due date, the
    triggering message id and where the due date came from.

Interfaces:
  :class:`ResolutionContext`, :class:`CascadeOutcome`, :class:`CascadeRule`,
  :data:`CASCADE`, :func:`run_cascade`.

Invariants:
  - Rules never read the wall clock; ``ctx.now`` is the only notion of time.
  - Exactly one rule fires per resolution.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .features.hints import is_season_hint
from .features.schema import AnnotatedMessage, ExplicitLostEvidence
from .scheduler import (
    DUE_SOURCE_AI,
    DUE_SOURCE_CUSTOMER,
    DUE_SOURCE_DEFAULT,
    derive_followup_due_at,
)
from .states import Confidence, ConversationState, EvidencedReason, Reason, SimpleReason


@dataclass(frozen=True)
class ResolutionContext:
    """Conversation-level signals consumed by the cascade and escalations.

    Attributes:
      now: Reference time of the resolution.
      defer_default_days: Offset used when a deferral carries no usable hint.
      explicit_lost: ``(message, evidence)`` selected by explicit-lost order.
      off_platform_reason: ``PHONE_OR_EMAIL`` or ``AI_HANDOFF`` when set.
      use_ai_deferral: Deferral comes from the AI sub-record, not the text.
      deferral_base: Timestamp of the last deferral signal, if parseable.
    """

    now: datetime
    defer_default_days: int
    inbound_count: int = 0
    outbound_count: int = 0
    has_opt_out: bool = False
    blocked_by_recipient: bool = False
    bounced_by_provider: bool = False
    has_spam_phrase_match: bool = False
    has_spam_content: bool = False
    spam_context_confirmed: bool = False
    has_conversion: bool = False
    explicit_lost: Optional[Tuple[AnnotatedMessage, ExplicitLostEvidence]] = None
    has_loss: bool = False
    has_price_rejection: bool = False
    has_indefinite_deferral: bool = False
    has_concrete_deferral: bool = False
    has_off_platform: bool = False
    off_platform_reason: Optional[str] = None
    has_deferral: bool = False
    use_ai_deferral: bool = False
    ai_deferred_due_at: Optional[datetime] = None
    deferral_hint: Optional[str] = None
    deferral_base: Optional[datetime] = None
    has_price: bool = False


@dataclass
class CascadeOutcome:
    """Base verdict produced by the first matching cascade rule."""

    state: ConversationState
    confidence: Confidence
    reasons: List[Reason] = field(default_factory=list)
    followup_due_at: Optional[datetime] = None
    followup_due_source: Optional[str] = None
    trigger_message_id: Optional[str] = None


@dataclass(frozen=True)
class CascadeRule:
    name: str
    applies: Callable[[ResolutionContext], bool]
    build: Callable[[ResolutionContext], CascadeOutcome]


def _tagged(state: ConversationState, confidence: Confidence, *tags: str) -> CascadeOutcome:
    return CascadeOutcome(state, confidence, [SimpleReason(tag) for tag in tags])


def _spam(ctx: ResolutionContext) -> CascadeOutcome:
    tags = ["SPAM_PHRASE_MATCH", "SPAM_CONTEXT_CONFIRMED"]
    if ctx.has_spam_content:
        tags.append("SPAM_CONTENT")
    return _tagged(ConversationState.SPAM, Confidence.HIGH, *tags)


def _explicit_lost(ctx: ResolutionContext) -> CascadeOutcome:
    if ctx.explicit_lost is None:
        raise ValueError("explicit_lost rule requires explicit-lost evidence")
    message, evidence = ctx.explicit_lost
    return CascadeOutcome(
        state=ConversationState.LOST,
        confidence=evidence.confidence,
        reasons=[EvidencedReason(evidence.reason_code, evidence.confidence, evidence.evidence)],
        trigger_message_id=message.id,
    )


def _indefinite_deferral(ctx: ResolutionContext) -> CascadeOutcome:
    tags = ["INDEFINITE_DEFERRAL"]
    if ctx.has_price_rejection:
        tags.append("WAIT_TO_PROCEED")
    return _tagged(ConversationState.LOST, Confidence.MEDIUM, *tags)


def _off_platform(ctx: ResolutionContext) -> CascadeOutcome:
    tags = [ctx.off_platform_reason] if ctx.off_platform_reason else []
    return _tagged(ConversationState.OFF_PLATFORM, Confidence.MEDIUM, *tags)


def _deferred(ctx: ResolutionContext) -> CascadeOutcome:
    if ctx.use_ai_deferral:
        outcome = _tagged(ConversationState.DEFERRED, Confidence.MEDIUM, "AI_DEFERRED")
        if ctx.ai_deferred_due_at is not None:
            outcome.followup_due_at = ctx.ai_deferred_due_at
            outcome.followup_due_source = DUE_SOURCE_AI
        else:
            outcome.followup_due_at = derive_followup_due_at(None, ctx.now, ctx.defer_default_days)
            outcome.followup_due_source = DUE_SOURCE_DEFAULT
        return outcome

    tags = ["DEFERRAL_PHRASE"]
    if is_season_hint(ctx.deferral_hint):
        tags.append("DEFERRAL_SEASON_PARSED")
    outcome = _tagged(ConversationState.DEFERRED, Confidence.MEDIUM, *tags)
    base = ctx.deferral_base or ctx.now
    outcome.followup_due_at = derive_followup_due_at(ctx.deferral_hint, base, ctx.defer_default_days)
    outcome.followup_due_source = DUE_SOURCE_CUSTOMER if ctx.deferral_hint else DUE_SOURCE_DEFAULT
    return outcome


def _activity_tier(ctx: ResolutionContext) -> CascadeOutcome:
    inbound, outbound = ctx.inbound_count, ctx.outbound_count
    if inbound >= 4 and outbound >= 4:
        return _tagged(ConversationState.HIGHLY_PRODUCTIVE, Confidence.MEDIUM)
    if inbound >= 2 and outbound >= 2:
        return _tagged(ConversationState.PRODUCTIVE, Confidence.MEDIUM)
    if inbound >= 1 and outbound >= 1:
        return _tagged(ConversationState.ENGAGED, Confidence.LOW)
    return _tagged(ConversationState.NEW, Confidence.LOW)


CASCADE: Tuple[CascadeRule, ...] = (
    CascadeRule(
        "opt_out",
        lambda ctx: ctx.has_opt_out,
        lambda ctx: _tagged(ConversationState.LOST, Confidence.HIGH, "OPT_OUT"),
    ),
    CascadeRule(
        "blocked",
        lambda ctx: ctx.blocked_by_recipient,
        lambda ctx: _tagged(ConversationState.LOST, Confidence.HIGH, "BLOCKED_BY_RECIPIENT"),
    ),
    CascadeRule(
        "bounced",
        lambda ctx: ctx.bounced_by_provider,
        lambda ctx: _tagged(ConversationState.LOST, Confidence.HIGH, "BOUNCED"),
    ),
    CascadeRule("spam", lambda ctx: ctx.has_spam_phrase_match and ctx.spam_context_confirmed, _spam),
    CascadeRule(
        "conversion",
        lambda ctx: ctx.has_conversion,
        lambda ctx: _tagged(ConversationState.CONVERTED, Confidence.HIGH, "CONVERSION_PHRASE"),
    ),
    CascadeRule("explicit_lost", lambda ctx: ctx.explicit_lost is not None, _explicit_lost),
    CascadeRule(
        "loss_phrase",
        lambda ctx: ctx.has_loss,
        lambda ctx: _tagged(ConversationState.LOST, Confidence.HIGH, "LOSS_PHRASE"),
    ),
    CascadeRule(
        "indefinite_deferral",
        lambda ctx: ctx.has_indefinite_deferral and not ctx.has_concrete_deferral,
        _indefinite_deferral,
    ),
    CascadeRule("off_platform", lambda ctx: ctx.has_off_platform, _off_platform),
    CascadeRule("deferred", lambda ctx: ctx.has_deferral, _deferred),
    CascadeRule(
        "price_given",
        lambda ctx: ctx.has_price,
        lambda ctx: _tagged(ConversationState.PRICE_GIVEN, Confidence.MEDIUM, "PRICE_MENTION"),
    ),
    CascadeRule("activity", lambda ctx: True, _activity_tier),
)


def run_cascade(ctx: ResolutionContext) -> Tuple[str, CascadeOutcome]:
    """Return the name and outcome of the first matching rule."""

    for rule in CASCADE:
        if rule.applies(ctx):
            return rule.name, rule.build(ctx)
    raise RuntimeError("cascade exhausted without a fallback rule")  # pragma: no cover
