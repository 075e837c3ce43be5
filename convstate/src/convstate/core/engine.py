"""convstate.core.engine

What:
  Resolve a conversation's lifecycle state, confidence, reasons and follow-up
  guidance from its annotated message history, the previously persisted state
  and the current time.

Why:
  Follow-up queues are prioritised by this verdict. It must be reproducible
  (same inputs, same bytes), explainable (every verdict lists the reasons that
  produced it) and robust against sloppy upstream data such as missing text or
  malformed timestamps.

How:
  - Sort the history by parsed timestamp and fold it once to collect counts,
    last-seen times, the active deferral hint and the last rejection time.
  - Derive conversation-level signals (explicit loss, off-platform handoff,
    spam context, deferral freshness) into a
    :class:`~convstate.core.cascade.ResolutionContext`.
  - Run the priority cascade, then apply the time-based escalations,
    resurrection, follow-up policy, inactivity timeout and price staleness in
    that order, then strip follow-up guidance from terminal verdicts.

Interfaces:
  :class:`ConversationInference`, :class:`InferenceEngine`,
  :func:`infer_conversation`.

Invariants & Safety:
  - Never raises for malformed timestamps or missing text; the corresponding
    signals are treated as absent.
  - Terminal states never carry a follow-up suggestion or ``needs_followup``.
  - The wall clock is consulted only when the caller passes no ``now``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..config.schema import InferenceConfig
from ..utils.logging import JsonLogger
from ..utils.timeutils import (
    TimestampLike,
    days_between,
    ensure_utc,
    format_timestamp,
    hours_between,
    parse_timestamp,
    utc_now,
)
from .cascade import ResolutionContext, run_cascade
from .features.explicit_lost import (
    EXPLICIT_LOST_ORDER,
    LOST_FEASIBILITY,
    LOST_INACTIVE_TIMEOUT,
    LOST_TIMING_NOT_NOW,
)
from .features.patterns import FEASIBILITY_CONTEXT_RE, PRODUCT_INTENT_RE
from .features.schema import AnnotatedMessage, ExplicitLostEvidence, Message
from .rule_hits import annotate_message
from .scheduler import (
    DUE_SOURCE_DEFAULT,
    add_business_days,
    date_only_to_datetime,
    detect_resurrection,
    has_rejection_revival,
    map_deferred_bucket_to_date,
)
from .states import (
    TERMINAL_STATES,
    Confidence,
    ConversationState,
    EvidencedReason,
    Reason,
    SimpleReason,
    has_reason,
    parse_state,
    reason_codes_from_reasons,
    reasons_to_json,
    without_reasons,
)


SNIPPET_MAX_CHARS = 140
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DEFERRAL_FRESHNESS = timedelta(days=1)
_REPLY_TAGS = ("UNREPLIED", "SLA_BREACH")

SUGGEST_LATER = "Follow up later"
SUGGEST_NOW = "Follow up now"
SUGGEST_REPLY = "Reply recommended"
SUGGEST_OFF_PLATFORM = "Visibility lost (off-platform)"

MessageLike = Union[AnnotatedMessage, Message, Mapping[str, Any]]
TimelineEntry = Tuple[AnnotatedMessage, Optional[datetime]]


@dataclass(frozen=True)
class ConversationInference:
    """Verdict for one conversation.

    Timestamps of the ``last_*`` fields echo the message ``created_at``
    strings; ``followup_due_at`` is rendered in the canonical millisecond
    ``Z`` form.
    """

    state: ConversationState
    confidence: Confidence
    reasons: Tuple[Reason, ...] = field(default_factory=tuple)
    followup_due_at: Optional[str] = None
    followup_suggestion: Optional[str] = None
    last_inbound_at: Optional[str] = None
    last_outbound_at: Optional[str] = None
    last_message_at: Optional[str] = None
    message_count: int = 0
    inbound_count: int = 0
    outbound_count: int = 0
    last_snippet: Optional[str] = None
    resurrected: bool = False
    needs_followup: bool = False
    state_trigger_message_id: Optional[str] = None
    followup_due_source: Optional[str] = None

    @property
    def reason_codes(self) -> List[str]:
        return reason_codes_from_reasons(self.reasons)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "confidence": self.confidence.value,
            "reasons": list(reasons_to_json(self.reasons)),
            "followup_due_at": self.followup_due_at,
            "followup_suggestion": self.followup_suggestion,
            "last_inbound_at": self.last_inbound_at,
            "last_outbound_at": self.last_outbound_at,
            "last_message_at": self.last_message_at,
            "message_count": self.message_count,
            "inbound_count": self.inbound_count,
            "outbound_count": self.outbound_count,
            "last_snippet": self.last_snippet,
            "resurrected": self.resurrected,
            "needs_followup": self.needs_followup,
            "state_trigger_message_id": self.state_trigger_message_id,
            "followup_due_source": self.followup_due_source,
        }


def coalesce_snippet(text: Optional[str]) -> Optional[str]:
    """Trim ``text`` into a preview, ``None`` when blank."""

    if not text:
        return None
    trimmed = text.strip()
    if not trimmed:
        return None
    if len(trimmed) > SNIPPET_MAX_CHARS:
        return f"{trimmed[:SNIPPET_MAX_CHARS - 3]}..."
    return trimmed


def _as_annotated(item: MessageLike) -> AnnotatedMessage:
    if isinstance(item, AnnotatedMessage):
        return item
    if isinstance(item, Message):
        return annotate_message(item)
    return annotate_message(Message.from_dict(item))


def _build_timeline(messages: Sequence[MessageLike]) -> List[TimelineEntry]:
    """Annotate and stable-sort ``messages``; unparsable timestamps go first."""

    entries = [(message, parse_timestamp(message.created_at)) for message in map(_as_annotated, messages)]
    return sorted(entries, key=lambda entry: (entry[1] is not None, entry[1] or _EPOCH))


@dataclass
class _Aggregate:
    """Running totals collected by the single pass over the timeline."""

    inbound_count: int = 0
    outbound_count: int = 0
    last_inbound_at: Optional[str] = None
    last_outbound_at: Optional[str] = None
    last_message_at: Optional[str] = None
    last_non_final_at: Optional[str] = None
    last_non_final_direction: Optional[str] = None
    last_snippet: Optional[str] = None
    deferral_hint: Optional[str] = None
    last_deferral_at: Optional[datetime] = None
    last_rejection_at: Optional[datetime] = None


def _aggregate(timeline: Sequence[TimelineEntry]) -> _Aggregate:
    agg = _Aggregate()
    for message, at in timeline:
        if not message.is_final_touch:
            if message.is_inbound:
                agg.inbound_count += 1
                agg.last_inbound_at = message.created_at
            else:
                agg.outbound_count += 1
                agg.last_outbound_at = message.created_at
            agg.last_non_final_at = message.created_at
            agg.last_non_final_direction = message.direction
        agg.last_snippet = coalesce_snippet(message.text) or agg.last_snippet
        agg.last_message_at = message.created_at
        if not message.is_inbound:
            continue
        features = message.features
        if features.contains_deferral_phrase:
            agg.deferral_hint = features.deferral_date_hint or agg.deferral_hint
            agg.last_deferral_at = at
        if features.deferral_date_hint:
            agg.deferral_hint = features.deferral_date_hint
            agg.last_deferral_at = at
        if features.ai is not None and features.ai.is_deferred:
            agg.last_deferral_at = at
        if features.has_price_rejection_phrase:
            agg.last_rejection_at = at
        if features.has_indefinite_deferral_phrase:
            agg.last_deferral_at = at
    return agg


def _has_future_intent(message: AnnotatedMessage) -> bool:
    features = message.features
    ai_deferred = features.ai is not None and features.ai.is_deferred
    return features.contains_deferral_phrase or bool(features.deferral_date_hint) or ai_deferred


def _select_explicit_lost(
    inbound: Sequence[AnnotatedMessage],
    feasibility_context: bool,
) -> Optional[Tuple[AnnotatedMessage, ExplicitLostEvidence]]:
    """Pick the explicit-lost evidence the verdict should cite.

    The latest inbound message wins per code; codes are then tried in
    :data:`EXPLICIT_LOST_ORDER`. Feasibility needs dimensional context
    somewhere in the thread and a timing objection is ignored when the same
    message also expresses future intent.
    """

    by_code: Dict[str, Tuple[AnnotatedMessage, ExplicitLostEvidence]] = {}
    for message in inbound:
        evidence = message.features.explicit_lost
        if evidence is not None:
            by_code[evidence.reason_code] = (message, evidence)
    for code in EXPLICIT_LOST_ORDER:
        candidate = by_code.get(code)
        if candidate is None:
            continue
        if code == LOST_FEASIBILITY and not feasibility_context:
            continue
        if code == LOST_TIMING_NOT_NOW and _has_future_intent(candidate[0]):
            continue
        return candidate
    return None


def _detect_off_platform(timeline: Sequence[TimelineEntry]) -> bool:
    """Return ``True`` when shared contact details moved the thread elsewhere.

    Visibility is lost when nothing follows the last contact share, or when
    only one side kept writing. If both sides kept writing, the thread only
    counts as off-platform when that chatter is about scheduling or more
    contact details.
    """

    anchor_index = None
    for index in range(len(timeline) - 1, -1, -1):
        if timeline[index][0].has_rule("PHONE_OR_EMAIL"):
            anchor_index = index
            break
    if anchor_index is None:
        return False
    anchor_at = timeline[anchor_index][1]
    after = [
        message
        for message, at in timeline[anchor_index + 1:]
        if anchor_at is None or (at is not None and at > anchor_at)
    ]
    if not after:
        return True
    inbound_after = any(message.is_inbound for message in after)
    outbound_after = any(not message.is_inbound for message in after)
    if inbound_after and outbound_after:
        return any(
            message.has_rule("SCHEDULE_MENTION") or message.has_rule("PHONE_OR_EMAIL")
            for message in after
        )
    return True


def _ai_deferred_due(message: Optional[AnnotatedMessage], now: datetime) -> Optional[datetime]:
    if message is None or message.ai is None or message.ai.interpretation is None:
        return None
    deferred = message.ai.interpretation.deferred
    if not deferred.is_deferred:
        return None
    if deferred.due_date_iso:
        return date_only_to_datetime(deferred.due_date_iso)
    if deferred.bucket:
        return date_only_to_datetime(map_deferred_bucket_to_date(deferred.bucket, now))
    return None


class InferenceEngine:
    """Stateless resolver bound to one set of thresholds.

    What:
      Applies :class:`~convstate.config.schema.InferenceConfig` thresholds to
      message histories through :meth:`infer`.

    Why:
      Batch callers resolve thousands of conversations with the same tenant
      configuration; binding the thresholds and the logger once keeps each
      call a plain function of its inputs.

    How:
      :meth:`infer` builds the timeline and context, runs the cascade, then
      applies the post-cascade adjustments in a fixed order.
    """

    def __init__(self, config: Optional[InferenceConfig] = None, logger: Optional[JsonLogger] = None) -> None:
        self.config = config or InferenceConfig()
        self.logger = logger

    def infer(
        self,
        messages: Sequence[MessageLike],
        *,
        previous_state: Union[ConversationState, str, None] = None,
        previous_evaluated_at: TimestampLike = None,
        final_touch_sent_at: TimestampLike = None,
        blocked_by_recipient: bool = False,
        bounced_by_provider: bool = False,
        now: Optional[datetime] = None,
    ) -> ConversationInference:
        """Resolve the state of one conversation.

        Args:
          messages: History in any order; plain messages and mappings are
            annotated on the fly.
          previous_state: Last persisted state, used for resurrection.
          previous_evaluated_at: When ``previous_state`` was computed.
          final_touch_sent_at: Set when a last-ditch message was sent.
          blocked_by_recipient: The platform reported the customer blocked us.
          bounced_by_provider: Delivery to the customer failed permanently.
          now: Reference time; defaults to the wall clock.

        Returns:
          The :class:`ConversationInference` verdict.
        """

        cfg = self.config
        now = ensure_utc(now) if now is not None else utc_now()
        timeline = _build_timeline(messages)
        agg = _aggregate(timeline)

        inbound_entries = [(message, at) for message, at in timeline if message.is_inbound]
        inbound = [message for message, _ in inbound_entries]
        last_inbound = inbound[-1] if inbound else None
        all_messages = [message for message, _ in timeline]

        last_inbound_ts = parse_timestamp(agg.last_inbound_at)
        last_outbound_ts = parse_timestamp(agg.last_outbound_at)
        last_message_ts = parse_timestamp(agg.last_message_at)
        last_non_final_ts = parse_timestamp(agg.last_non_final_at)
        days_since_inbound = days_between(now, last_inbound_ts) if last_inbound_ts else None
        days_since_activity = days_between(now, last_message_ts) if last_message_ts else None

        feasibility_context = any(FEASIBILITY_CONTEXT_RE.search(m.text or "") for m in all_messages)
        explicit_lost = _select_explicit_lost(inbound, feasibility_context)

        has_explicit_contact = any(m.features.has_phone_number or m.features.has_email for m in all_messages)
        has_explicit_deferral = any(m.features.deferral_date_hint for m in inbound)
        ai_handoff_message = None
        if not has_explicit_contact:
            ai_handoff_message = next((m for m in reversed(inbound) if m.ai and m.ai.is_handoff), None)
        ai_deferred_message = None
        if not has_explicit_deferral:
            ai_deferred_message = next((m for m in reversed(inbound) if m.ai and m.ai.is_deferred), None)
        ai_deferred_due_at = _ai_deferred_due(ai_deferred_message, now)

        has_off_platform = False
        off_platform_reason = None
        if has_explicit_contact:
            has_off_platform = _detect_off_platform(timeline)
            if has_off_platform:
                off_platform_reason = "PHONE_OR_EMAIL"
        elif ai_handoff_message is not None:
            has_off_platform = True
            off_platform_reason = "AI_HANDOFF"

        use_ai_deferral = not has_explicit_deferral and ai_deferred_message is not None
        has_deferral = (
            has_explicit_deferral
            or any(m.has_rule("DEFERRAL_PHRASE") for m in inbound)
            or use_ai_deferral
        )
        if (
            has_deferral
            and agg.last_deferral_at is not None
            and last_inbound_ts is not None
            and last_inbound_ts - agg.last_deferral_at > _DEFERRAL_FRESHNESS
        ):
            has_deferral = False

        spam_disqualified = (
            agg.last_non_final_direction == "outbound"
            or (agg.inbound_count >= 2 and agg.outbound_count >= 2)
            or (days_since_activity is not None and days_since_activity < cfg.resurrect_gap_days)
            or any(m.features.has_currency for m in all_messages)
            or any(m.features.contains_schedule_terms for m in all_messages)
            or any(PRODUCT_INTENT_RE.search(m.text or "") for m in all_messages)
        )
        has_spam_phrase_match = bool(last_inbound and last_inbound.features.contains_spam_phrase)

        has_opt_out = any(m.has_rule("OPT_OUT") for m in all_messages)
        has_loss = any(m.has_rule("LOSS_PHRASE") for m in all_messages)
        has_price_rejection = any(m.features.has_price_rejection_phrase for m in inbound)
        has_indefinite_deferral = any(m.features.has_indefinite_deferral_phrase for m in inbound)
        has_concrete_deferral = bool(agg.deferral_hint) or ai_deferred_due_at is not None

        ctx = ResolutionContext(
            now=now,
            defer_default_days=cfg.defer_default_days,
            inbound_count=agg.inbound_count,
            outbound_count=agg.outbound_count,
            has_opt_out=has_opt_out,
            blocked_by_recipient=bool(blocked_by_recipient),
            bounced_by_provider=bool(bounced_by_provider),
            has_spam_phrase_match=has_spam_phrase_match,
            has_spam_content=bool(last_inbound and last_inbound.features.has_spam_content),
            spam_context_confirmed=has_spam_phrase_match and not spam_disqualified,
            has_conversion=any(
                m.features.contains_conversion_phrase and not m.features.contains_system_assignment
                for m in inbound
            ),
            explicit_lost=explicit_lost,
            has_loss=has_loss,
            has_price_rejection=has_price_rejection,
            has_indefinite_deferral=has_indefinite_deferral,
            has_concrete_deferral=has_concrete_deferral,
            has_off_platform=has_off_platform,
            off_platform_reason=off_platform_reason,
            has_deferral=has_deferral,
            use_ai_deferral=use_ai_deferral,
            ai_deferred_due_at=ai_deferred_due_at,
            deferral_hint=agg.deferral_hint,
            deferral_base=agg.last_deferral_at,
            has_price=any(m.has_rule("PRICE_MENTION") for m in all_messages),
        )
        rule_name, outcome = run_cascade(ctx)
        state = outcome.state
        confidence = outcome.confidence
        reasons: List[Reason] = list(outcome.reasons)
        due_at = outcome.followup_due_at
        due_source = outcome.followup_due_source

        # Time-based escalations.
        if (
            state not in TERMINAL_STATES
            and has_price_rejection
            and not has_rejection_revival(inbound_entries, agg.last_rejection_at, cfg.resurrect_gap_days)
            and days_since_inbound is not None
            and days_since_inbound >= cfg.lost_after_price_rejection_days
        ):
            state, confidence = ConversationState.LOST, Confidence.HIGH
            reasons.append(SimpleReason("PRICE_REJECTION_STALE"))

        if (
            state == ConversationState.OFF_PLATFORM
            and not has_explicit_contact
            and days_since_activity is not None
            and days_since_activity >= cfg.lost_after_off_platform_no_contact_days
        ):
            state, confidence = ConversationState.LOST, Confidence.MEDIUM
            reasons.append(SimpleReason("OFF_PLATFORM_NO_CONTACT_INFO"))
            reasons.append(SimpleReason("OFF_PLATFORM_STALE"))

        if (
            state in (ConversationState.DEFERRED, ConversationState.PRODUCTIVE, ConversationState.ENGAGED)
            and has_indefinite_deferral
            and not has_concrete_deferral
            and days_since_activity is not None
            and days_since_activity >= cfg.lost_after_indefinite_deferral_days
        ):
            state, confidence = ConversationState.LOST, Confidence.MEDIUM
            due_at, due_source = None, None
            reasons.append(SimpleReason("INDEFINITE_DEFERRAL"))

        resurrected = detect_resurrection(
            previous_state=parse_state(previous_state),
            previous_evaluated_at=parse_timestamp(previous_evaluated_at),
            last_inbound=last_inbound,
            last_inbound_at=last_inbound_ts,
            final_touch_sent=bool(final_touch_sent_at),
            resurrect_gap_days=cfg.resurrect_gap_days,
        )
        if resurrected:
            reasons.append(SimpleReason("RESURRECTED"))

        # Follow-up policy.
        suggestion: Optional[str] = None
        needs_followup = False
        if state == ConversationState.DEFERRED:
            if due_at is not None:
                suggestion = SUGGEST_LATER if due_at > now else SUGGEST_NOW
                window = timedelta(hours=max(cfg.sla_hours, cfg.due_soon_days * 24))
                needs_followup = due_at <= now or due_at - now <= window
            else:
                suggestion = SUGGEST_LATER
        elif state == ConversationState.OFF_PLATFORM:
            suggestion = SUGGEST_OFF_PLATFORM
        elif state not in TERMINAL_STATES and last_non_final_ts is not None:
            if agg.last_non_final_direction == "inbound":
                suggestion = SUGGEST_REPLY
                needs_followup = True
                if not has_reason(reasons, "UNREPLIED"):
                    reasons.append(SimpleReason("UNREPLIED"))
                if hours_between(now, last_non_final_ts) >= cfg.sla_hours and not has_reason(reasons, "SLA_BREACH"):
                    reasons.append(SimpleReason("SLA_BREACH"))
            elif agg.last_non_final_direction == "outbound":
                business_due = add_business_days(last_non_final_ts, cfg.followup_business_days)
                if due_at is None:
                    due_at, due_source = business_due, DUE_SOURCE_DEFAULT
                if business_due <= now:
                    suggestion = SUGGEST_NOW
                    needs_followup = True
                else:
                    suggestion = SUGGEST_LATER

        if agg.inbound_count == 0:
            reasons = without_reasons(reasons, _REPLY_TAGS)

        # Inactivity timeout: the business wrote last and nobody answered.
        explicitly_lost = has_opt_out or explicit_lost is not None or has_loss
        has_future_followup = due_at is not None and due_at > now
        if (
            state not in TERMINAL_STATES
            and state != ConversationState.OFF_PLATFORM
            and agg.last_non_final_direction == "outbound"
            and last_non_final_ts is not None
            and now - last_non_final_ts >= timedelta(days=cfg.inactive_timeout_days)
            and not explicitly_lost
            and not has_future_followup
        ):
            state, confidence = ConversationState.LOST, Confidence.HIGH
            suggestion, needs_followup = None, False
            due_at, due_source = None, None
            reasons = [EvidencedReason(LOST_INACTIVE_TIMEOUT, Confidence.HIGH, agg.last_non_final_at)]

        if state == ConversationState.PRICE_GIVEN:
            last_activity = last_outbound_ts or last_inbound_ts
            if last_activity is not None and now - last_activity > timedelta(days=cfg.lost_after_price_days):
                state, confidence = ConversationState.LOST, Confidence.MEDIUM
                due_at, due_source = None, None
                reasons.append(SimpleReason("PRICE_STALE"))

        # Terminal states carry no follow-up guidance, whichever step set them.
        if state in TERMINAL_STATES:
            suggestion = None
            needs_followup = False
            reasons = without_reasons(reasons, _REPLY_TAGS)

        if state == ConversationState.NEW and timeline:
            confidence = Confidence.LOW

        inference = ConversationInference(
            state=state,
            confidence=confidence,
            reasons=tuple(reasons),
            followup_due_at=format_timestamp(due_at) if due_at is not None else None,
            followup_suggestion=suggestion,
            last_inbound_at=agg.last_inbound_at,
            last_outbound_at=agg.last_outbound_at,
            last_message_at=agg.last_message_at,
            message_count=len(timeline),
            inbound_count=agg.inbound_count,
            outbound_count=agg.outbound_count,
            last_snippet=agg.last_snippet,
            resurrected=resurrected,
            needs_followup=needs_followup,
            state_trigger_message_id=outcome.trigger_message_id,
            followup_due_source=due_source if due_at is not None else None,
        )
        if self.logger is not None:
            self.logger.info(
                "state_resolved",
                state=state.value,
                confidence=confidence.value,
                cascade_rule=rule_name,
                reason_codes=inference.reason_codes,
                message_count=inference.message_count,
                resurrected=resurrected,
            )
        return inference


def infer_conversation(
    messages: Sequence[MessageLike],
    *,
    config: Optional[InferenceConfig] = None,
    logger: Optional[JsonLogger] = None,
    **kwargs: Any,
) -> ConversationInference:
    """Resolve one conversation without keeping an engine around."""

    return InferenceEngine(config, logger=logger).infer(messages, **kwargs)
