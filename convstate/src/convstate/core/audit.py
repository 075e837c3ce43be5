"""convstate.core.audit

What:
  Turn an inference into an auditable classification record: validate
  human-assigned labels, apply the off-platform outcome annotation, extract
  the lost reason code and build the feature snapshot stored with every
  classification.

Why:
  Classifier regressions are found by comparing what the engine saw with what
  a reviewer decided. The snapshot has to capture the counts, recency and
  thresholds that drove a verdict without storing any message text.

How:
  Pure functions over :class:`~convstate.core.engine.ConversationInference`,
  the annotated history and a :class:`ConversationSnapshotContext` carrying
  the previously persisted conversation fields.

Interfaces:
  :data:`CLASSIFIER_VERSION`, :data:`AUDIT_ALLOWED_LABELS`,
  :func:`is_valid_audit_label`, :func:`resolve_computed_classification`,
  :func:`build_feature_snapshot`, :class:`ConversationSnapshotContext`.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config.schema import InferenceConfig
from ..utils.timeutils import days_between, format_timestamp, parse_timestamp
from .engine import ConversationInference
from .features.schema import AnnotatedMessage, InputError
from .states import (
    Confidence,
    ConversationState,
    EvidencedReason,
    Reason,
    SimpleReason,
    parse_state,
    reason_codes_from_reasons,
)


CLASSIFIER_VERSION = "inbox_inference_v1"

AUDIT_ALLOWED_LABELS: Tuple[ConversationState, ...] = tuple(
    state for state in ConversationState if state is not ConversationState.RESURRECTED
)

SNAPSHOT_WINDOWS_DAYS = (7, 30)


def is_valid_audit_label(value: Any) -> bool:
    """Return ``True`` when ``value`` names a label reviewers may assign."""

    return isinstance(value, str) and value in {state.value for state in AUDIT_ALLOWED_LABELS}


@dataclass(frozen=True)
class ComputedClassification:
    label: ConversationState
    confidence: Confidence
    reasons: Tuple[Reason, ...]
    lost_reason_code: Optional[str]

    @property
    def reason_codes(self) -> List[str]:
        return reason_codes_from_reasons(self.reasons)


def resolve_computed_classification(
    inference: ConversationInference,
    current_state: Optional[ConversationState] = None,
    off_platform_outcome: Optional[str] = None,
) -> ComputedClassification:
    """Combine the engine verdict with the operator's off-platform outcome.

    What:
      Returns the label, confidence and reasons to persist, plus the first
      ``LOST_*`` reason code.

    Why:
      Once a conversation left the platform the engine can no longer see what
      happened; an operator recording ``converted`` or ``lost`` overrides the
      verdict at LOW confidence with a ``USER_ANNOTATION`` reason.

    How:
      The override applies only while both the persisted and the computed
      state are OFF_PLATFORM. Evidenced reasons are preferred when looking
      for the lost reason code.
    """

    label = inference.state
    confidence = inference.confidence
    reasons: List[Reason] = list(inference.reasons)

    if (
        off_platform_outcome
        and current_state == ConversationState.OFF_PLATFORM
        and label == ConversationState.OFF_PLATFORM
    ):
        if off_platform_outcome == "converted":
            label, confidence = ConversationState.CONVERTED, Confidence.LOW
            reasons.append(SimpleReason("USER_ANNOTATION"))
        elif off_platform_outcome == "lost":
            label, confidence = ConversationState.LOST, Confidence.LOW
            reasons.append(SimpleReason("USER_ANNOTATION"))

    lost_reason_code = next(
        (r.code for r in reasons if isinstance(r, EvidencedReason) and r.code.startswith("LOST_")),
        None,
    )
    if lost_reason_code is None:
        lost_reason_code = next(
            (r.tag for r in reasons if isinstance(r, SimpleReason) and r.tag.startswith("LOST_")),
            None,
        )
    return ComputedClassification(label, confidence, tuple(reasons), lost_reason_code)


@dataclass(frozen=True)
class ConversationSnapshotContext:
    """Previously persisted conversation fields captured in the snapshot."""

    id: str
    participant_id: Optional[str] = None
    current_state: Optional[ConversationState] = None
    off_platform_outcome: Optional[str] = None
    needs_followup: bool = False
    last_evaluated_at: Optional[str] = None
    message_count: int = 0
    inbound_count: int = 0
    outbound_count: int = 0
    followup_due_at: Optional[str] = None
    followup_suggestion: Optional[str] = None
    blocked_by_recipient: bool = False
    bounced_by_provider: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConversationSnapshotContext":
        """Build the context from a conversation document.

        Raises:
          InputError: When a persisted count is not an integer.
        """

        counts = {}
        for key in ("message_count", "inbound_count", "outbound_count"):
            try:
                counts[key] = int(data.get(key, 0) or 0)
            except (TypeError, ValueError) as exc:
                raise InputError(f"{key} must be an integer: {data.get(key)!r}") from exc
        return cls(
            id=str(data.get("id", "")),
            participant_id=data.get("participant_id"),
            current_state=parse_state(data.get("current_state", data.get("previous_state"))),
            off_platform_outcome=data.get("off_platform_outcome"),
            needs_followup=bool(data.get("needs_followup", False)),
            last_evaluated_at=data.get("last_evaluated_at", data.get("previous_evaluated_at")),
            **counts,
            followup_due_at=data.get("followup_due_at"),
            followup_suggestion=data.get("followup_suggestion"),
            blocked_by_recipient=bool(data.get("blocked_by_recipient", False)),
            bounced_by_provider=bool(data.get("bounced_by_provider", False)),
        )


def _days_since(value: Optional[str], now: datetime) -> Optional[float]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return round(days_between(now, parsed), 3)


def _window_counts(messages: Sequence[AnnotatedMessage], days: int, now: datetime) -> Dict[str, int]:
    cutoff = now - timedelta(days=days)
    inbound = outbound = 0
    for message in messages:
        created = parse_timestamp(message.created_at)
        if created is None or created < cutoff:
            continue
        if message.is_inbound:
            inbound += 1
        else:
            outbound += 1
    return {"inbound": inbound, "outbound": outbound, "total": inbound + outbound}


def _message_flags(
    messages: Sequence[AnnotatedMessage],
    conversation: ConversationSnapshotContext,
) -> Dict[str, bool]:
    features = [message.features for message in messages]
    return {
        "has_opt_out": any(f.contains_opt_out for f in features),
        "has_phone_or_email": any(f.has_phone_number or f.has_email for f in features),
        "has_schedule_terms": any(f.contains_schedule_terms for f in features),
        "has_deferral_phrase": any(f.contains_deferral_phrase for f in features),
        "has_currency": any(f.has_currency for f in features),
        "has_price_rejection_phrase": any(f.has_price_rejection_phrase for f in features),
        "has_indefinite_deferral_phrase": any(f.has_indefinite_deferral_phrase for f in features),
        "has_spam_content": any(f.has_spam_content for f in features),
        "has_bounced": conversation.bounced_by_provider,
        "has_blocked": conversation.blocked_by_recipient,
    }


def build_feature_snapshot(
    conversation: ConversationSnapshotContext,
    messages: Sequence[AnnotatedMessage],
    config: InferenceConfig,
    inference: ConversationInference,
    classification: ComputedClassification,
    computed_at: datetime,
) -> Dict[str, Any]:
    """Build the JSON-ready snapshot persisted next to a classification.

    The snapshot holds counts (all time, 7 and 30 day windows, and the
    previously persisted values), days since the key timestamps rounded to
    three decimals, the resolved thresholds and a summary of message flags.
    It never contains message text.
    """

    windows = {f"window_{days}d": _window_counts(messages, days, computed_at) for days in SNAPSHOT_WINDOWS_DAYS}
    previous_state = conversation.current_state.value if conversation.current_state else None
    return {
        "classifier_version": CLASSIFIER_VERSION,
        "conversation_id": conversation.id,
        "contact_id": conversation.participant_id,
        "computed_label": classification.label.value,
        "computed_confidence": classification.confidence.value,
        "reason_codes": classification.reason_codes,
        "lost_reason_code": classification.lost_reason_code,
        "state_fields": {
            "previous_state": previous_state,
            "off_platform_outcome": conversation.off_platform_outcome,
            "needs_followup_before": conversation.needs_followup,
            "followup_due_at_before": conversation.followup_due_at,
            "followup_suggestion_before": conversation.followup_suggestion,
        },
        "timestamps": {
            "computed_at": format_timestamp(computed_at),
            "last_inbound_at": inference.last_inbound_at,
            "last_outbound_at": inference.last_outbound_at,
            "last_activity_at": inference.last_message_at,
            "previous_last_evaluated_at": conversation.last_evaluated_at,
        },
        "counts": {
            "all_time": {
                "message_count": inference.message_count,
                "inbound_count": inference.inbound_count,
                "outbound_count": inference.outbound_count,
            },
            **windows,
            "previous_persisted": {
                "message_count": conversation.message_count,
                "inbound_count": conversation.inbound_count,
                "outbound_count": conversation.outbound_count,
            },
        },
        "days_since": {
            "last_inbound": _days_since(inference.last_inbound_at, computed_at),
            "last_outbound": _days_since(inference.last_outbound_at, computed_at),
            "last_activity": _days_since(inference.last_message_at, computed_at),
            "previous_evaluated": _days_since(conversation.last_evaluated_at, computed_at),
        },
        "thresholds": config.model_dump(),
        "message_flags": _message_flags(messages, conversation),
    }
