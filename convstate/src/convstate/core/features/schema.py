"""convstate.core.features.schema

What:
  Data containers for a message, its derived feature record, the optional AI
  sub-record attached upstream, and the annotated message the resolver
  consumes.

Why:
  The resolver reads nothing but these records. Freezing them guarantees that
  an annotated message is never patched in place: re-running the extractor or
  attaching an AI result produces a new record, so a history can be shared
  between concurrent resolutions without coordination.

How:
  - Frozen dataclasses for ``Message``, ``MessageFeatures``,
    ``ExplicitLostEvidence``, ``AiFeatures`` and ``AnnotatedMessage``, each
    with an ``as_dict`` helper producing JSON-ready mappings.
  - Pydantic models for the AI interpretation so that model output is checked
    against the closed vocabularies before anything downstream trusts it.

Interfaces:
  :data:`DIRECTIONS`, :class:`Message`, :class:`ExplicitLostEvidence`,
  :class:`MessageFeatures`, :class:`AiHandoff`, :class:`AiDeferred`,
  :class:`AiInterpretation`, :class:`AiFeatures`, :class:`AnnotatedMessage`,
  :class:`InputError`.

Invariants & Safety:
  - Every ``MessageFeatures`` field except ``ai`` is a pure function of the
    message text and direction.
  - AI evidence strings never exceed 120 characters.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, StrictBool, StrictStr, StringConstraints
from pydantic import ValidationError as _PydanticValidationError
from pydantic import field_validator

from ..states import Confidence


DIRECTIONS: Tuple[str, ...] = ("inbound", "outbound")
FINAL_TOUCH = "FINAL_TOUCH"

AI_CONFIDENCE_VOCAB: Tuple[str, ...] = ("HIGH", "MEDIUM", "LOW")
AI_HANDOFF_TYPES: Tuple[str, ...] = ("phone", "email", "website", "in_person", "other")
AI_DEFERRED_BUCKETS: Tuple[str, ...] = (
    "EXACT_DATE",
    "NEXT_WEEK",
    "NEXT_MONTH",
    "NEXT_QUARTER",
    "AFTER_HOLIDAYS",
    "SOMETIME_LATER",
)
AI_EVIDENCE_MAX_CHARS = 120


class InputError(ValueError):
    """Raised when a conversation document cannot be used."""


AiConfidence = Literal["HIGH", "MEDIUM", "LOW"]
DateOnly = Annotated[str, StringConstraints(strict=True, pattern=r"^\d{4}-\d{2}-\d{2}$")]


def _clamp_evidence(value: str) -> str:
    return value[:AI_EVIDENCE_MAX_CHARS]


class AiHandoff(BaseModel):
    """Model verdict on whether the customer moved the conversation elsewhere."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    is_handoff: StrictBool
    type: Optional[Literal["phone", "email", "website", "in_person", "other"]]
    confidence: AiConfidence
    evidence: StrictStr

    @field_validator("evidence")
    @classmethod
    def clamp_evidence(cls, value: str) -> str:
        return _clamp_evidence(value)


class AiDeferred(BaseModel):
    """Model verdict on whether the customer asked to be contacted later."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    is_deferred: StrictBool
    bucket: Optional[
        Literal["EXACT_DATE", "NEXT_WEEK", "NEXT_MONTH", "NEXT_QUARTER", "AFTER_HOLIDAYS", "SOMETIME_LATER"]
    ]
    due_date_iso: Optional[DateOnly] = None
    confidence: AiConfidence
    evidence: StrictStr

    @field_validator("evidence")
    @classmethod
    def clamp_evidence(cls, value: str) -> str:
        return _clamp_evidence(value)


class AiInterpretation(BaseModel):
    """Structured interpretation returned by the AI collaborator."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    handoff: AiHandoff
    deferred: AiDeferred

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["AiInterpretation"]:
        """Validate ``payload`` and return ``None`` instead of raising."""

        if isinstance(payload, AiInterpretation):
            return payload
        if not isinstance(payload, Mapping):
            return None
        try:
            return cls.model_validate(dict(payload))
        except _PydanticValidationError:
            return None


@dataclass(frozen=True)
class Message:
    """One message of a conversation as handed over by the caller.

    Attributes:
      id: Caller-side identifier, echoed as the state trigger id.
      direction: ``inbound`` (customer) or ``outbound`` (business).
      text: Message body, ``None`` for attachments or stickers.
      created_at: ISO-8601 creation timestamp.
      message_type: Optional tag such as ``FINAL_TOUCH``.
      ai: Optional AI sub-record attached by the upstream attempt runner.
    """

    id: str
    direction: str
    text: Optional[str]
    created_at: str
    message_type: Optional[str] = None
    ai: Optional["AiFeatures"] = None

    @property
    def is_inbound(self) -> bool:
        return self.direction == "inbound"

    @property
    def is_final_touch(self) -> bool:
        return self.message_type == FINAL_TOUCH

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Build a message from a JSON mapping.

        Accepts both ``created_at`` and ``createdAt`` (and the matching
        ``message_type`` spellings) so exports from either side can be fed in.

        Raises:
          ValueError: If the direction is not one of :data:`DIRECTIONS` or the
            mapping lacks an id or creation timestamp.
        """

        direction = str(data.get("direction", "")).lower()
        if direction not in DIRECTIONS:
            raise ValueError(f"message direction must be one of {DIRECTIONS}, got {direction!r}")
        created_at = data.get("created_at", data.get("createdAt"))
        if data.get("id") is None or created_at is None:
            raise ValueError("message requires 'id' and 'created_at'")
        text = data.get("text")
        ai_payload = data.get("ai")
        return cls(
            id=str(data["id"]),
            direction=direction,
            text=None if text is None else str(text),
            created_at=str(created_at),
            message_type=data.get("message_type", data.get("messageType")),
            ai=AiFeatures.from_dict(ai_payload) if isinstance(ai_payload, Mapping) else None,
        )


@dataclass(frozen=True)
class ExplicitLostEvidence:
    """Why a customer is explicitly lost, with the text that proves it."""

    reason_code: str
    evidence: str
    confidence: Confidence

    def as_dict(self) -> Dict[str, str]:
        return {
            "reason_code": self.reason_code,
            "evidence": self.evidence,
            "confidence": self.confidence.value,
        }


@dataclass(frozen=True)
class AiFeatures:
    """AI sub-record describing one interpretation attempt for a message.

    What:
      Carries the cache key, the runtime parameters, the attempt outcome and,
      when available, the validated interpretation.

    Why:
      The resolver only needs ``interpretation``; the rest is bookkeeping that
      makes cache hits, budget skips and failures auditable.
    """

    input_hash: Optional[str] = None
    mode: Optional[str] = None
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    input_truncated: bool = False
    input_chars: int = 0
    attempted: bool = False
    attempt_outcome: Optional[str] = None
    ran_at: Optional[str] = None
    interpretation: Optional[AiInterpretation] = None
    skipped_reason: Optional[str] = None
    errors: Tuple[str, ...] = ()

    @property
    def is_handoff(self) -> bool:
        return bool(self.interpretation and self.interpretation.handoff.is_handoff)

    @property
    def is_deferred(self) -> bool:
        return bool(self.interpretation and self.interpretation.deferred.is_deferred)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "input_hash": self.input_hash,
            "mode": self.mode,
            "model": self.model,
            "prompt_version": self.prompt_version,
            "input_truncated": self.input_truncated,
            "input_chars": self.input_chars,
            "attempted": self.attempted,
            "attempt_outcome": self.attempt_outcome,
            "ran_at": self.ran_at,
            "interpretation": self.interpretation.model_dump() if self.interpretation else None,
            "skipped_reason": self.skipped_reason,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AiFeatures":
        """Rebuild a sub-record; an invalid interpretation is dropped."""

        errors = data.get("errors") or ()
        return cls(
            input_hash=data.get("input_hash"),
            mode=data.get("mode"),
            model=data.get("model"),
            prompt_version=data.get("prompt_version"),
            input_truncated=bool(data.get("input_truncated", False)),
            input_chars=int(data.get("input_chars", 0) or 0),
            attempted=bool(data.get("attempted", False)),
            attempt_outcome=data.get("attempt_outcome"),
            ran_at=data.get("ran_at"),
            interpretation=AiInterpretation.from_payload(data.get("interpretation")),
            skipped_reason=data.get("skipped_reason"),
            errors=tuple(str(item) for item in errors),
        )


@dataclass(frozen=True)
class MessageFeatures:
    """Signals derived from a single message.

    What:
      Booleans and nullable tokens describing contact details, price talk,
      deferral and loss phrasing, spam heuristics and acknowledgement-only
      replies.

    Why:
      The resolver folds these records across a conversation without
      re-reading raw text, which keeps every state decision traceable to a
      named signal.

    Attributes:
      deferral_date_hint: Closed hint token, see
        :func:`convstate.core.features.hints.infer_deferral_hint`.
      explicit_lost: First explicit-lost code that matched, inbound only.
      ai: Upstream AI sub-record; never computed by the extractor.
    """

    has_phone_number: bool = False
    has_email: bool = False
    has_price_rejection_phrase: bool = False
    has_indefinite_deferral_phrase: bool = False
    has_spam_content: bool = False
    has_currency: bool = False
    contains_price_terms: bool = False
    contains_opt_out: bool = False
    contains_schedule_terms: bool = False
    contains_deferral_phrase: bool = False
    deferral_date_hint: Optional[str] = None
    contains_conversion_phrase: bool = False
    contains_loss_phrase: bool = False
    contains_spam_phrase: bool = False
    contains_system_assignment: bool = False
    has_link: bool = False
    message_length: int = 0
    ack_only: bool = False
    explicit_lost: Optional[ExplicitLostEvidence] = None
    ai: Optional[AiFeatures] = None

    def with_ai(self, ai: Optional[AiFeatures]) -> "MessageFeatures":
        """Return a copy carrying ``ai``; the original record is untouched."""

        return replace(self, ai=ai)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "has_phone_number": self.has_phone_number,
            "has_email": self.has_email,
            "has_price_rejection_phrase": self.has_price_rejection_phrase,
            "has_indefinite_deferral_phrase": self.has_indefinite_deferral_phrase,
            "has_spam_content": self.has_spam_content,
            "has_currency": self.has_currency,
            "contains_price_terms": self.contains_price_terms,
            "contains_opt_out": self.contains_opt_out,
            "contains_schedule_terms": self.contains_schedule_terms,
            "contains_deferral_phrase": self.contains_deferral_phrase,
            "deferral_date_hint": self.deferral_date_hint,
            "contains_conversion_phrase": self.contains_conversion_phrase,
            "contains_loss_phrase": self.contains_loss_phrase,
            "contains_spam_phrase": self.contains_spam_phrase,
            "contains_system_assignment": self.contains_system_assignment,
            "has_link": self.has_link,
            "message_length": self.message_length,
            "ack_only": self.ack_only,
            "explicit_lost": self.explicit_lost.as_dict() if self.explicit_lost else None,
            "ai": self.ai.as_dict() if self.ai else None,
        }


@dataclass(frozen=True)
class AnnotatedMessage:
    """Message plus its feature record and ordered rule hits."""

    id: str
    direction: str
    text: Optional[str]
    created_at: str
    features: MessageFeatures
    rule_hits: Tuple[str, ...] = field(default_factory=tuple)
    message_type: Optional[str] = None

    @property
    def is_inbound(self) -> bool:
        return self.direction == "inbound"

    @property
    def is_final_touch(self) -> bool:
        return self.message_type == FINAL_TOUCH

    @property
    def ai(self) -> Optional[AiFeatures]:
        return self.features.ai

    def has_rule(self, rule: str) -> bool:
        return rule in self.rule_hits

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction,
            "text": self.text,
            "created_at": self.created_at,
            "message_type": self.message_type,
            "features": self.features.as_dict(),
            "rule_hits": list(self.rule_hits),
        }


def attach_ai(message: AnnotatedMessage, ai: Optional[AiFeatures]) -> AnnotatedMessage:
    """Return a new annotated message whose features carry ``ai``."""

    return replace(message, features=message.features.with_ai(ai))


def messages_from_dicts(items: List[Mapping[str, Any]]) -> List[Message]:
    return [Message.from_dict(item) for item in items]
