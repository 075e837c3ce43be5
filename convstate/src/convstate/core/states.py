"""Conversation states, confidence tiers and reason records.

What:
  Define the closed vocabularies shared by the resolver, the cascade and the
  audit snapshot builder, together with the two reason variants that make up
  an inference's ``reasons`` list.

Why:
  A verdict's reasons mix bare tags (``OPT_OUT``) with evidenced objects
  (``LOST_PRICE_OUT_OF_RANGE`` plus the matched text). Modelling them as two
  small frozen dataclasses with one normalisation helper keeps consumers from
  re-deriving codes with ``isinstance`` checks scattered around the code base.

How:
  ``ConversationState`` and ``Confidence`` are ``str`` enums so they serialise
  to their names. :func:`reason_code` is the single accessor for the tag of
  either variant, and :func:`reason_codes_from_reasons` produces the
  deduplicated, first-seen ordered list used by audits.

Interfaces:
  :class:`ConversationState`, :class:`Confidence`, :class:`SimpleReason`,
  :class:`EvidencedReason`, :func:`reason_code`, :func:`has_reason`,
  :func:`without_reasons`, :func:`reason_codes_from_reasons`,
  :func:`reason_to_json`, :func:`reason_from_json`.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union


class ConversationState(str, Enum):
    NEW = "NEW"
    ENGAGED = "ENGAGED"
    PRODUCTIVE = "PRODUCTIVE"
    HIGHLY_PRODUCTIVE = "HIGHLY_PRODUCTIVE"
    PRICE_GIVEN = "PRICE_GIVEN"
    DEFERRED = "DEFERRED"
    OFF_PLATFORM = "OFF_PLATFORM"
    CONVERTED = "CONVERTED"
    RESURRECTED = "RESURRECTED"
    LOST = "LOST"
    SPAM = "SPAM"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# Follow-up fields are always cleared for these.
TERMINAL_STATES: FrozenSet[ConversationState] = frozenset(
    {ConversationState.LOST, ConversationState.SPAM, ConversationState.CONVERTED}
)
# States a new inbound message can bring back to life.
DORMANT_STATES: FrozenSet[ConversationState] = frozenset(
    {ConversationState.LOST, ConversationState.DEFERRED, ConversationState.OFF_PLATFORM}
)


@dataclass(frozen=True)
class SimpleReason:
    """Bare reason tag such as ``OPT_OUT`` or ``UNREPLIED``."""

    tag: str

    @property
    def code(self) -> str:
        return self.tag


@dataclass(frozen=True)
class EvidencedReason:
    """Reason carrying its own confidence and an optional evidence excerpt."""

    code: str
    confidence: Confidence
    evidence: Optional[str] = None


Reason = Union[SimpleReason, EvidencedReason]


def parse_state(value: Optional[str]) -> Optional[ConversationState]:
    """Return the enum member for ``value`` or ``None`` when it is unknown."""

    if value is None:
        return None
    if isinstance(value, ConversationState):
        return value
    try:
        return ConversationState(str(value).strip().upper())
    except ValueError:
        return None


def reason_code(reason: Reason) -> str:
    """Return the tag of either reason variant."""

    return reason.code


def has_reason(reasons: Iterable[Reason], code: str) -> bool:
    return any(reason.code == code for reason in reasons)


def without_reasons(reasons: Sequence[Reason], codes: Iterable[str]) -> List[Reason]:
    """Drop the simple tags listed in ``codes``; evidenced reasons are kept."""

    blocked = set(codes)
    return [
        reason
        for reason in reasons
        if not (isinstance(reason, SimpleReason) and reason.tag in blocked)
    ]


def reason_codes_from_reasons(reasons: Iterable[Reason]) -> List[str]:
    """Deduplicate reason codes while preserving first-seen order.

    Args:
      reasons: Mixed list of :class:`SimpleReason` and :class:`EvidencedReason`.

    Returns:
      Ordered list of unique, non-empty codes.
    """

    ordered: List[str] = []
    seen = set()
    for reason in reasons:
        code = reason.code
        if not code or code in seen:
            continue
        seen.add(code)
        ordered.append(code)
    return ordered


def reason_to_json(reason: Reason) -> Union[str, Dict[str, Any]]:
    """Serialise a reason the way persisted rows store it."""

    if isinstance(reason, SimpleReason):
        return reason.tag
    payload: Dict[str, Any] = {"code": reason.code, "confidence": reason.confidence.value}
    if reason.evidence is not None:
        payload["evidence"] = reason.evidence
    return payload


def reason_from_json(value: Union[str, Dict[str, Any]]) -> Reason:
    """Inverse of :func:`reason_to_json` for reasons read back from storage.

    Raises:
      ValueError: If ``value`` is neither a string nor a mapping with a code.
    """

    if isinstance(value, str):
        return SimpleReason(value)
    if isinstance(value, dict) and isinstance(value.get("code"), str):
        confidence = Confidence(str(value.get("confidence", "LOW")).upper())
        evidence = value.get("evidence")
        return EvidencedReason(value["code"], confidence, None if evidence is None else str(evidence))
    raise ValueError(f"unsupported reason payload: {value!r}")


def reasons_to_json(reasons: Iterable[Reason]) -> Tuple[Union[str, Dict[str, Any]], ...]:
    return tuple(reason_to_json(reason) for reason in reasons)
