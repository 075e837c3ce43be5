"""convstate.core.ai_contract

What:
  Decide when an ambiguous inbound message deserves an AI interpretation,
  build the prompt and cache key, enforce call budgets, validate the model's
  JSON and attach the outcome to the message as an :class:`AiFeatures`
  sub-record.

Why:
  Regex rules miss handoffs ("let's talk offline") and vague deferrals ("after
  the holidays"). A model can fill those gaps, but it is slow, costs money and
  returns untrusted text. Everything the resolver later reads from the model
  therefore passes through gating, budgets and strict validation here, and
  failures degrade to "no interpretation" instead of breaking a resolution.

How:
  - :func:`should_run_ai` applies a keyword gate and skips messages whose
    hard signals (contact details, a parsed deferral hint) already answer the
    question.
  - The cache key hashes the normalised prompt text together with the prompt
    version, the model and a digest of the surrounding messages.
  - :class:`AiInterpreter` dispatches to a deterministic mock, to fixture
    files keyed by input hash, or to a :class:`StructuredLLM` backend.
  - :func:`run_ai_attempt` ties the pieces together, classifies failures into
    ``timeout`` / ``invalid_json`` / ``error`` and reports budget usage.

Interfaces:
  :class:`StructuredLLM`, :func:`should_run_ai`, :func:`get_prompt_input`,
  :func:`build_context_digest`, :func:`compute_input_hash`,
  :func:`check_budget`, :func:`validate_ai_output`, :func:`build_prompt`,
  :class:`AiInterpreter`, :func:`run_ai_attempt`, :func:`augment_messages`.

Invariants & Safety:
  - Raw prompts and model output are never logged.
  - The runner never raises for backend failures; they surface as attempt
    outcomes and error strings.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..config.schema import AiSettings
from ..utils.ids import sha256_hex
from ..utils.logging import JsonLogger
from ..utils.timeutils import format_timestamp
from .features.patterns import (
    DEFER_KEYWORDS,
    HANDOFF_KEYWORDS,
    MOCK_DEFERRED_RE,
    MOCK_HANDOFF_RE,
    normalize_text,
)
from .features.schema import (
    AI_EVIDENCE_MAX_CHARS,
    AiFeatures,
    AiInterpretation,
    AnnotatedMessage,
    MessageFeatures,
    attach_ai,
)


OUTCOME_OK = "ok"
OUTCOME_ERROR = "error"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_INVALID_JSON = "invalid_json"

CONTEXT_SNIPPET_MAX_CHARS = 120

SYSTEM_PROMPT = "Return valid JSON only. No prose. If unsure set LOW confidence and prefer false."

JSON_SCHEMA_HINT = """Return JSON only in this exact shape:
{
  "handoff": {
    "is_handoff": true|false,
    "type": "phone"|"email"|"website"|"in_person"|"other"|null,
    "confidence": "HIGH"|"MEDIUM"|"LOW",
    "evidence": "short excerpt"
  },
  "deferred": {
    "is_deferred": true|false,
    "bucket": "EXACT_DATE"|"NEXT_WEEK"|"NEXT_MONTH"|"NEXT_QUARTER"|"AFTER_HOLIDAYS"|"SOMETIME_LATER"|null,
    "due_date_iso": "YYYY-MM-DD"|null,
    "confidence": "HIGH"|"MEDIUM"|"LOW",
    "evidence": "short excerpt"
  }
}"""


class AiInterpreterError(RuntimeError):
    """Raised when an interpretation cannot be produced."""


class AiTimeoutError(AiInterpreterError):
    """Raised when the backend exceeded the configured timeout."""


class AiInvalidOutputError(AiInterpreterError):
    """Raised when the backend or a fixture returned unusable JSON."""


class StructuredLLM(Protocol):
    """Protocol describing the narrow JSON-only completion interface.

    What:
      The single call the interpreter makes against a language model.

    Why:
      Keeps the interpreter independent from any vendor SDK; tests plug in a
      fake and production code wraps whatever client the host provides.

    Args:
      prompt: Full prompt including the JSON schema hint.
      max_tokens: Hard upper bound for the completion length.
      temperature: Sampling temperature.
      timeout_s: Execution timeout in seconds; implementations raise
        :class:`TimeoutError` when it elapses.

    Returns:
      Raw JSON string produced by the backend.
    """

    def structured_completion(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        timeout_s: float,
    ) -> str:
        """Return a JSON completion enforcing keyword-only runtime parameters."""


@dataclass(frozen=True)
class AiGateDecision:
    run: bool
    reason: str
    needs_handoff: bool = False
    needs_deferred: bool = False


@dataclass(frozen=True)
class AiPromptInput:
    """Message text as sent to the model plus truncation bookkeeping."""

    prompt_text: str
    normalized_text: str
    input_chars: int
    input_truncated: bool


def should_run_ai(text: Optional[str], features: MessageFeatures, mode: str) -> AiGateDecision:
    """Decide whether a message is worth an AI interpretation.

    Reasons are ``ai_disabled``, ``empty_message``, ``keyword_gate``,
    ``hard_signal_present`` and ``eligible``.
    """

    if mode == "off":
        return AiGateDecision(False, "ai_disabled")
    normalized = normalize_text(text or "")
    if not normalized:
        return AiGateDecision(False, "empty_message")
    handoff_keyword = any(word in normalized for word in HANDOFF_KEYWORDS)
    deferred_keyword = any(word in normalized for word in DEFER_KEYWORDS)
    if not handoff_keyword and not deferred_keyword:
        return AiGateDecision(False, "keyword_gate")
    needs_handoff = handoff_keyword and not features.has_phone_number and not features.has_email
    needs_deferred = deferred_keyword and not features.deferral_date_hint
    if not needs_handoff and not needs_deferred:
        return AiGateDecision(False, "hard_signal_present")
    return AiGateDecision(True, "eligible", needs_handoff, needs_deferred)


def get_prompt_input(text: str, max_input_chars: int) -> AiPromptInput:
    safe_max = max(1, int(max_input_chars))
    truncated = len(text) > safe_max
    prompt_text = text[:safe_max] if truncated else text
    return AiPromptInput(
        prompt_text=prompt_text,
        normalized_text=normalize_text(prompt_text),
        input_chars=len(prompt_text),
        input_truncated=truncated,
    )


def _field(message: Any, name: str) -> Any:
    if isinstance(message, Mapping):
        return message.get(name)
    return getattr(message, name, None)


def build_context_digest(messages: Sequence[Any], limit: int = 4) -> str:
    """Summarise the last ``limit`` messages as ``direction:text`` pairs.

    Accepts message objects or mappings exposing ``direction`` and ``text``.
    Each text is shortened to 120 characters.
    """

    parts = []
    for message in list(messages)[-limit:] if limit > 0 else []:
        text = _field(message, "text") or ""
        if len(text) > CONTEXT_SNIPPET_MAX_CHARS:
            text = f"{text[:CONTEXT_SNIPPET_MAX_CHARS - 3]}..."
        parts.append(f"{_field(message, 'direction')}:{text}")
    return " | ".join(parts)


def build_input_seed(normalized_text: str, settings: AiSettings, context_digest: str) -> str:
    return f"{normalized_text}|{settings.prompt_version}|{settings.model}|{context_digest}"


def compute_input_hash(seed: str) -> str:
    """Return the hex SHA-256 of ``seed``; used as cache key and fixture name."""

    return sha256_hex(seed)


def check_budget(daily_calls: int, conversation_calls: int, settings: AiSettings) -> Optional[str]:
    """Return the exceeded budget's skip reason, or ``None`` when allowed."""

    if daily_calls >= settings.daily_budget:
        return "daily_budget_exceeded"
    if conversation_calls >= settings.max_calls_per_conversation:
        return "conversation_budget_exceeded"
    return None


def validate_ai_output(raw: Any) -> Optional[AiInterpretation]:
    """Validate model output against the closed interpretation vocabulary.

    Args:
      raw: JSON text or an already decoded mapping.

    Returns:
      The validated interpretation with evidence clamped to 120 characters,
      or ``None`` when the payload is malformed.
    """

    payload = raw
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except ValueError:
            return None
    return AiInterpretation.from_payload(payload)


def build_prompt(prompt_text: str, context_digest: str, features: Mapping[str, Any]) -> str:
    """Assemble the user prompt sent after :data:`SYSTEM_PROMPT`."""

    return (
        f"{SYSTEM_PROMPT}\n\n{JSON_SCHEMA_HINT}\n\nMessage:\n{prompt_text}\n\n"
        f"Context:\n{context_digest}\n\n"
        f"Extracted features:\n{json.dumps(features, sort_keys=True, separators=(',', ':'))}"
    )


def _mock_interpretation(prompt: AiPromptInput) -> AiInterpretation:
    """Deterministic keyword interpretation used by the ``mock`` mode."""

    lower = prompt.normalized_text
    excerpt = prompt.prompt_text[:AI_EVIDENCE_MAX_CHARS]
    is_deferred = MOCK_DEFERRED_RE.search(lower) is not None
    if "next month" in lower:
        bucket = "NEXT_MONTH"
    elif "next week" in lower:
        bucket = "NEXT_WEEK"
    elif "next quarter" in lower:
        bucket = "NEXT_QUARTER"
    elif "holiday" in lower:
        bucket = "AFTER_HOLIDAYS"
    else:
        bucket = "SOMETIME_LATER"
    is_handoff = MOCK_HANDOFF_RE.search(lower) is not None
    return AiInterpretation.model_validate(
        {
            "handoff": {
                "is_handoff": is_handoff,
                "type": "phone" if is_handoff else None,
                "confidence": "MEDIUM" if is_handoff else "LOW",
                "evidence": excerpt if is_handoff else "",
            },
            "deferred": {
                "is_deferred": is_deferred,
                "bucket": bucket if is_deferred else None,
                "due_date_iso": None,
                "confidence": "MEDIUM" if is_deferred else "LOW",
                "evidence": excerpt if is_deferred else "",
            },
        }
    )


class AiInterpreter:
    """Produce an :class:`AiInterpretation` for one message.

    What:
      Dispatches on ``settings.mode`` to the mock, fixture or LLM backend.

    Why:
      Tests and offline evaluation need reproducible interpretations while
      production talks to a model; both paths must return the same validated
      type and raise the same typed errors.

    How:
      ``mock`` applies keyword patterns, ``fixture`` reads
      ``<fixtures_dir>/<input_hash>.json`` and ``llm`` calls
      :meth:`StructuredLLM.structured_completion` with the configured limits.
    """

    def __init__(
        self,
        settings: AiSettings,
        llm: Optional[StructuredLLM] = None,
        *,
        fixtures_dir: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.llm = llm
        self.fixtures_dir = Path(fixtures_dir) if fixtures_dir is not None else Path(settings.fixtures_dir)

    def interpret(
        self,
        prompt: AiPromptInput,
        *,
        input_hash: str,
        context_digest: str,
        features: Mapping[str, Any],
    ) -> Optional[AiInterpretation]:
        """Return the interpretation, ``None`` for empty input or ``off`` mode.

        Raises:
          AiTimeoutError: The backend timed out.
          AiInvalidOutputError: Output or fixture failed validation.
          AiInterpreterError: Any other backend or fixture failure.
        """

        if not prompt.normalized_text:
            return None
        mode = self.settings.mode
        if mode == "mock":
            return _mock_interpretation(prompt)
        if mode == "fixture":
            return self._from_fixture(input_hash)
        if mode == "llm":
            return self._from_llm(prompt, context_digest, features)
        return None

    def _from_fixture(self, input_hash: str) -> AiInterpretation:
        path = self.fixtures_dir / f"{input_hash}.json"
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise AiInterpreterError(f"ai_fixture_missing: {path.name}") from exc
        parsed = validate_ai_output(content)
        if parsed is None:
            raise AiInvalidOutputError("ai_fixture_invalid")
        return parsed

    def _from_llm(
        self,
        prompt: AiPromptInput,
        context_digest: str,
        features: Mapping[str, Any],
    ) -> AiInterpretation:
        if self.llm is None:
            raise AiInterpreterError("ai_backend_missing")
        settings = self.settings
        try:
            raw = self.llm.structured_completion(
                build_prompt(prompt.prompt_text, context_digest, features),
                max_tokens=settings.max_output_tokens,
                temperature=settings.temperature,
                timeout_s=settings.timeout_s,
            )
        except TimeoutError as exc:
            raise AiTimeoutError("ai_timeout") from exc
        except Exception as exc:
            raise AiInterpreterError(f"ai_backend_failed: {exc}") from exc
        parsed = validate_ai_output(raw)
        if parsed is None and isinstance(raw, str):
            try:
                decoded = json.loads(raw)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict) and "response" in decoded:
                parsed = validate_ai_output(decoded["response"])
        if parsed is None:
            raise AiInvalidOutputError("ai_invalid_output")
        return parsed


def classify_attempt_error(error: AiInterpreterError) -> str:
    if isinstance(error, AiTimeoutError):
        return OUTCOME_TIMEOUT
    if isinstance(error, AiInvalidOutputError):
        return OUTCOME_INVALID_JSON
    return OUTCOME_ERROR


@dataclass(frozen=True)
class AiAttemptResult:
    """Outcome of :func:`run_ai_attempt` including updated budget counters."""

    input_hash: str
    input_chars: int
    input_truncated: bool
    interpretation: Optional[AiInterpretation] = None
    skipped_reason: Optional[str] = None
    errors: Tuple[str, ...] = field(default_factory=tuple)
    attempted: bool = False
    attempt_outcome: Optional[str] = None
    daily_calls: int = 0
    conversation_calls: int = 0
    cache_hit: bool = False

    def to_features(self, settings: AiSettings, ran_at: datetime) -> AiFeatures:
        """Build the sub-record stored on the message's features."""

        return AiFeatures(
            input_hash=self.input_hash,
            mode=settings.mode,
            model=settings.model,
            prompt_version=settings.prompt_version,
            input_truncated=self.input_truncated,
            input_chars=self.input_chars,
            attempted=self.attempted,
            attempt_outcome=self.attempt_outcome,
            ran_at=format_timestamp(ran_at),
            interpretation=self.interpretation,
            skipped_reason=self.skipped_reason,
            errors=self.errors,
        )


def _features_for_prompt(features: MessageFeatures) -> Dict[str, Any]:
    payload = features.as_dict()
    payload.pop("ai", None)
    payload.pop("explicit_lost", None)
    return payload


def run_ai_attempt(
    text: Optional[str],
    features: MessageFeatures,
    *,
    settings: AiSettings,
    interpreter: Optional[AiInterpreter] = None,
    context_digest: str = "",
    existing_ai: Optional[AiFeatures] = None,
    daily_calls: int = 0,
    conversation_calls: int = 0,
    increment_usage: Optional[Callable[[], None]] = None,
    logger: Optional[JsonLogger] = None,
) -> AiAttemptResult:
    """Run the gated, budgeted interpretation of one message.

    What:
      Returns the interpretation (fresh or cached) together with the skip
      reason, attempt outcome and updated call counters.

    Why:
      Budgets protect the model bill; the cache prevents paying twice for the
      same text, model and context. Usage for the ``llm`` mode is counted
      before the call so failures still consume budget, while the local modes
      only count successful interpretations.

    How:
      Hash the prompt input, consult the gate, the cache and the budgets in
      that order, then call the interpreter and map typed errors to outcomes.
    """

    body = text or ""
    prompt = get_prompt_input(body, settings.max_input_chars)
    input_hash = compute_input_hash(build_input_seed(prompt.normalized_text, settings, context_digest))
    base = dict(
        input_hash=input_hash,
        input_chars=prompt.input_chars,
        input_truncated=prompt.input_truncated,
    )

    decision = should_run_ai(body, features, settings.mode)
    if not decision.run:
        return AiAttemptResult(
            **base,
            skipped_reason=decision.reason,
            daily_calls=daily_calls,
            conversation_calls=conversation_calls,
        )

    if (
        existing_ai is not None
        and existing_ai.input_hash == input_hash
        and existing_ai.interpretation is not None
    ):
        return AiAttemptResult(
            **base,
            interpretation=existing_ai.interpretation,
            skipped_reason="cache_hit",
            daily_calls=daily_calls,
            conversation_calls=conversation_calls,
            cache_hit=True,
        )

    exceeded = check_budget(daily_calls, conversation_calls, settings)
    if exceeded is not None:
        if logger is not None:
            logger.info("ai_attempt_skipped", reason=exceeded, input_hash=input_hash)
        return AiAttemptResult(
            **base,
            skipped_reason=exceeded,
            daily_calls=daily_calls,
            conversation_calls=conversation_calls,
        )

    def _count() -> None:
        nonlocal daily_calls, conversation_calls
        if increment_usage is not None:
            increment_usage()
        daily_calls += 1
        conversation_calls += 1

    interpreter = interpreter or AiInterpreter(settings)
    if settings.mode == "llm":
        _count()
    try:
        interpretation = interpreter.interpret(
            prompt,
            input_hash=input_hash,
            context_digest=context_digest,
            features=_features_for_prompt(features),
        )
    except AiInterpreterError as exc:
        outcome = classify_attempt_error(exc)
        if logger is not None:
            logger.warning("ai_attempt_failed", outcome=outcome, error=str(exc), input_hash=input_hash)
        return AiAttemptResult(
            **base,
            errors=(str(exc),),
            attempted=True,
            attempt_outcome=outcome,
            daily_calls=daily_calls,
            conversation_calls=conversation_calls,
        )
    if settings.mode != "llm" and interpretation is not None:
        _count()
    return AiAttemptResult(
        **base,
        interpretation=interpretation,
        attempted=True,
        attempt_outcome=OUTCOME_OK,
        daily_calls=daily_calls,
        conversation_calls=conversation_calls,
    )


def augment_messages(
    messages: Sequence[AnnotatedMessage],
    *,
    settings: AiSettings,
    now: datetime,
    interpreter: Optional[AiInterpreter] = None,
    daily_calls: int = 0,
    conversation_calls: int = 0,
    logger: Optional[JsonLogger] = None,
) -> Tuple[List[AnnotatedMessage], int, int]:
    """Attach AI sub-records to the inbound messages of one conversation.

    Each inbound message is interpreted with a digest of the messages that
    precede it. Outbound messages pass through untouched.

    ``conversation_calls`` is the number of calls already spent on this
    conversation by earlier runs; the caller persists the returned value.

    Returns:
      The new message list and the updated daily and conversation counters.
    """

    if settings.mode == "off":
        return list(messages), daily_calls, conversation_calls
    interpreter = interpreter or AiInterpreter(settings)
    augmented: List[AnnotatedMessage] = []
    for index, message in enumerate(messages):
        if not message.is_inbound:
            augmented.append(message)
            continue
        result = run_ai_attempt(
            message.text,
            message.features,
            settings=settings,
            interpreter=interpreter,
            context_digest=build_context_digest(messages[:index]),
            existing_ai=message.ai,
            daily_calls=daily_calls,
            conversation_calls=conversation_calls,
            logger=logger,
        )
        daily_calls = result.daily_calls
        conversation_calls = result.conversation_calls
        augmented.append(attach_ai(message, result.to_features(settings, now)))
    return augmented, daily_calls, conversation_calls
