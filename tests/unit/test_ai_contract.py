"""
Module: tests/unit/test_ai_contract.py

What:
  Cover the AI gate, prompt preparation, cache key, budgets, output
  validation, the interpreter back-ends and the attempt runner.

Why:
  Model output is untrusted and model calls cost money. These tests pin the
  guarantees that keep both under control: strict validation, deterministic
  cache keys, budgets counted at the right moment and failures that never
  escape the runner.

How:
  Use :class:`fakes.FakeLLM` for the ``llm`` mode, ``tmp_path`` fixture files
  for the ``fixture`` mode and the built-in keyword mock otherwise.
"""

import json

import pytest

from convstate.config.schema import AiSettings
from convstate.core.ai_contract import (
    SYSTEM_PROMPT,
    AiInterpreter,
    AiInterpreterError,
    AiInvalidOutputError,
    AiTimeoutError,
    augment_messages,
    build_context_digest,
    build_input_seed,
    check_budget,
    compute_input_hash,
    get_prompt_input,
    run_ai_attempt,
    should_run_ai,
    validate_ai_output,
)
from convstate.core.engine import InferenceEngine
from convstate.core.features import AiFeatures, Message, extract_features
from convstate.core.rule_hits import annotate_messages
from convstate.core.states import ConversationState

from fakes import NOW, FakeLLM, ago, interpretation

HOLIDAYS = "Let's circle back after the holidays"


def _prompt(text):
    return get_prompt_input(text, 1000)


def test_gate_reasons():
    mock = "mock"

    assert should_run_ai(HOLIDAYS, extract_features(HOLIDAYS), "off").reason == "ai_disabled"
    assert should_run_ai("", extract_features(""), mock).reason == "empty_message"
    assert should_run_ai("Sounds great", extract_features("Sounds great"), mock).reason == "keyword_gate"
    phone = "Call me at 415-555-1212"
    assert should_run_ai(phone, extract_features(phone), mock).reason == "hard_signal_present"


def test_gate_marks_missing_signal():
    decision = should_run_ai(HOLIDAYS, extract_features(HOLIDAYS), "llm")

    assert decision.run
    assert decision.reason == "eligible"
    assert decision.needs_deferred
    assert not decision.needs_handoff


def test_prompt_input_truncates():
    prompt = get_prompt_input("Hello   World", 8)

    assert prompt.prompt_text == "Hello   "
    assert prompt.normalized_text == "hello"
    assert prompt.input_chars == 8
    assert prompt.input_truncated


def test_context_digest_keeps_last_messages():
    messages = [{"direction": "outbound", "text": f"message {index}"} for index in range(6)]
    messages.append({"direction": "inbound", "text": "x" * 200})

    digest = build_context_digest(messages)
    parts = digest.split(" | ")

    assert len(parts) == 4
    assert parts[0] == "outbound:message 3"
    assert parts[-1] == "inbound:" + "x" * 117 + "..."
    assert build_context_digest([]) == ""


def test_input_hash_depends_on_prompt_version_and_context():
    settings = AiSettings(mode="llm")
    base = compute_input_hash(build_input_seed("hello", settings, ""))

    assert len(base) == 64
    assert base == compute_input_hash(build_input_seed("hello", settings, ""))
    assert base != compute_input_hash(build_input_seed("hello", AiSettings(mode="llm", prompt_version="v2"), ""))
    assert base != compute_input_hash(build_input_seed("hello", settings, "outbound:hi"))


def test_check_budget():
    settings = AiSettings(daily_budget=2, max_calls_per_conversation=1)

    assert check_budget(2, 0, settings) == "daily_budget_exceeded"
    assert check_budget(0, 1, settings) == "conversation_budget_exceeded"
    assert check_budget(1, 0, settings) is None


def test_validate_ai_output_accepts_and_clamps():
    payload = interpretation(handoff=True)
    payload["handoff"]["evidence"] = "e" * 300

    parsed = validate_ai_output(json.dumps(payload))

    assert parsed is not None
    assert parsed.handoff.is_handoff
    assert len(parsed.handoff.evidence) == 120


@pytest.mark.parametrize(
    "mutate",
    [
        lambda p: p["handoff"].update(is_handoff="yes"),
        lambda p: p["handoff"].update(type="fax"),
        lambda p: p["deferred"].update(bucket="TOMORROW"),
        lambda p: p["deferred"].update(due_date_iso="2024/07/01"),
        lambda p: p["deferred"].update(confidence="VERY_HIGH"),
        lambda p: p.pop("deferred"),
    ],
)
def test_validate_ai_output_rejects_out_of_vocabulary(mutate):
    payload = interpretation(deferred=True, bucket="NEXT_WEEK")
    mutate(payload)

    assert validate_ai_output(json.dumps(payload)) is None


def test_validate_ai_output_rejects_non_json():
    assert validate_ai_output("not json") is None
    assert validate_ai_output("[1, 2]") is None


def test_mock_interpreter_is_keyword_driven():
    interpreter = AiInterpreter(AiSettings(mode="mock"))

    result = interpreter.interpret(
        _prompt("Let's talk next month, or call me"), input_hash="h", context_digest="", features={}
    )

    assert result.deferred.is_deferred
    assert result.deferred.bucket == "NEXT_MONTH"
    assert result.handoff.is_handoff
    assert result.handoff.type == "phone"


def test_fixture_interpreter(tmp_path):
    interpreter = AiInterpreter(AiSettings(mode="fixture"), fixtures_dir=tmp_path)
    (tmp_path / "abc.json").write_text(json.dumps(interpretation(handoff=True)), encoding="utf-8")
    (tmp_path / "bad.json").write_text('{"handoff": 1}', encoding="utf-8")

    found = interpreter.interpret(_prompt(HOLIDAYS), input_hash="abc", context_digest="", features={})
    assert found.handoff.is_handoff

    with pytest.raises(AiInvalidOutputError):
        interpreter.interpret(_prompt(HOLIDAYS), input_hash="bad", context_digest="", features={})
    with pytest.raises(AiInterpreterError, match="ai_fixture_missing"):
        interpreter.interpret(_prompt(HOLIDAYS), input_hash="missing", context_digest="", features={})


def test_llm_interpreter_passes_runtime_limits():
    llm = FakeLLM(response=interpretation(deferred=True, bucket="NEXT_WEEK"))
    interpreter = AiInterpreter(AiSettings(mode="llm", timeout_ms=5000, max_output_tokens=64), llm)

    result = interpreter.interpret(
        _prompt(HOLIDAYS), input_hash="h", context_digest="outbound:hi", features={"has_link": False}
    )

    assert result.deferred.bucket == "NEXT_WEEK"
    call = llm.calls[0]
    assert call["max_tokens"] == 64
    assert call["temperature"] == 0.0
    assert call["timeout_s"] == 5.0
    assert call["prompt"].startswith(SYSTEM_PROMPT)
    assert f"Message:\n{HOLIDAYS}" in call["prompt"]
    assert "Context:\noutbound:hi" in call["prompt"]


def test_llm_interpreter_unwraps_response_envelope():
    llm = FakeLLM(response={"response": interpretation(handoff=True)})
    interpreter = AiInterpreter(AiSettings(mode="llm"), llm)

    result = interpreter.interpret(_prompt(HOLIDAYS), input_hash="h", context_digest="", features={})

    assert result.handoff.is_handoff


@pytest.mark.parametrize(
    "llm,error,message",
    [
        (None, AiInterpreterError, "ai_backend_missing"),
        (FakeLLM(error=TimeoutError()), AiTimeoutError, "ai_timeout"),
        (FakeLLM(error=ConnectionError("reset")), AiInterpreterError, "ai_backend_failed: reset"),
        (FakeLLM(response="definitely not json"), AiInvalidOutputError, "ai_invalid_output"),
    ],
)
def test_llm_interpreter_errors(llm, error, message):
    interpreter = AiInterpreter(AiSettings(mode="llm"), llm)

    with pytest.raises(error, match=message):
        interpreter.interpret(_prompt(HOLIDAYS), input_hash="h", context_digest="", features={})


def _attempt(settings, interpreter=None, **kwargs):
    return run_ai_attempt(
        HOLIDAYS,
        extract_features(HOLIDAYS),
        settings=settings,
        interpreter=interpreter,
        **kwargs,
    )


def test_attempt_counts_llm_usage():
    settings = AiSettings(mode="llm")
    llm = FakeLLM(response=interpretation(deferred=True, bucket="AFTER_HOLIDAYS"))
    usage = []

    result = _attempt(settings, AiInterpreter(settings, llm), increment_usage=lambda: usage.append(1))

    assert result.attempted
    assert result.attempt_outcome == "ok"
    assert result.interpretation.deferred.bucket == "AFTER_HOLIDAYS"
    assert (result.daily_calls, result.conversation_calls) == (1, 1)
    assert usage == [1]


def test_attempt_reuses_cached_interpretation():
    settings = AiSettings(mode="llm")
    llm = FakeLLM(response=interpretation(deferred=True, bucket="AFTER_HOLIDAYS"))
    first = _attempt(settings, AiInterpreter(settings, llm))
    cached = AiFeatures(input_hash=first.input_hash, interpretation=first.interpretation)

    second = _attempt(settings, AiInterpreter(settings, llm), existing_ai=cached, daily_calls=1)

    assert second.cache_hit
    assert second.skipped_reason == "cache_hit"
    assert second.interpretation == first.interpretation
    assert second.daily_calls == 1
    assert len(llm.calls) == 1


def test_attempt_respects_daily_budget(log_stream):
    logger, stream = log_stream
    settings = AiSettings(mode="llm", daily_budget=3)
    llm = FakeLLM(response=interpretation())

    result = _attempt(settings, AiInterpreter(settings, llm), daily_calls=3, logger=logger)

    assert result.skipped_reason == "daily_budget_exceeded"
    assert not result.attempted
    assert llm.calls == []
    assert json.loads(stream.getvalue())["msg"] == "ai_attempt_skipped"


def test_attempt_timeout_still_consumes_budget(log_stream):
    logger, stream = log_stream
    settings = AiSettings(mode="llm")

    result = _attempt(settings, AiInterpreter(settings, FakeLLM(error=TimeoutError())), logger=logger)

    assert result.attempt_outcome == "timeout"
    assert result.errors == ("ai_timeout",)
    assert result.interpretation is None
    assert result.daily_calls == 1
    entry = json.loads(stream.getvalue())
    assert entry["lvl"] == "WARN"
    assert entry["outcome"] == "timeout"


def test_fixture_miss_does_not_consume_budget(tmp_path):
    settings = AiSettings(mode="fixture")

    result = _attempt(settings, AiInterpreter(settings, fixtures_dir=tmp_path))

    assert result.attempt_outcome == "error"
    assert result.errors[0].startswith("ai_fixture_missing")
    assert result.daily_calls == 0


def test_gate_skip_keeps_hash_and_counters():
    result = run_ai_attempt("Sounds great", extract_features("Sounds great"), settings=AiSettings(mode="mock"), daily_calls=4)

    assert result.skipped_reason == "keyword_gate"
    assert len(result.input_hash) == 64
    assert result.daily_calls == 4


def _history():
    return annotate_messages(
        [
            Message(id="m1", direction="outbound", text="Hi! When would suit you?", created_at=ago(days=2)),
            Message(id="m2", direction="inbound", text=HOLIDAYS, created_at=ago(days=1)),
        ]
    )


def test_augment_messages_attaches_records_to_inbound_only():
    settings = AiSettings(mode="mock")

    augmented, daily_calls, conversation_calls = augment_messages(_history(), settings=settings, now=NOW)

    assert daily_calls == 1
    assert conversation_calls == 1
    assert augmented[0].ai is None
    ai = augmented[1].ai
    assert ai.attempt_outcome == "ok"
    assert ai.mode == "mock"
    assert ai.ran_at == "2024-06-12T12:00:00.000Z"
    assert ai.interpretation.deferred.bucket == "AFTER_HOLIDAYS"
    expected_hash = compute_input_hash(
        build_input_seed(HOLIDAYS.lower(), settings, "outbound:Hi! When would suit you?")
    )
    assert ai.input_hash == expected_hash


def test_augmented_history_resolves_to_ai_deferral():
    augmented, _, _ = augment_messages(_history(), settings=AiSettings(mode="mock"), now=NOW)

    result = InferenceEngine().infer(augmented, now=NOW)

    assert result.state is ConversationState.DEFERRED
    assert result.reason_codes == ["AI_DEFERRED"]
    assert result.followup_due_at == "2024-08-11T00:00:00.000Z"
    assert result.followup_due_source == "ai"


def test_augment_messages_is_noop_when_off():
    history = _history()

    augmented, daily_calls, conversation_calls = augment_messages(
        history, settings=AiSettings(), now=NOW, daily_calls=7, conversation_calls=2
    )

    assert augmented == history
    assert daily_calls == 7
    assert conversation_calls == 2


def test_conversation_budget_carries_across_runs():
    """
    What:
        A second run on the same conversation, fed the counter returned by the
        first, is refused once ``max_calls_per_conversation`` is spent.

    Why:
        Conversations are re-resolved on every new message; the per-thread
        budget would otherwise reset each time.
    """

    settings = AiSettings(mode="mock", max_calls_per_conversation=1)
    _, daily_calls, conversation_calls = augment_messages(_history(), settings=settings, now=NOW)

    augmented, daily_after, conversation_after = augment_messages(
        _history(),
        settings=settings,
        now=NOW,
        daily_calls=daily_calls,
        conversation_calls=conversation_calls,
    )

    ai = augmented[1].ai
    assert ai.skipped_reason == "conversation_budget_exceeded"
    assert ai.attempted is False
    assert ai.interpretation is None
    assert (daily_after, conversation_after) == (1, 1)
