"""
Module: tests/unit/test_engine.py

What:
  Scenario tests for :class:`convstate.core.engine.InferenceEngine` covering
  the cascade priorities, the time-based escalations, resurrection, the
  follow-up policy and the inactivity timeout.

Why:
  The verdict drives which conversations land in a follow-up queue. Each
  scenario mirrors a thread shape operators reported, with timestamps pinned
  relative to :data:`fakes.NOW` so expectations are exact.

How:
  Build histories with :func:`fakes.msg`, resolve them at ``NOW`` and assert on
  the state, confidence, reason codes and follow-up fields.

Invariants & Safety Rules:
  - Terminal states never carry a suggestion or ``needs_followup``.
  - Resolving the same input twice yields identical output.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from convstate.config.schema import InferenceConfig
from convstate.core.cascade import CASCADE, ResolutionContext
from convstate.core.engine import (
    SUGGEST_LATER,
    SUGGEST_NOW,
    SUGGEST_OFF_PLATFORM,
    SUGGEST_REPLY,
    InferenceEngine,
    coalesce_snippet,
    infer_conversation,
)
from convstate.core.states import Confidence, ConversationState, EvidencedReason

from fakes import NOW, ago, interpretation, iso, msg


def test_spam_phrase_after_long_silence(engine):
    """What/Why/How: a lone spam complaint with no buying context is SPAM."""

    result = engine.infer(
        [msg("m1", "inbound", "This is a scam and I am reporting you", ago(days=41))],
        now=NOW,
    )

    assert result.state is ConversationState.SPAM
    assert result.confidence is Confidence.HIGH
    assert result.reason_codes == ["SPAM_PHRASE_MATCH", "SPAM_CONTEXT_CONFIRMED"]
    assert result.followup_suggestion is None
    assert result.needs_followup is False


def test_recent_spam_phrase_is_not_confirmed(engine):
    result = engine.infer(
        [msg("m1", "inbound", "This is a scam and I am reporting you", ago(days=5))],
        now=NOW,
    )

    assert result.state is ConversationState.NEW
    assert "UNREPLIED" in result.reason_codes


def test_phone_number_moves_conversation_off_platform(engine):
    result = engine.infer([msg("m1", "inbound", "Call me at (415) 555-1212.", ago(hours=2))], now=NOW)

    assert result.state is ConversationState.OFF_PLATFORM
    assert result.confidence is Confidence.MEDIUM
    assert result.reason_codes == ["PHONE_OR_EMAIL"]
    assert result.followup_suggestion == SUGGEST_OFF_PLATFORM
    assert result.needs_followup is False


def test_unanswered_price_quote_times_out(engine):
    """What/Why/How: the business quoted 61 days ago and never heard back."""

    quoted_at = ago(days=61)
    result = engine.infer(
        [
            msg("m1", "inbound", "Hi, how much for the table?", ago(days=62)),
            msg("m2", "outbound", "The price is $450 for the walnut table.", quoted_at),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.HIGH
    assert result.reasons == (EvidencedReason("LOST_INACTIVE_TIMEOUT", Confidence.HIGH, quoted_at),)
    assert result.followup_suggestion is None
    assert result.followup_due_at is None
    assert result.followup_due_source is None
    assert result.needs_followup is False


def test_price_out_of_range_is_explicitly_lost(engine):
    result = engine.infer(
        [
            msg("m1", "outbound", "It would be $1200.", ago(days=3)),
            msg("m2", "inbound", "It's out of my price range.", ago(days=2)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.HIGH
    assert result.reasons == (
        EvidencedReason("LOST_PRICE_OUT_OF_RANGE", Confidence.HIGH, "out of my price range"),
    )
    assert result.state_trigger_message_id == "m2"


def test_deferral_next_week(engine):
    sent = NOW - timedelta(hours=1)
    result = engine.infer([msg("m1", "inbound", "Please follow up next week.", iso(sent))], now=NOW)

    assert result.state is ConversationState.DEFERRED
    assert result.confidence is Confidence.MEDIUM
    assert result.reason_codes == ["DEFERRAL_PHRASE"]
    assert result.followup_due_at == iso(sent + timedelta(days=7))
    assert result.followup_due_source == "customer_intent"
    assert result.followup_suggestion == SUGGEST_LATER
    assert result.needs_followup is False


def test_thanks_after_loss_does_not_resurrect(engine):
    result = engine.infer(
        [
            msg("m1", "inbound", "It's out of my price range.", ago(days=45)),
            msg("m2", "inbound", "Thank you!", ago(days=1)),
        ],
        previous_state="LOST",
        previous_evaluated_at=ago(days=44),
        now=NOW,
    )

    assert result.state is ConversationState.LOST
    assert result.resurrected is False
    assert "RESURRECTED" not in result.reason_codes


def test_substantive_reply_resurrects_dormant_conversation(engine):
    result = engine.infer(
        [msg("m1", "inbound", "Hi again, is the walnut table still available?", ago(hours=2))],
        previous_state="DEFERRED",
        previous_evaluated_at=ago(days=40),
        now=NOW,
    )

    assert result.resurrected is True
    assert result.state is ConversationState.NEW
    assert result.reason_codes == ["RESURRECTED", "UNREPLIED"]


def test_final_touch_requires_renewed_intent(engine):
    common = dict(previous_state="LOST", previous_evaluated_at=ago(days=40), final_touch_sent_at=ago(days=35), now=NOW)

    plain = engine.infer(
        [msg("m1", "inbound", "Hi again, is the walnut table still available?", ago(hours=2))], **common
    )
    priced = engine.infer(
        [msg("m1", "inbound", "Hi again, what's the price on the walnut table now?", ago(hours=2))], **common
    )

    assert plain.resurrected is False
    assert priced.resurrected is True


def test_resurrection_needs_gap(engine):
    result = engine.infer(
        [msg("m1", "inbound", "Hi again, is the walnut table still available?", ago(hours=2))],
        previous_state="DEFERRED",
        previous_evaluated_at=ago(days=10),
        now=NOW,
    )

    assert result.resurrected is False


def test_opt_out_wins(engine):
    result = engine.infer(
        [
            msg("m1", "outbound", "It's $500 with delivery", ago(days=3)),
            msg("m2", "inbound", "Please stop messaging me", ago(days=2)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.LOST
    assert result.reason_codes == ["OPT_OUT"]
    assert result.followup_suggestion is None


@pytest.mark.parametrize(
    "flags,code",
    [
        ({"blocked_by_recipient": True}, "BLOCKED_BY_RECIPIENT"),
        ({"bounced_by_provider": True}, "BOUNCED"),
    ],
)
def test_delivery_flags_are_terminal(engine, flags, code):
    result = engine.infer([msg("m1", "inbound", "Hello there", ago(hours=3))], now=NOW, **flags)

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.HIGH
    assert result.reason_codes == [code]


def test_conversion_phrase(engine):
    result = engine.infer(
        [
            msg("m1", "outbound", "The deposit is $300", ago(days=2)),
            msg("m2", "inbound", "We paid the deposit today", ago(days=1)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.CONVERTED
    assert result.reason_codes == ["CONVERSION_PHRASE"]
    assert result.needs_followup is False


def test_system_assignment_is_not_a_conversion(engine):
    result = engine.infer(
        [msg("m1", "inbound", "Conversation assigned to Sales through an automation and closed", ago(hours=1))],
        now=NOW,
    )

    assert result.state is ConversationState.NEW


def _rejected_thread(*extra):
    return [
        msg("m1", "outbound", "It's $800 for the set", ago(days=20)),
        msg("m2", "inbound", "That's too expensive for me", ago(days=15)),
        *extra,
    ]


def test_stale_price_rejection_becomes_lost(engine):
    result = engine.infer(_rejected_thread(), now=NOW)

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.HIGH
    assert result.reason_codes == ["PRICE_MENTION", "PRICE_REJECTION_STALE"]


def test_substantive_reply_revives_price_rejection(engine):
    result = engine.infer(
        _rejected_thread(msg("m3", "inbound", "Could you do a smaller version instead?", ago(days=14, hours=12))),
        now=NOW,
    )

    assert result.state is ConversationState.PRICE_GIVEN
    assert result.reason_codes == ["PRICE_MENTION", "UNREPLIED", "SLA_BREACH"]
    assert result.followup_suggestion == SUGGEST_REPLY


def test_bare_no_does_not_revive_price_rejection(engine):
    result = engine.infer(_rejected_thread(msg("m3", "inbound", "No.", ago(days=14, hours=12))), now=NOW)

    assert result.state is ConversationState.LOST
    assert "PRICE_REJECTION_STALE" in result.reason_codes


def test_stale_rejection_never_overrides_a_conversion(engine):
    result = engine.infer(
        [
            msg("m1", "inbound", "That's too expensive for me", ago(days=80)),
            msg("m2", "inbound", "Changed my mind, we paid the invoice", ago(days=20)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.CONVERTED
    assert result.reason_codes == ["CONVERSION_PHRASE"]


def test_stale_price_quote_is_lost(engine):
    """
    What:
        The customer asked a follow-up question after a quote and the thread
        then sat for longer than the lost-after-price window.

    Why:
        The escalation happens after the reply policy ran; the verdict must
        still drop the reply suggestion and the SLA tags.
    """

    result = engine.infer(
        [
            msg("m1", "outbound", "It's $500", ago(days=70)),
            msg("m2", "inbound", "ok what about delivery", ago(days=65)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.MEDIUM
    assert result.reason_codes == ["PRICE_MENTION", "PRICE_STALE"]
    assert result.followup_suggestion is None
    assert result.followup_due_at is None
    assert result.needs_followup is False


def test_recent_price_quote_is_not_stale(engine):
    result = engine.infer(
        [
            msg("m1", "outbound", "It's $500", ago(days=50)),
            msg("m2", "inbound", "ok what about delivery", ago(days=45)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.PRICE_GIVEN
    assert result.reason_codes == ["PRICE_MENTION", "UNREPLIED", "SLA_BREACH"]
    assert result.followup_suggestion == SUGGEST_REPLY


def test_wait_to_proceed_is_lost(engine):
    result = engine.infer(
        [
            msg("m1", "outbound", "It's $500 with delivery", ago(days=2)),
            msg("m2", "inbound", "Thanks, I'll have to wait", ago(days=1)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.MEDIUM
    assert result.reason_codes == ["INDEFINITE_DEFERRAL", "WAIT_TO_PROCEED"]


def _ai_message(message_id, text, created_at, **verdicts):
    return msg(
        message_id,
        "inbound",
        text,
        created_at,
        ai={"input_hash": "h" * 64, "attempted": True, "interpretation": interpretation(**verdicts)},
    )


def test_ai_handoff_goes_off_platform(engine):
    result = engine.infer([_ai_message("m1", "Let's continue this offline", ago(hours=3), handoff=True)], now=NOW)

    assert result.state is ConversationState.OFF_PLATFORM
    assert result.reason_codes == ["AI_HANDOFF"]
    assert result.followup_suggestion == SUGGEST_OFF_PLATFORM


def test_stale_ai_handoff_without_contact_is_lost(engine):
    result = engine.infer([_ai_message("m1", "Let's continue this offline", ago(days=25), handoff=True)], now=NOW)

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.MEDIUM
    assert result.reason_codes == ["AI_HANDOFF", "OFF_PLATFORM_NO_CONTACT_INFO", "OFF_PLATFORM_STALE"]


def test_ai_deferral_with_exact_date(engine):
    result = engine.infer(
        [
            _ai_message(
                "m1",
                "Let's revisit this once things calm down",
                ago(hours=12),
                deferred=True,
                bucket="EXACT_DATE",
                due_date_iso="2024-07-01",
            )
        ],
        now=NOW,
    )

    assert result.state is ConversationState.DEFERRED
    assert result.reason_codes == ["AI_DEFERRED"]
    assert result.followup_due_at == "2024-07-01T00:00:00.000Z"
    assert result.followup_due_source == "ai"
    assert result.needs_followup is False


def test_ai_deferral_bucket_resolves_against_now(engine):
    result = engine.infer(
        [_ai_message("m1", "Let's revisit this once things calm down", ago(hours=12), deferred=True, bucket="NEXT_WEEK")],
        now=NOW,
    )

    assert result.followup_due_at == "2024-06-19T00:00:00.000Z"
    assert result.followup_due_source == "ai"


def test_deferral_due_soon_needs_followup(engine):
    result = engine.infer([msg("m1", "inbound", "Can you check back tomorrow?", ago(hours=2))], now=NOW)

    assert result.state is ConversationState.DEFERRED
    assert result.followup_due_at == iso(NOW + timedelta(hours=22))
    assert result.followup_suggestion == SUGGEST_LATER
    assert result.needs_followup is True


def test_later_inbound_cancels_old_deferral(engine):
    result = engine.infer(
        [
            msg("m1", "inbound", "Talk next week", ago(days=10)),
            msg("m2", "inbound", "Actually, what colors do you have?", ago(days=2)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.NEW
    assert result.reason_codes == ["UNREPLIED", "SLA_BREACH"]


def _friday_thread():
    return [
        msg("m1", "inbound", "Hi, do you have photos of the walnut desk?", "2024-06-07T10:00:00.000Z"),
        msg("m2", "outbound", "Here are a few photos", "2024-06-07T15:00:00.000Z"),
    ]


def test_business_days_skip_weekend(engine):
    monday = datetime(2024, 6, 10, 12, tzinfo=timezone.utc)

    result = engine.infer(_friday_thread(), now=monday)

    assert result.state is ConversationState.ENGAGED
    assert result.confidence is Confidence.LOW
    assert result.followup_due_at == "2024-06-11T15:00:00.000Z"
    assert result.followup_due_source == "default"
    assert result.followup_suggestion == SUGGEST_LATER
    assert result.needs_followup is False


def test_business_follow_up_becomes_due(engine):
    result = engine.infer(_friday_thread(), now=NOW)

    assert result.followup_suggestion == SUGGEST_NOW
    assert result.needs_followup is True
    assert result.followup_due_at == "2024-06-11T15:00:00.000Z"


def test_customer_waiting_breaches_sla(engine):
    result = engine.infer(
        [
            msg("m1", "outbound", "Hello! How can we help?", ago(hours=40)),
            msg("m2", "inbound", "What sizes does the bench come in", ago(hours=30)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.ENGAGED
    assert result.followup_suggestion == SUGGEST_REPLY
    assert result.needs_followup is True
    assert result.reason_codes == ["UNREPLIED", "SLA_BREACH"]


def test_no_inbound_never_unreplied(engine):
    result = engine.infer([msg("m1", "outbound", "Hi! Just checking in", ago(days=1))], now=NOW)

    assert result.state is ConversationState.NEW
    assert result.reason_codes == []
    assert result.followup_suggestion == SUGGEST_LATER


def test_feasibility_needs_dimensional_context(engine):
    bare = engine.infer([msg("m1", "inbound", "Hmm, it probably won't work", ago(days=1))], now=NOW)
    with_context = engine.infer(
        [
            msg("m1", "outbound", "The piece is 84 inches long", ago(days=2)),
            msg("m2", "inbound", "Hmm, it probably won't work", ago(days=1)),
        ],
        now=NOW,
    )

    assert bare.state is ConversationState.NEW
    assert with_context.state is ConversationState.LOST
    assert with_context.confidence is Confidence.MEDIUM
    assert with_context.reason_codes == ["LOST_FEASIBILITY"]


def test_timing_objection_with_future_intent_is_deferred(engine):
    result = engine.infer([msg("m1", "inbound", "Not right now, next month", ago(hours=1))], now=NOW)

    assert result.state is ConversationState.DEFERRED
    assert result.reason_codes == ["DEFERRAL_PHRASE"]
    assert result.followup_due_at == "2024-07-12T11:00:00.000Z"


def test_timing_objection_alone_is_lost(engine):
    result = engine.infer([msg("m1", "inbound", "Not right now", ago(hours=1))], now=NOW)

    assert result.state is ConversationState.LOST
    assert result.confidence is Confidence.MEDIUM
    assert result.reason_codes == ["LOST_TIMING_NOT_NOW"]
    assert result.state_trigger_message_id == "m1"


def test_not_intentional_contact(engine):
    result = engine.infer([msg("m1", "inbound", "Sorry, wrong button", ago(hours=1))], now=NOW)

    assert result.reasons == (EvidencedReason("LOST_NOT_INTENTIONAL", Confidence.HIGH, "wrong button"),)


def test_outbound_loss_wording_is_ignored(engine):
    result = engine.infer(
        [
            msg("m1", "inbound", "Hi, is the oak bench available?", ago(hours=5)),
            msg("m2", "outbound", "I understand if it's out of your price range", ago(hours=4)),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.ENGAGED


def test_tenant_inactivity_threshold():
    history = [
        msg("m1", "inbound", "Hi there", ago(days=13)),
        msg("m2", "outbound", "Happy to help, what size?", ago(days=12)),
    ]

    default = InferenceEngine(InferenceConfig()).infer(history, now=NOW)
    fast = InferenceEngine(InferenceConfig(inactive_timeout_days=10)).infer(history, now=NOW)

    assert default.state is ConversationState.ENGAGED
    assert default.followup_suggestion == SUGGEST_NOW
    assert fast.state is ConversationState.LOST
    assert fast.reason_codes == ["LOST_INACTIVE_TIMEOUT"]


def test_unparsable_timestamps_are_tolerated(engine):
    result = engine.infer(
        [
            msg("b", "outbound", "Hi! How can I help?", ago(hours=1)),
            msg("a", "inbound", "Hello", "not-a-date"),
        ],
        now=NOW,
    )

    assert result.state is ConversationState.ENGAGED
    assert result.message_count == 2
    assert result.last_message_at == ago(hours=1)
    assert result.last_inbound_at == "not-a-date"


def test_snippet_skips_empty_messages(engine):
    result = engine.infer(
        [
            msg("m1", "inbound", "Hello, is this still for sale", ago(hours=3)),
            msg("m2", "inbound", None, ago(hours=2)),
        ],
        now=NOW,
    )

    assert result.last_snippet == "Hello, is this still for sale"


def test_coalesce_snippet():
    assert coalesce_snippet("   ") is None
    assert coalesce_snippet(None) is None
    long = coalesce_snippet("x" * 200)
    assert len(long) == 140
    assert long.endswith("...")


def test_empty_history(engine):
    result = engine.infer([], now=NOW)

    assert result.state is ConversationState.NEW
    assert result.message_count == 0
    assert result.followup_suggestion is None


def test_resolution_is_idempotent(engine):
    history = _rejected_thread(msg("m3", "inbound", "Could you do a smaller version instead?", ago(days=14, hours=12)))

    first = engine.infer(history, now=NOW).as_dict()
    second = engine.infer(list(reversed(history)), now=NOW).as_dict()

    assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)


@pytest.mark.parametrize(
    "history",
    [
        [msg("m1", "inbound", "Please stop messaging me", ago(hours=30))],
        [msg("m1", "inbound", "We paid the deposit today", ago(hours=30))],
        [msg("m1", "inbound", "This is a scam and I am reporting you", ago(days=41))],
        [
            msg("m1", "outbound", "It's $500", ago(days=70)),
            msg("m2", "inbound", "ok what about delivery", ago(days=65)),
        ],
    ],
)
def test_terminal_states_clear_follow_up(engine, history):
    result = engine.infer(history, now=NOW)

    assert result.state in (ConversationState.LOST, ConversationState.CONVERTED, ConversationState.SPAM)
    assert result.followup_suggestion is None
    assert result.needs_followup is False
    assert "UNREPLIED" not in result.reason_codes
    assert "SLA_BREACH" not in result.reason_codes


def test_state_resolved_is_logged(log_stream):
    logger, stream = log_stream

    infer_conversation(
        [msg("m1", "inbound", "Please follow up next week.", ago(hours=1))],
        config=InferenceConfig(),
        logger=logger,
        now=NOW,
    )

    entry = json.loads(stream.getvalue().splitlines()[-1])
    assert entry["msg"] == "state_resolved"
    assert entry["state"] == "DEFERRED"
    assert entry["cascade_rule"] == "deferred"
    assert entry["reason_codes"] == ["DEFERRAL_PHRASE"]
    assert entry["message_count"] == 1


def test_explicit_lost_rule_refuses_missing_evidence():
    rule = next(rule for rule in CASCADE if rule.name == "explicit_lost")
    ctx = ResolutionContext(now=NOW, defer_default_days=30)

    assert rule.applies(ctx) is False
    with pytest.raises(ValueError, match="explicit-lost evidence"):
        rule.build(ctx)
