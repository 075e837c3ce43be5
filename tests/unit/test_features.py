"""
Module: tests/unit/test_features.py

What:
    Exercise the per-message feature extractor, the deferral hint parser and
    the acknowledgement / hard-negative / rant heuristics.

Why:
    Every resolver decision starts from these signals. A regex drifting by one
    word silently turns deferred leads into lost ones, so the representative
    phrasings are pinned here.

How:
    Feed short realistic messages through :func:`extract_features` and the
    helper predicates and assert on individual fields.

Invariants & Safety Rules:
    - Customer-intent signals never fire on outbound messages.
    - The extractor never raises, even for ``None`` text.
"""

import pytest

from convstate.core.features import (
    detect_explicit_lost,
    extract_features,
    infer_deferral_hint,
    is_ack_only,
    is_hard_negative_reply,
    is_spam_content,
)
from convstate.core.features.heuristics import is_emoji_only
from convstate.core.states import Confidence


def test_phone_number_detected_in_call_request():
    """What/Why/How: a formatted US number is contact info and "call" is scheduling."""

    features = extract_features("Call me at (415) 555-1212.", "inbound")

    assert features.has_phone_number
    assert not features.has_email
    assert features.contains_schedule_terms
    assert not features.ack_only


def test_email_detected():
    features = extract_features("Write to jane.doe@example.com instead", "inbound")
    assert features.has_email


def test_outbound_direction_gates_customer_signals():
    """What/Why/How: business copy must never make a conversation look lost or spammy."""

    text = "If it's out of your price range, no thanks needed. Report any scam to us. Thank you!"
    features = extract_features(text, "outbound")

    assert features.explicit_lost is None
    assert not features.has_price_rejection_phrase
    assert not features.has_indefinite_deferral_phrase
    assert not features.contains_spam_phrase
    assert not features.has_spam_content
    assert not features.ack_only


def test_opt_out_is_not_direction_gated():
    features = extract_features("Reply STOP to unsubscribe", "outbound")
    assert features.contains_opt_out


def test_links_are_stripped_before_phone_and_schedule_matching():
    """What/Why/How: long digit runs and "book" inside a URL are not contact or scheduling signals."""

    features = extract_features("See https://example.com/book/123456789012", "inbound")

    assert features.has_link
    assert not features.has_phone_number
    assert not features.contains_schedule_terms


def test_explicit_price_rejection_phrase():
    features = extract_features("Honestly that's too expensive for us", "inbound")
    assert features.has_price_rejection_phrase


def test_too_much_needs_price_context():
    assert extract_features("That's too much for my budget", "inbound").has_price_rejection_phrase
    assert not extract_features("Thanks so much!", "inbound").has_price_rejection_phrase


def test_wait_to_proceed_sets_rejection_and_indefinite_deferral():
    features = extract_features("Thanks, I'll have to wait", "inbound")

    assert features.has_price_rejection_phrase
    assert features.has_indefinite_deferral_phrase
    assert features.deferral_date_hint is None


def test_indefinite_deferral_suppressed_by_concrete_hint():
    assert extract_features("We'll see, maybe someday", "inbound").has_indefinite_deferral_phrase
    assert not extract_features("Not right now, maybe next month", "inbound").has_indefinite_deferral_phrase


def test_deferral_phrase_and_hint():
    features = extract_features("Please follow up next week.", "inbound")

    assert features.contains_deferral_phrase
    assert features.deferral_date_hint == "next_week"


def test_currency_and_price_terms():
    features = extract_features("The price is $450 delivered", "outbound")

    assert features.has_currency
    assert features.contains_price_terms


def test_conversion_and_system_assignment():
    assert extract_features("We paid the deposit today", "inbound").contains_conversion_phrase
    assigned = extract_features("Conversation assigned to Sales through an automation", "outbound")
    assert assigned.contains_system_assignment


def test_spam_phrase_is_word_bounded_and_inbound_only():
    assert extract_features("This is a scam and I am reporting you", "inbound").contains_spam_phrase
    assert not extract_features("Is the robot vacuum included?", "inbound").contains_spam_phrase
    assert not extract_features("This is a scam and I am reporting you", "outbound").contains_spam_phrase


def test_none_text_is_safe():
    features = extract_features(None, "inbound")

    assert features.message_length == 0
    assert features.explicit_lost is None
    assert not features.ack_only


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Please follow up tomorrow", "tomorrow"),
        ("Let's talk next month", "next_month"),
        ("Check back next spring", "next_spring"),
        ("We plan to build this autumn", "this_fall"),
        ("Reach out later in the summer", "summer"),
        ("Ping me in 05 days", "in_5_days"),
        ("Maybe in 2 weeks", "in_14_days"),
        ("Try again in 3 months", "in_90_days"),
        ("No timeline at all", None),
        ("We love summer", None),
    ],
)
def test_infer_deferral_hint(text, expected):
    assert infer_deferral_hint(text) == expected


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Thank you!", True),
        ("ok", True),
        ("Thanks so much for all the help with this", True),
        ("\U0001F44D", True),
        ("\U0001F44D\U0001F3FD", True),
        ("Thanks, what is the price?", False),
        ("Thanks, can we book a call?", False),
        ("Sounds good, see you tomorrow", False),
        ("", False),
        ("123", False),
    ],
)
def test_is_ack_only(text, expected):
    assert is_ack_only(text) is expected


def test_emoji_only_rejects_text():
    assert is_emoji_only("\U0001F600 \U0001F389")
    assert not is_emoji_only("\U0001F600 hi")


@pytest.mark.parametrize("text", ["No", "no.", "Nope!", "nah"])
def test_hard_negative_reply(text):
    assert is_hard_negative_reply(text)


@pytest.mark.parametrize("text", ["No, thanks", "not now", "", None])
def test_not_hard_negative_reply(text):
    assert not is_hard_negative_reply(text)


RANT = (
    "The government and the FBI hacked my phone and they are watching me every day. "
    "City hall is part of the corruption and the police do nothing at all about the "
    "surveillance while everyone pretends this is normal and nobody listens to me."
)


def test_spam_content_flags_long_rant():
    assert len(RANT) >= 180
    assert is_spam_content(RANT)
    assert extract_features(RANT, "inbound").has_spam_content
    assert extract_features(RANT, "inbound").contains_spam_phrase


def test_spam_content_spares_questions_and_product_talk():
    assert not is_spam_content(RANT + " Can you help?")
    assert not is_spam_content(RANT.replace("normal", "normal, I still want the table"))
    assert not is_spam_content("The FBI hacked my phone.")


@pytest.mark.parametrize(
    "text, code, evidence",
    [
        ("Sorry, wrong button!", "LOST_NOT_INTENTIONAL", "wrong button"),
        ("We already bought one from another store.", "LOST_BOUGHT_ELSEWHERE", "already bought"),
        ("We decided to keep our old sofa.", "LOST_CHOSE_EXISTING", "decided to keep"),
        ("I have a sofa so I'm going to keep it", "LOST_CHOSE_EXISTING", "going to keep"),
        ("We already have one, thanks", "LOST_CHOSE_EXISTING", "already have"),
        ("It's out of my price range.", "LOST_PRICE_OUT_OF_RANGE", "out of my price range"),
        ("No thanks, not interested.", "LOST_EXPLICIT_DECLINE", "no thanks"),
        ("It's not my time, maybe someday.", "LOST_INDEFINITE_FUTURE", "not my time"),
    ],
)
def test_explicit_lost_codes(text, code, evidence):
    result = detect_explicit_lost(text)

    assert result is not None
    assert result.reason_code == code
    assert result.evidence == evidence
    assert result.confidence is Confidence.HIGH


def test_explicit_lost_keeps_first_code_in_priority_order():
    assert detect_explicit_lost("Wrong button, and we already bought one anyway").reason_code == "LOST_NOT_INTENTIONAL"
    assert detect_explicit_lost("I can't afford it and I'm not interested").reason_code == "LOST_PRICE_OUT_OF_RANGE"


def test_timing_qualifiers_soften_a_decline():
    """What/Why: "maybe later" is a deferral, "not right now" only a timing objection."""

    assert detect_explicit_lost("No thank you, maybe later") is None

    timing = detect_explicit_lost("no, not right now")
    assert timing.reason_code == "LOST_TIMING_NOT_NOW"
    assert timing.confidence is Confidence.MEDIUM
