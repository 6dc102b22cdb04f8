import pytest

from core.sanitize import NO_CONTENT_MESSAGE, dedupe_greetings, sanitize, strip_timestamps

SAMPLES = [
    "Hello everyone!\nThe team discussed the launch.\nHello everyone!\n- Ship v2 Friday",
    "[2024-05-01 12:30] Alice: shipped the fix\n[12:31] Bob: thanks",
    "🪙 *Payment Required*\n\nPay $0.10 via x402:\nhttps://relay.test/pay?token=abc\nReal content",
    "gm\ngm\n\n\n\nmeeting at 12:30 moved",
    "Alice: please pay 2024-05-01 12:30 $5 to Bob",
    "Deadline [[12:30]12:31] for the launch",
    "",
]


@pytest.mark.parametrize("text", SAMPLES)
def test_sanitize_is_idempotent(text):
    once = sanitize(text)
    assert sanitize(once) == once


def test_repeated_greeting_kept_once():
    text = "Hello everyone!\nThe team discussed the launch.\nHello everyone!\n- Ship v2 Friday"

    cleaned = sanitize(text)

    assert cleaned.count("Hello everyone!") == 1
    assert cleaned == "Hello everyone!\nThe team discussed the launch.\n- Ship v2 Friday"


def test_greeting_dedupe_ignores_punctuation_and_case():
    assert dedupe_greetings("Hi team!\nhi team\nstatus update") == "Hi team!\nstatus update"


def test_payment_prompt_lines_are_removed():
    text = "🪙 *Payment Required*\n\nPay $0.10 via x402:\nhttps://relay.test/pay?token=abc\nReal content"

    assert sanitize(text) == "Real content"


def test_timestamps_are_removed_but_plain_times_kept():
    text = "[2024-05-01 12:30] Alice: shipped the fix\n2024-05-01T12:31:00Z Bob: thanks\n[12:32] Carol: meeting at 14:00"

    assert strip_timestamps(text) == "Alice: shipped the fix\nBob: thanks\nCarol: meeting at 14:00"


def test_empty_result_becomes_canned_message():
    assert sanitize("   \n\n") == NO_CONTENT_MESSAGE
    assert sanitize("Pay $0.10 via x402") == NO_CONTENT_MESSAGE
    assert sanitize(NO_CONTENT_MESSAGE) == NO_CONTENT_MESSAGE


def test_custom_empty_message():
    assert sanitize("", empty="nothing") == "nothing"


def test_nested_bracket_timestamps_are_fully_removed():
    assert sanitize("Deadline [[12:30]12:31] for the launch") == "Deadline for the launch"


def test_payment_line_hidden_behind_timestamp_is_removed_in_one_pass():
    assert sanitize("Alice: please pay 2024-05-01 12:30 $5 to Bob\nRoadmap agreed") == "Roadmap agreed"
