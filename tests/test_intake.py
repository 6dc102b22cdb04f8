import logging

import pytest

from core import formatting
from core.errors import ValidationError
from core.intake import (
    CommandRequest,
    Conversation,
    parse_lookback,
    parse_search_events,
    search_request,
    summarise_request,
)
from core.payment import SEARCH_EVENTS, SUMMARISE


@pytest.mark.parametrize(
    "raw, expected",
    [(None, 60), ("", 60), ("30", 30), (" 90 ", 90), ("0", 1), ("-5", 1), ("99999", 1440)],
)
def test_parse_lookback_defaults_and_clamps(settings, raw, expected):
    assert parse_lookback(raw, settings) == expected


def test_parse_lookback_rejects_non_numbers(settings):
    with pytest.raises(ValidationError) as excinfo:
        parse_lookback("an hour", settings)
    assert excinfo.value.user_message().startswith("❌")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("/search_events on ai", ("ai", None)),
        ("/search_events on machine learning in new york", ("machine learning", "new york")),
        ("/search_events On Crypto In Berlin", ("Crypto", "Berlin")),
        ("/search_events in paris on wine", ("wine", None)),
        ("/search_events on ai in", ("ai", None)),
    ],
)
def test_parse_search_events(text, expected):
    assert parse_search_events(text) == expected


@pytest.mark.parametrize(
    "text",
    ["/search_events", "/search_events ai", "/search_events about ai", "/search_events on in london"],
)
def test_parse_search_events_rejects_bad_usage(text):
    with pytest.raises(ValidationError):
        parse_search_events(text)


def test_requests_carry_platform_routing(settings):
    discord = Conversation("discord", "c1", {"guild_id": "g1"})
    telegram = Conversation("telegram", "-100")

    assert summarise_request(discord, "15", settings) == CommandRequest(
        SUMMARISE, {"source": "discord", "lookbackMinutes": 15, "channelId": "c1", "serverId": "g1"}
    )
    assert summarise_request(telegram, None, settings).parameters == {
        "source": "telegram",
        "lookbackMinutes": 60,
        "chatId": "-100",
    }
    assert search_request(telegram, " ai ", "").parameters == {"source": "telegram", "topic": "ai"}


@pytest.mark.asyncio
async def test_summarise_issues_prompt_and_registers_token(relay, clock, settings):
    adapter = relay.adapters["telegram"]
    conversation = Conversation("telegram", "42")
    request = summarise_request(conversation, "60", settings)

    token = await relay.intake.process(adapter, conversation, request)

    assert token.startswith("42:")
    entry = relay.pending["telegram"]._entries[token]
    assert entry.expires_at == pytest.approx(clock() + 1800)
    assert entry.parameters["lookbackMinutes"] == 60
    (prompt,) = adapter.sent
    assert token in prompt["text"]
    assert token in prompt["pay_url"]
    assert entry.prompt_message_id == prompt["id"]
    assert relay.facilitator.verify_calls == []
    assert relay.worker.calls == []


@pytest.mark.asyncio
async def test_begin_acknowledges_before_any_network_work(relay, settings):
    adapter = relay.adapters["discord"]
    conversation = Conversation("discord", "c1", {"guild_id": "g1"})

    ack = relay.intake.begin(adapter, conversation, summarise_request(conversation, "60", settings))

    assert ack == {"type": 5}
    assert adapter.sent == []
    await relay.supervisor.drain(timeout=1)
    assert len(adapter.sent) == 1
    assert len(relay.pending["discord"]) == 1


@pytest.mark.asyncio
async def test_gate_rejection_is_reported_as_followup(relay):
    adapter = relay.adapters["telegram"]

    token = await relay.intake.process(adapter, Conversation("telegram", "42"), CommandRequest(SEARCH_EVENTS, {"topic": ""}))

    assert token is None
    (message,) = adapter.sent
    assert message["text"].startswith("❌ Error:")
    assert len(relay.pending["telegram"]) == 0


@pytest.mark.asyncio
async def test_prompt_failure_discards_token(relay, settings, caplog):
    adapter = relay.adapters["telegram"]
    adapter.fail_times = 2
    conversation = Conversation("telegram", "42")

    with caplog.at_level(logging.ERROR):
        token = await relay.intake.process(adapter, conversation, summarise_request(conversation, "60", settings))

    assert token is None
    assert len(relay.pending["telegram"]) == 0
    assert "could not report error" in caplog.text


def test_next_page_without_search(relay):
    assert relay.intake.next_page("42") == formatting.NO_SEARCH_MESSAGE
