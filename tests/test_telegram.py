import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import BadRequest

from core import formatting
from core.intake import Conversation
from transports.telegram_bot import TelegramAdapter, TelegramTransport


def make_update(text="/summarise 60", chat_id=42, message_id=7):
    message = SimpleNamespace(
        message_id=message_id,
        message_thread_id=None,
        text=text,
        date=None,
        reply_to_message=None,
        reply_text=AsyncMock(),
    )
    return SimpleNamespace(
        effective_chat=SimpleNamespace(id=chat_id),
        effective_message=message,
        effective_user=SimpleNamespace(id=1, username="alice", full_name="Alice Liddell"),
    )


@pytest.fixture
def transport(relay, settings):
    settings = dataclasses.replace(settings, telegram_token="123456:TEST-TOKEN", telegram_webhook_secret="s3cret")
    transport = TelegramTransport(relay.intake, relay.history, settings)
    transport.adapter = relay.adapters["telegram"]
    return transport


@pytest.fixture
def bot():
    bot = MagicMock()
    bot.send_message = AsyncMock(return_value=SimpleNamespace(message_id=5))
    bot.edit_message_text = AsyncMock()
    return bot


@pytest.mark.asyncio
async def test_adapter_posts_markdown_with_pay_button(bot):
    adapter = TelegramAdapter(bot)
    conversation = Conversation("telegram", "-100", {"reply_to": 7, "thread_id": 3})

    message_id = await adapter.send_followup(conversation, "*Pay*", pay_url="https://relay.test/pay", pay_label="Pay")

    assert message_id == "5"
    kwargs = bot.send_message.call_args.kwargs
    assert kwargs["chat_id"] == -100
    assert kwargs["parse_mode"] == ParseMode.MARKDOWN
    assert kwargs["message_thread_id"] == 3
    assert kwargs["reply_parameters"].message_id == 7
    assert isinstance(kwargs["reply_markup"], InlineKeyboardMarkup)
    assert kwargs["reply_markup"].inline_keyboard[0][0].url == "https://relay.test/pay"


@pytest.mark.asyncio
async def test_adapter_falls_back_to_plain_text(bot):
    bot.send_message.side_effect = [BadRequest("Can't parse entities"), SimpleNamespace(message_id=6)]
    adapter = TelegramAdapter(bot)

    message_id = await adapter.send_followup(Conversation("telegram", "42"), "broken *markdown")

    assert message_id == "6"
    assert "parse_mode" not in bot.send_message.call_args.kwargs


@pytest.mark.asyncio
async def test_adapter_edits_prompt(bot):
    await TelegramAdapter(bot).edit_message(Conversation("telegram", "42"), "9", "paid")

    bot.edit_message_text.assert_awaited_once_with(text="paid", chat_id=42, message_id=9)


def test_adapter_defer_ack_is_a_no_op(bot):
    assert TelegramAdapter(bot).defer_ack(Conversation("telegram", "42")) is None


def test_webhook_secret_check(transport):
    assert transport.webhook
    assert transport.verify_secret("s3cret")
    assert not transport.verify_secret("wrong")
    assert not transport.verify_secret(None)


@pytest.mark.asyncio
async def test_summarise_handler_issues_prompt(relay, transport):
    update = make_update()

    await transport.summarise(update, SimpleNamespace(args=["60"]))
    await relay.supervisor.drain(timeout=1)

    (prompt,) = relay.adapters["telegram"].sent
    assert prompt["conversation"].route["reply_to"] == 7
    (entry,) = relay.pending["telegram"]._entries.values()
    assert entry.parameters == {"source": "telegram", "lookbackMinutes": 60, "chatId": "42"}


@pytest.mark.asyncio
async def test_summarise_handler_rejects_bad_minutes_inline(relay, transport):
    update = make_update("/summarise soon")

    await transport.summarise(update, SimpleNamespace(args=["soon"]))

    reply = update.effective_message.reply_text.call_args.args[0]
    assert reply.startswith("❌ Lookback must be a whole number")
    assert len(relay.supervisor) == 0


@pytest.mark.asyncio
async def test_search_handler_parses_topic_and_city(relay, transport):
    update = make_update("/search_events on ai in london")

    await transport.search_events(update, SimpleNamespace(args=["on", "ai", "in", "london"]))
    await relay.supervisor.drain(timeout=1)

    (entry,) = relay.pending["telegram"]._entries.values()
    assert entry.topic == "ai"
    assert entry.location == "london"


@pytest.mark.asyncio
async def test_more_handler_without_search(transport):
    update = make_update("/more")

    await transport.more(update, SimpleNamespace(args=[]))

    assert update.effective_message.reply_text.call_args.args[0] == formatting.NO_SEARCH_MESSAGE


@pytest.mark.asyncio
async def test_plain_messages_are_recorded(relay, transport):
    update = make_update("we should ship on friday", message_id=11)

    await transport.record_message(update, SimpleNamespace(args=None))

    (stored,) = relay.history.within("42", 60)
    assert stored.text == "we should ship on friday"
    assert stored.author_username == "alice"
    assert stored.author_display == "Alice Liddell"


@pytest.mark.asyncio
async def test_adapter_caps_long_results_at_telegram_limit(bot):
    adapter = TelegramAdapter(bot)

    await adapter.send_followup(Conversation("telegram", "42"), "x" * 5000)

    assert len(bot.send_message.call_args.kwargs["text"]) == 4096
