import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
from discord import app_commands
import pytest
from nacl.signing import SigningKey

from core import formatting
from core.errors import AuthenticityError, ValidationError
from core.intake import Conversation
from transports.discord_bot import (
    CommandRegistrar,
    DiscordAdapter,
    DiscordInteractions,
    register_commands,
    verify_signature,
)


def command(name, *options, channel_id="c1"):
    return {
        "type": 2,
        "application_id": "999",
        "token": "interaction-token",
        "channel_id": channel_id,
        "guild_id": "g1",
        "data": {"name": name, "options": [{"name": k, "value": v} for k, v in options]},
    }


@pytest.fixture
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def interactions(relay, settings, signing_key):
    settings = dataclasses.replace(settings, discord_public_key=signing_key.verify_key.encode().hex())
    return DiscordInteractions(relay.intake, relay.adapters["discord"], settings)


def test_verify_signature(signing_key):
    public_key = signing_key.verify_key.encode().hex()
    body = b'{"type": 1}'
    signature = signing_key.sign(b"1700000000" + body).signature.hex()

    assert verify_signature(public_key, body, signature, "1700000000")
    assert not verify_signature(public_key, b'{"type": 2}', signature, "1700000000")
    assert not verify_signature(public_key, body, signature, "1700000001")
    assert not verify_signature(public_key, body, "zz", "1700000000")


def test_authenticate_fails_closed_without_key(relay, settings):
    interactions = DiscordInteractions(relay.intake, relay.adapters["discord"], settings)

    with pytest.raises(AuthenticityError):
        interactions.authenticate(b"{}", "00", "1")


def test_authenticate_requires_headers(interactions):
    with pytest.raises(AuthenticityError):
        interactions.authenticate(b"{}", None, "1")


def test_ping_is_answered_with_pong(interactions):
    assert interactions.handle({"type": 1}) == {"type": 1}


def test_unknown_interaction_type_is_rejected(interactions):
    with pytest.raises(ValidationError):
        interactions.handle({"type": 3})


@pytest.mark.asyncio
async def test_summarise_defers_then_prompts(relay, interactions):
    response = interactions.handle(command("summarise", ("minutes", 60)))

    assert response == {"type": 5}
    await relay.supervisor.drain(timeout=1)

    adapter = relay.adapters["discord"]
    (prompt,) = adapter.sent
    assert "**Payment Required**" in prompt["text"]
    (entry,) = relay.pending["discord"]._entries.values()
    assert entry.parameters == {"source": "discord", "lookbackMinutes": 60, "channelId": "c1", "serverId": "g1"}
    assert entry.route["interaction_token"] == "interaction-token"
    assert entry.route["application_id"] == "999"


def test_invalid_search_is_answered_inline(relay, interactions):
    response = interactions.handle(command("search_events", ("topic", "   ")))

    assert response["type"] == 4
    assert response["data"]["content"].startswith("❌ Please provide a topic.")
    assert len(relay.supervisor) == 0


def test_more_and_help_are_answered_inline(interactions):
    assert interactions.handle(command("more"))["data"]["content"] == formatting.NO_SEARCH_MESSAGE
    assert interactions.handle(command("help"))["data"]["content"] == formatting.HELP_TEXT


def test_unknown_command_is_reported(interactions):
    response = interactions.handle(command("dance"))

    assert response["data"]["content"] == "❌ Unknown command /dance"


def test_adapter_defer_ack_needs_no_session():
    adapter = DiscordAdapter()

    assert adapter.defer_ack(Conversation("discord", "c1")) == {"type": 5}
    assert adapter._session is None


@pytest.mark.asyncio
async def test_adapter_sends_followup_with_pay_button(monkeypatch):
    webhook = MagicMock()
    webhook.send = AsyncMock(return_value=SimpleNamespace(id=1234))
    webhook.edit_message = AsyncMock()
    partial = MagicMock(return_value=webhook)
    monkeypatch.setattr(discord.Webhook, "partial", partial)
    adapter = DiscordAdapter(session=MagicMock(closed=False))
    conversation = Conversation("discord", "c1", {"application_id": "999", "interaction_token": "tok"})

    message_id = await adapter.send_followup(conversation, "pay up", pay_url="https://relay.test/pay", pay_label="Pay $0.10")
    await adapter.edit_message(conversation, message_id, "thanks")

    assert message_id == "1234"
    assert partial.call_args.args[:2] == (999, "tok")
    view = webhook.send.call_args.kwargs["view"]
    (button,) = view.children
    assert button.url == "https://relay.test/pay"
    assert button.label == "Pay $0.10"
    webhook.edit_message.assert_awaited_once_with(1234, content="thanks", view=None)


@pytest.mark.asyncio
async def test_registrar_declares_slash_commands():
    registrar = CommandRegistrar()
    registrar.add_commands()

    commands = {command.name: command for command in registrar.tree.get_commands()}

    assert set(commands) == {"summarise", "search_events", "more", "help"}
    (minutes,) = commands["summarise"].parameters
    assert minutes.name == "minutes"
    assert minutes.type is discord.AppCommandOptionType.integer
    assert not minutes.required
    topic, location = commands["search_events"].parameters
    assert (topic.name, topic.required) == ("topic", True)
    assert (location.name, location.required) == ("location", False)
    assert commands["more"].parameters == []


@pytest.mark.asyncio
async def test_register_commands_syncs_to_guild(monkeypatch):
    sync = AsyncMock(return_value=["summarise", "search_events", "more", "help"])

    async def fake_login(self, token):
        await self.setup_hook()

    monkeypatch.setattr(app_commands.CommandTree, "sync", sync)
    monkeypatch.setattr(discord.Client, "login", fake_login)
    monkeypatch.setattr(discord.Client, "close", AsyncMock())

    count = await register_commands("bot-token", application_id="999", guild_id=1234)

    assert count == 4
    assert sync.await_args.kwargs["guild"].id == 1234


@pytest.mark.asyncio
async def test_register_commands_syncs_globally_without_guild(monkeypatch):
    sync = AsyncMock(return_value=[])

    async def fake_login(self, token):
        await self.setup_hook()

    monkeypatch.setattr(app_commands.CommandTree, "sync", sync)
    monkeypatch.setattr(discord.Client, "login", fake_login)
    monkeypatch.setattr(discord.Client, "close", AsyncMock())

    assert await register_commands("bot-token") == 0
    assert sync.await_args.kwargs == {}
