import logging
from typing import Any, Dict, Optional

import aiohttp
import discord
from discord import app_commands
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from core import formatting
from core.config import Settings
from core.errors import AuthenticityError, ValidationError
from core.intake import CommandIntake, Conversation, search_request, summarise_request

log = logging.getLogger(__name__)

def verify_signature(public_key: str, body: bytes, signature: str, timestamp: str) -> bool:
    """Check Discord's Ed25519 signature over ``timestamp + body``."""

    try:
        VerifyKey(bytes.fromhex(public_key)).verify(timestamp.encode("utf-8") + body, bytes.fromhex(signature))
    except (BadSignatureError, ValueError, TypeError) as exc:
        log.warning("discord signature verification failed: %s", exc)
        return False
    return True


class DiscordAdapter:
    """Follow-up delivery through the interaction webhook."""

    platform = "discord"

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _webhook(self, conversation: Conversation) -> discord.Webhook:
        route = conversation.route
        return discord.Webhook.partial(
            int(route["application_id"]),
            str(route["interaction_token"]),
            session=self._get_session(),
        )

    def defer_ack(self, conversation: Conversation) -> Dict[str, Any]:
        return {"type": discord.InteractionResponseType.deferred_channel_message.value}

    async def send_followup(
        self,
        conversation: Conversation,
        text: str,
        *,
        pay_url: Optional[str] = None,
        pay_label: Optional[str] = None,
    ) -> Optional[str]:
        kwargs: Dict[str, Any] = {"wait": True}
        if pay_url:
            view = discord.ui.View(timeout=None)
            view.add_item(discord.ui.Button(style=discord.ButtonStyle.link, label=pay_label or "Pay", url=pay_url))
            kwargs["view"] = view
        message = await self._webhook(conversation).send(text[:2000], **kwargs)
        return str(message.id) if message is not None else None

    async def edit_message(self, conversation: Conversation, message_id: str, text: str) -> None:
        await self._webhook(conversation).edit_message(int(message_id), content=text, view=None)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class DiscordInteractions:
    """Turns raw interaction webhook payloads into intake calls."""

    def __init__(self, intake: CommandIntake, adapter: DiscordAdapter, settings: Settings):
        self.intake = intake
        self.adapter = adapter
        self.settings = settings

    def authenticate(self, body: bytes, signature: Optional[str], timestamp: Optional[str]) -> None:
        if not self.settings.discord_public_key:
            raise AuthenticityError("DISCORD_PUBLIC_KEY is not configured")
        if not signature or not timestamp:
            raise AuthenticityError("Missing signature headers")
        if not verify_signature(self.settings.discord_public_key, body, signature, timestamp):
            raise AuthenticityError("Invalid signature")

    @staticmethod
    def conversation_for(payload: Dict[str, Any]) -> Conversation:
        channel_id = payload.get("channel_id") or (payload.get("channel") or {}).get("id")
        application_id = payload.get("application_id")
        token = payload.get("token")
        if not channel_id or not application_id or not token:
            raise ValidationError("Interaction is missing channel, application or token")
        return Conversation(
            platform="discord",
            conversation_id=str(channel_id),
            route={
                "application_id": str(application_id),
                "interaction_token": token,
                "guild_id": payload.get("guild_id"),
            },
        )

    @staticmethod
    def _message(content: str) -> Dict[str, Any]:
        return {
            "type": discord.InteractionResponseType.channel_message.value,
            "data": {"content": content[:2000]},
        }

    def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        kind = payload.get("type")
        if kind == discord.InteractionType.ping.value:
            log.info("received discord PING")
            return {"type": discord.InteractionResponseType.pong.value}
        if kind != discord.InteractionType.application_command.value:
            raise ValidationError("Unknown interaction type")

        data = payload.get("data") or {}
        name = data.get("name")
        options = {opt.get("name"): opt.get("value") for opt in data.get("options") or []}
        conversation = self.conversation_for(payload)
        try:
            if name == "summarise":
                request = summarise_request(conversation, options.get("minutes"), self.settings)
            elif name == "search_events":
                request = search_request(conversation, options.get("topic"), options.get("location"))
            elif name == "more":
                return self._message(self.intake.next_page(conversation.conversation_id))
            elif name in ("help", "start"):
                return self._message(formatting.HELP_TEXT)
            else:
                raise ValidationError(f"Unknown command /{name}")
        except ValidationError as exc:
            return self._message(exc.user_message())

        log.info("discord /%s in channel %s", name, conversation.conversation_id)
        return self.intake.begin(self.adapter, conversation, request)



class CommandRegistrar(discord.Client):
    """Logs in over REST only to publish the slash commands.

    Commands are answered by the HTTP interactions endpoint, so the callbacks
    below only run when no endpoint URL is set for the application.
    """

    def __init__(self, *, application_id: Optional[int] = None, guild_id: Optional[int] = None):
        super().__init__(intents=discord.Intents.none(), application_id=application_id)
        self.tree = app_commands.CommandTree(self)
        self.guild_id = guild_id
        self.synced: list = []

    async def setup_hook(self) -> None:
        self.add_commands()
        if self.guild_id:
            guild = discord.Object(id=self.guild_id)
            self.tree.copy_global_to(guild=guild)
            self.synced = await self.tree.sync(guild=guild)
        else:
            self.synced = await self.tree.sync()

    def add_commands(self) -> None:
        self.tree.add_command(self._summarise())
        self.tree.add_command(self._search_events())
        self.tree.add_command(self._more())
        self.tree.add_command(self._help())

    @staticmethod
    async def _no_endpoint(interaction: discord.Interaction) -> None:
        await interaction.response.send_message(formatting.HELP_TEXT, ephemeral=True)

    def _summarise(self) -> app_commands.Command:
        @app_commands.command(name="summarise", description="Summarise recent messages in this channel (paid via x402)")
        @app_commands.describe(minutes="How many minutes to look back (default 60)")
        async def summarise(interaction: discord.Interaction, minutes: Optional[int] = None):
            await self._no_endpoint(interaction)

        return summarise

    def _search_events(self) -> app_commands.Command:
        @app_commands.command(name="search_events", description="Search upcoming events (paid via x402)")
        @app_commands.describe(topic="Topic, e.g. crypto or AI", location="City, e.g. London")
        async def search_events(interaction: discord.Interaction, topic: str, location: Optional[str] = None):
            await self._no_endpoint(interaction)

        return search_events

    def _more(self) -> app_commands.Command:
        @app_commands.command(name="more", description="Show more events from your last search")
        async def more(interaction: discord.Interaction):
            await self._no_endpoint(interaction)

        return more

    def _help(self) -> app_commands.Command:
        @app_commands.command(name="help", description="How to use this bot")
        async def help_command(interaction: discord.Interaction):
            await self._no_endpoint(interaction)

        return help_command


async def register_commands(
    bot_token: str,
    *,
    application_id: Optional[str] = None,
    guild_id: Optional[int] = None,
) -> int:
    """Overwrite the application's slash commands, scoped to a guild when given."""

    registrar = CommandRegistrar(
        application_id=int(application_id) if application_id else None,
        guild_id=guild_id,
    )
    try:
        # login runs setup_hook, which syncs the tree
        await registrar.login(bot_token)
    finally:
        await registrar.close()
    log.info(
        "synced %d discord commands%s",
        len(registrar.synced),
        f" to guild {guild_id}" if guild_id else "",
    )
    return len(registrar.synced)
