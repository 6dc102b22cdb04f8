"""Generic command intake shared by the Discord and Telegram transports.

A transport parses its native payload into a :class:`CommandRequest`, then
calls :meth:`CommandIntake.begin`. That returns the platform's deferred
acknowledgment straight away and moves everything that touches the network
into a supervised background task.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlencode

from . import formatting
from .config import Settings
from .errors import UnknownTokenError, ValidationError
from .pagination import PaginationStore
from .payment import SEARCH_EVENTS, SUMMARISE, Challenge, GateError, PaymentGate
from .registry import Clock, PendingEntry, PendingRegistry, mint_token
from .supervisor import TaskSupervisor

log = logging.getLogger(__name__)

SEARCH_USAGE_LINE = "Usage: /search_events on <topic> [in <city>]"


@dataclass(frozen=True)
class Conversation:
    platform: str
    conversation_id: str
    route: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommandRequest:
    entrypoint: str
    parameters: Dict[str, Any]


class PlatformAdapter(Protocol):
    platform: str

    def defer_ack(self, conversation: Conversation) -> Any:
        """Immediate placeholder response. Must not touch the network."""

    async def send_followup(
        self,
        conversation: Conversation,
        text: str,
        *,
        pay_url: Optional[str] = None,
        pay_label: Optional[str] = None,
    ) -> Optional[str]:
        """Post a message to the conversation and return its id."""

    async def edit_message(self, conversation: Conversation, message_id: str, text: str) -> None:
        ...


def parse_lookback(raw: Any, settings: Settings) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return settings.lookback_default
    try:
        minutes = int(str(raw).strip())
    except ValueError as exc:
        raise ValidationError(
            f"Lookback must be a whole number of minutes, got {raw!r}.",
            usage=formatting.SUMMARISE_USAGE,
        ) from exc
    return max(settings.lookback_min, min(settings.lookback_max, minutes))


def parse_search_events(text: Optional[str]) -> Tuple[str, Optional[str]]:
    """Split ``/search_events on <topic> [in <city>]`` into topic and city."""

    parts = (text or "").split()
    if len(parts) < 3:
        raise ValidationError(SEARCH_USAGE_LINE, usage=formatting.SEARCH_USAGE)
    on_index = in_index = -1
    for idx, part in enumerate(parts):
        lowered = part.lower()
        if lowered == "on" and on_index == -1:
            on_index = idx
        elif lowered == "in" and in_index == -1 and on_index != -1:
            in_index = idx
    if on_index == -1:
        raise ValidationError(SEARCH_USAGE_LINE, usage=formatting.SEARCH_USAGE)
    topic_end = in_index if in_index != -1 else len(parts)
    topic = " ".join(parts[on_index + 1 : topic_end]).strip()
    if not topic:
        raise ValidationError(f"Please provide a topic. {SEARCH_USAGE_LINE}", usage=formatting.SEARCH_USAGE)
    # a trailing "in" with no city searches everywhere
    location = " ".join(parts[in_index + 1 :]).strip() if in_index != -1 else ""
    return topic, location or None


def summarise_request(conversation: Conversation, raw_minutes: Any, settings: Settings) -> CommandRequest:
    minutes = parse_lookback(raw_minutes, settings)
    params: Dict[str, Any] = {"source": conversation.platform, "lookbackMinutes": minutes}
    if conversation.platform == "discord":
        params["channelId"] = conversation.conversation_id
        if conversation.route.get("guild_id"):
            params["serverId"] = conversation.route["guild_id"]
    else:
        params["chatId"] = conversation.conversation_id
    return CommandRequest(SUMMARISE, params)


def search_request(conversation: Conversation, topic: str, location: Optional[str] = None) -> CommandRequest:
    topic = (topic or "").strip()
    if not topic:
        raise ValidationError(f"Please provide a topic. {SEARCH_USAGE_LINE}", usage=formatting.SEARCH_USAGE)
    params: Dict[str, Any] = {"source": conversation.platform, "topic": topic}
    location = (location or "").strip()
    if location:
        params["location"] = location
    return CommandRequest(SEARCH_EVENTS, params)


class CommandIntake:
    def __init__(
        self,
        gate: PaymentGate,
        registries: Mapping[str, PendingRegistry],
        pagination: PaginationStore,
        supervisor: TaskSupervisor,
        settings: Settings,
        *,
        clock: Clock = time.time,
    ):
        self.gate = gate
        self.registries = registries
        self.pagination = pagination
        self.supervisor = supervisor
        self.settings = settings
        self._clock = clock

    def begin(self, adapter: PlatformAdapter, conversation: Conversation, request: CommandRequest) -> Any:
        ack = adapter.defer_ack(conversation)
        self.supervisor.spawn(
            self.process(adapter, conversation, request),
            name=f"intake:{conversation.platform}:{conversation.conversation_id}",
        )
        return ack

    def pay_url(self, token: str, conversation: Conversation, request: CommandRequest) -> str:
        query = {"source": conversation.platform, "entrypoint": request.entrypoint, "token": token}
        query.update({k: v for k, v in request.parameters.items() if k != "source" and v is not None})
        return f"{self.settings.public_base_url}/pay?{urlencode(query, safe=':')}"

    async def process(
        self,
        adapter: PlatformAdapter,
        conversation: Conversation,
        request: CommandRequest,
    ) -> Optional[str]:
        """Run the post-acknowledgment half of a command; returns the minted token."""

        try:
            outcome = await self.gate.invoke(request.entrypoint, request.parameters)
            if isinstance(outcome, GateError):
                await self.report(adapter, conversation, outcome.message or outcome.code)
                return None
            if not isinstance(outcome, Challenge):
                raise RuntimeError(f"payment gate answered an unpaid request with {type(outcome).__name__}")
            return await self._issue_prompt(adapter, conversation, request)
        except Exception as exc:
            log.exception("[%s] command failed after deferral in %s", conversation.platform, conversation.conversation_id)
            await self.report(adapter, conversation, str(exc) or type(exc).__name__)
            return None

    async def _issue_prompt(
        self,
        adapter: PlatformAdapter,
        conversation: Conversation,
        request: CommandRequest,
    ) -> str:
        registry = self.registries[conversation.platform]
        now = self._clock()
        token = mint_token(conversation.conversation_id, clock=self._clock)
        entry = PendingEntry(
            token=token,
            platform=conversation.platform,
            conversation_id=conversation.conversation_id,
            parameters=dict(request.parameters),
            created_at=now,
            expires_at=now + self.settings.pending_ttl,
            route=dict(conversation.route),
        )
        registry.put(token, entry)
        pay_url = self.pay_url(token, conversation, request)
        prompt = formatting.payment_prompt(
            request.entrypoint,
            request.parameters,
            platform=conversation.platform,
            price=self.settings.price_display,
            pay_url=pay_url,
        )
        try:
            message_id = await adapter.send_followup(
                conversation,
                prompt,
                pay_url=pay_url,
                pay_label=f"Pay {self.settings.price_display} via x402",
            )
        except Exception:
            # the user never saw this token
            try:
                registry.take(token)
            except UnknownTokenError:
                pass
            raise
        if message_id is not None:
            registry.set_prompt_message(token, str(message_id))
        log.info(
            "[%s] payment prompt sent for %s in %s (token %s)",
            conversation.platform,
            request.entrypoint,
            conversation.conversation_id,
            token,
        )
        return token

    async def report(self, adapter: PlatformAdapter, conversation: Conversation, message: str) -> None:
        try:
            await adapter.send_followup(conversation, formatting.error_message(message))
        except Exception as exc:
            log.error(
                "[%s] could not report error to %s: %s",
                conversation.platform,
                conversation.conversation_id,
                exc,
            )

    def next_page(self, conversation_id: str) -> str:
        page = self.pagination.advance(conversation_id, self.settings.page_size)
        if page is None:
            return formatting.NO_SEARCH_MESSAGE
        if page.exhausted:
            return formatting.SEEN_ALL_MESSAGE
        return formatting.format_events(page.items, total=page.total, offset=page.offset)
