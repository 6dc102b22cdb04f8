"""Delivers paid results back to the conversation that asked for them."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Mapping, Optional

from . import formatting
from .config import Settings
from .errors import DeliveryError, UnknownTokenError
from .intake import Conversation, PlatformAdapter
from .pagination import PaginationStore
from .registry import PendingEntry, PendingRegistry
from .sanitize import sanitize
from .supervisor import TaskSupervisor
from .worker import WorkerResult

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class DeliveryOutcome(str, enum.Enum):
    ACK = "ack"
    NOT_FOUND = "not_found"


class CallbackDispatcher:
    def __init__(
        self,
        registries: Mapping[str, PendingRegistry],
        adapters: Mapping[str, PlatformAdapter],
        pagination: PaginationStore,
        supervisor: TaskSupervisor,
        settings: Settings,
    ):
        self.registries = registries
        self.adapters = adapters
        self.pagination = pagination
        self.supervisor = supervisor
        self.settings = settings

    def _take(self, token: str, platform: Optional[str]) -> PendingEntry:
        if platform is not None:
            registry = self.registries.get(platform)
            if registry is None:
                raise UnknownTokenError(token)
            return registry.take(token)
        for registry in self.registries.values():
            try:
                return registry.take(token)
            except UnknownTokenError:
                continue
        raise UnknownTokenError(token)

    async def deliver(self, token: str, result: Any, *, platform: Optional[str] = None) -> DeliveryOutcome:
        try:
            entry = self._take(token, platform)
        except UnknownTokenError:
            log.info("ignoring callback for unknown or expired token %s", token)
            return DeliveryOutcome.NOT_FOUND

        adapter = self.adapters.get(entry.platform)
        conversation = Conversation(entry.platform, entry.conversation_id, dict(entry.route))
        if adapter is None:
            log.error("no %s transport configured, dropping result for %s", entry.platform, entry.conversation_id)
            return DeliveryOutcome.ACK

        text = self.render(entry, WorkerResult.from_output(result))
        await self._post(adapter, conversation, text, attempt=1)
        if entry.prompt_message_id:
            self.supervisor.spawn(
                self._retire_prompt(adapter, conversation, entry.prompt_message_id),
                name=f"retire-prompt:{entry.platform}:{entry.prompt_message_id}",
            )
        return DeliveryOutcome.ACK

    def render(self, entry: PendingEntry, result: WorkerResult) -> str:
        if result.error:
            return formatting.error_message(sanitize(result.error))
        if entry.topic is not None:
            if result.events is not None:
                self.pagination.replace(
                    entry.conversation_id,
                    result.events,
                    topic=entry.topic,
                    location=entry.location,
                )
                page = self.pagination.first_page(entry.conversation_id, self.settings.page_size)
                items = page.items if page is not None else result.events[: self.settings.page_size]
                return formatting.format_events(items, total=len(result.events))
            if result.formatted_events:
                return sanitize(result.formatted_events, empty=formatting.NO_EVENTS_MESSAGE)
        return formatting.format_summary(result, entry.platform)

    async def _post(self, adapter: PlatformAdapter, conversation: Conversation, text: str, *, attempt: int) -> bool:
        try:
            await asyncio.wait_for(adapter.send_followup(conversation, text), timeout=self.settings.delivery_timeout)
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                exc = DeliveryError(f"post timed out after {self.settings.delivery_timeout:.1f}s")
            if attempt >= MAX_ATTEMPTS:
                log.error(
                    "[%s] dropping result for %s after %d attempts: %s",
                    conversation.platform,
                    conversation.conversation_id,
                    attempt,
                    exc,
                )
                return False
            log.warning(
                "[%s] delivery to %s failed (%s), retrying once in %.1fs",
                conversation.platform,
                conversation.conversation_id,
                exc,
                self.settings.delivery_retry_delay,
            )
            self.supervisor.schedule(
                self.settings.delivery_retry_delay,
                lambda: self._post(adapter, conversation, text, attempt=attempt + 1),
                name=f"deliver-retry:{conversation.platform}:{conversation.conversation_id}",
            )
            return False
        log.info("[%s] delivered result to %s", conversation.platform, conversation.conversation_id)
        return True

    async def _retire_prompt(self, adapter: PlatformAdapter, conversation: Conversation, message_id: str) -> None:
        try:
            await adapter.edit_message(conversation, message_id, formatting.PAYMENT_RECEIVED_MESSAGE)
        except Exception as exc:
            log.warning("[%s] could not update payment prompt %s: %s", conversation.platform, message_id, exc)
