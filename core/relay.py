import logging
import time
from typing import Dict, Optional

from .config import Settings
from .dispatcher import CallbackDispatcher
from .history import ChatHistory
from .intake import CommandIntake, PlatformAdapter
from .pagination import PaginationStore
from .payment import PaymentGate
from .reaper import ExpiryReaper
from .registry import Clock, PendingRegistry
from .supervisor import TaskSupervisor

log = logging.getLogger(__name__)

PLATFORMS = ("discord", "telegram")


class Relay:
    """Process-wide state and services, built once and passed by reference."""

    def __init__(
        self,
        settings: Settings,
        *,
        facilitator,
        worker,
        clock: Clock = time.time,
        history: Optional[ChatHistory] = None,
    ):
        self.settings = settings
        self.facilitator = facilitator
        self.worker = worker
        self.pending: Dict[str, PendingRegistry] = {
            platform: PendingRegistry(platform, clock=clock) for platform in PLATFORMS
        }
        self.pagination = PaginationStore(ttl=settings.pagination_ttl, clock=clock)
        self.history = history or ChatHistory(settings.history_limit)
        self.supervisor = TaskSupervisor()
        self.adapters: Dict[str, PlatformAdapter] = {}
        self.gate = PaymentGate(settings, facilitator, worker, history=self.history)
        self.intake = CommandIntake(
            self.gate, self.pending, self.pagination, self.supervisor, settings, clock=clock
        )
        self.dispatcher = CallbackDispatcher(
            self.pending, self.adapters, self.pagination, self.supervisor, settings
        )
        self.reaper = ExpiryReaper(
            self.pending.values(), self.pagination, interval=settings.reaper_interval, clock=clock
        )

    def attach(self, adapter: PlatformAdapter) -> None:
        if adapter.platform not in self.pending:
            raise ValueError(f"unsupported platform {adapter.platform!r}")
        self.adapters[adapter.platform] = adapter
        log.info("%s transport attached", adapter.platform)

    async def close(self) -> None:
        await self.supervisor.close()
        for client in (self.facilitator, self.worker, *self.adapters.values()):
            close = getattr(client, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as exc:
                    log.warning("error while closing %s: %s", type(client).__name__, exc)
