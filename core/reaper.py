import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional

from .pagination import PaginationStore
from .registry import PendingRegistry

log = logging.getLogger(__name__)


class ExpiryReaper:
    """Periodically drops expired pending tokens and stale pagination state."""

    def __init__(
        self,
        registries: Iterable[PendingRegistry],
        pagination: PaginationStore,
        *,
        interval: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ):
        self.registries: List[PendingRegistry] = list(registries)
        self.pagination = pagination
        self.interval = interval
        self._clock = clock

    def sweep_once(self) -> None:
        now = self._clock()
        for registry in self.registries:
            registry.sweep(now)
        self.pagination.sweep(now)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        log.info("expiry reaper running every %.0fs", self.interval)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                self.sweep_once()
            except Exception:
                log.exception("expiry sweep failed")
