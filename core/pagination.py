import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class PaginationEntry:
    conversation_id: str
    results: List[Dict[str, Any]]
    topic: str
    location: Optional[str]
    offset: int
    expires_at: float


@dataclass(frozen=True)
class Page:
    items: List[Dict[str, Any]] = field(default_factory=list)
    offset: int = 0
    total: int = 0
    exhausted: bool = False

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class PaginationStore:
    """Per-conversation result sets read forward one page at a time."""

    def __init__(self, *, ttl: float = 3600.0, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, PaginationEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def replace(
        self,
        conversation_id: str,
        results: List[Dict[str, Any]],
        *,
        topic: str,
        location: Optional[str] = None,
    ) -> PaginationEntry:
        entry = PaginationEntry(
            conversation_id=conversation_id,
            results=list(results),
            topic=topic,
            location=location,
            offset=0,
            expires_at=self._clock() + self.ttl,
        )
        with self._lock:
            self._entries[conversation_id] = entry
        return entry

    def get(self, conversation_id: str) -> Optional[PaginationEntry]:
        with self._lock:
            entry = self._entries.get(conversation_id)
        if entry is None or entry.expires_at < self._clock():
            return None
        return entry

    def first_page(self, conversation_id: str, page_size: int) -> Optional[Page]:
        entry = self.get(conversation_id)
        if entry is None:
            return None
        return Page(
            items=entry.results[:page_size],
            offset=0,
            total=len(entry.results),
        )

    def advance(self, conversation_id: str, page_size: int) -> Optional[Page]:
        """Move to the next page, or report exhaustion without moving."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(conversation_id)
            if entry is None or entry.expires_at < now:
                return None
            next_offset = entry.offset + page_size
            total = len(entry.results)
            if next_offset >= total:
                return Page(offset=entry.offset, total=total, exhausted=True)
            entry.offset = next_offset
            entry.expires_at = now + self.ttl
            return Page(
                items=entry.results[next_offset : next_offset + page_size],
                offset=next_offset,
                total=total,
            )

    def sweep(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            for key in [k for k, e in self._entries.items() if e.expires_at < now]:
                del self._entries[key]
