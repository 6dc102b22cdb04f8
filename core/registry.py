"""Outstanding payment-gated requests, keyed by correlation token."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import DuplicateTokenError, UnknownTokenError

log = logging.getLogger(__name__)

Clock = Callable[[], float]


def mint_token(conversation_id: str, *, clock: Clock = time.time) -> str:
    """Return a fresh single-use token bound to a conversation."""

    return f"{conversation_id}:{int(clock() * 1000)}:{uuid.uuid4().hex}"


@dataclass
class PendingEntry:
    token: str
    platform: str
    conversation_id: str
    parameters: Dict[str, Any]
    created_at: float
    expires_at: float
    prompt_message_id: Optional[str] = None
    route: Dict[str, Any] = field(default_factory=dict)

    @property
    def topic(self) -> Optional[str]:
        topic = self.parameters.get("topic")
        return str(topic) if topic else None

    @property
    def location(self) -> Optional[str]:
        location = self.parameters.get("location")
        return str(location) if location else None

    def expired(self, now: float) -> bool:
        return self.expires_at < now


class PendingRegistry:
    """Process-local token map with atomic insert and take.

    Every mutation happens under one lock so that two callers racing on the
    same token see exactly one winner.
    """

    def __init__(self, name: str, *, clock: Clock = time.time):
        self.name = name
        self._clock = clock
        self._entries: Dict[str, PendingEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._entries

    def put(self, token: str, entry: PendingEntry) -> None:
        if entry.token != token:
            raise ValueError("entry token does not match registry key")
        with self._lock:
            if token in self._entries:
                raise DuplicateTokenError(token)
            self._entries[token] = entry
        log.debug("[%s] registered token %s (expires %.0f)", self.name, token, entry.expires_at)

    def take(self, token: str) -> PendingEntry:
        now = self._clock()
        with self._lock:
            entry = self._entries.pop(token, None)
        if entry is None:
            raise UnknownTokenError(token)
        if entry.expired(now):
            log.info("[%s] token %s expired %.0fs ago", self.name, token, now - entry.expires_at)
            raise UnknownTokenError(token)
        return entry

    def set_prompt_message(self, token: str, message_id: Optional[str]) -> bool:
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return False
            entry.prompt_message_id = message_id
            return True

    def sweep(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            stale = [token for token, entry in self._entries.items() if entry.expired(now)]
            for token in stale:
                del self._entries[token]
        if stale:
            log.info("[%s] swept %d expired token(s)", self.name, len(stale))
