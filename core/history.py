import threading
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional


@dataclass
class StoredMessage:
    message_id: int
    text: str
    timestamp: float
    author_id: Optional[int] = None
    author_username: Optional[str] = None
    author_display: Optional[str] = None
    reply_to_message_id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class ChatHistory:
    """Recent Telegram messages per chat; bots cannot fetch history themselves."""

    def __init__(self, max_messages: int = 1000):
        self.max_messages = max_messages
        self._chats: Dict[str, Deque[StoredMessage]] = defaultdict(lambda: deque(maxlen=self.max_messages))
        self._lock = threading.Lock()

    def add(self, chat_id: str, message: StoredMessage) -> None:
        with self._lock:
            self._chats[str(chat_id)].append(message)

    def within(self, chat_id: str, lookback_minutes: int, *, now: Optional[float] = None) -> List[StoredMessage]:
        cutoff = (time.time() if now is None else now) - lookback_minutes * 60
        with self._lock:
            messages = list(self._chats.get(str(chat_id), ()))
        return [msg for msg in messages if msg.timestamp >= cutoff]
