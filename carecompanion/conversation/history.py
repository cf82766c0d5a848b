"""
carecompanion/conversation/history.py — Bounded message history for the UI and prompts.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Literal, Optional

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    """One line of the conversation as shown to the senior."""

    role: Role
    text: str
    language: str = "en"
    intent: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class ConversationHistory:
    """
    Thread-safe ring buffer of recent messages.

    Args:
        max_messages: Oldest messages are dropped beyond this count.
    """

    def __init__(self, max_messages: int = 50) -> None:
        self._lock = threading.Lock()
        self._messages: deque[Message] = deque(maxlen=max_messages)

    def add(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)

    def snapshot(self) -> list[Message]:
        with self._lock:
            return list(self._messages)

    def pairs(self) -> list[tuple[str, str]]:
        """Return ``(role, text)`` pairs, oldest first, for prompt building."""
        with self._lock:
            return [(m.role, m.text) for m in self._messages]

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
