"""Conversation state shared by the loop, the LLM consumer and persistence."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

USER = "user"
ASSISTANT = "assistant"
ASSISTANT_PARTIAL = "assistant_partial"
ASSISTANT_ERROR = "assistant_error"

ROLES = (USER, ASSISTANT, ASSISTANT_PARTIAL, ASSISTANT_ERROR)


@dataclass
class ChatMessage:
    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role: {self.role}")


@dataclass
class Conversation:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    title: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))
    audio_paths: Dict[str, List[str]] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def add(self, message: ChatMessage) -> ChatMessage:
        with self.lock:
            self.messages.append(message)
        return message

    def snapshot(self) -> List[ChatMessage]:
        with self.lock:
            return list(self.messages)

    @property
    def turn_count(self) -> int:
        return sum(1 for m in self.snapshot() if m.role == USER)


def fallback_title(text: str, words: int = 5) -> str:
    """First few words of the opening message."""
    parts = text.split()
    if not parts:
        return "Untitled"
    title = " ".join(parts[:words])
    return title + ("..." if len(parts) > words else "")
