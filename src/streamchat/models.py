"""Conversation, message, and attachment data model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
import time
from typing import Any

_last_message_id = 0


def new_message_id() -> str:
    """Return a strictly increasing, lexically sortable message id."""
    global _last_message_id
    candidate = time.time_ns()
    if candidate <= _last_message_id:
        candidate = _last_message_id + 1
    _last_message_id = candidate
    return f"{candidate:020d}"


def utcnow() -> datetime:
    return datetime.now(UTC)


class ProviderKind(str, Enum):
    """Closed set of model backends a stream can be routed to."""

    GEMINI = "gemini"
    OPENAI = "openai"
    OLLAMA = "ollama"


class Sender(str, Enum):
    """Author of a message."""

    USER = "user"
    AI = "ai"


@dataclass
class Attachment:
    """A file attached to a user message.

    ``data`` is the persisted payload (a ``data:`` URL or bare base64).
    ``preview`` is a session-only handle and is never written to storage.
    """

    name: str
    type: str
    data: str
    size: int = 0
    preview: str | None = None

    @property
    def is_image(self) -> bool:
        return self.type.lower().startswith("image/")

    def to_stored(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "type": self.type,
            "data": self.data,
        }

    @classmethod
    def from_stored(cls, payload: dict[str, Any]) -> Attachment:
        return cls(
            name=str(payload.get("name", "")),
            type=str(payload.get("type", "application/octet-stream")),
            data=str(payload.get("data", "")),
            size=int(payload.get("size", 0) or 0),
        )


@dataclass
class Message:
    """A single chat message; AI messages are mutated in place while streaming."""

    id: str
    conversation_id: str
    sender: Sender
    text: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    attachments: list[Attachment] = field(default_factory=list)
    is_loading: bool = False
    thinking_text: str = ""
    is_thinking_complete: bool = False
    thinking_start_time: float | None = None
    thinking_duration: float | None = None

    @property
    def is_user(self) -> bool:
        return self.sender is Sender.USER

    def copy(self, **changes: Any) -> Message:
        """Return a copy with its own attachment list."""
        changes.setdefault("attachments", [replace(a) for a in self.attachments])
        return replace(self, **changes)


@dataclass
class Conversation:
    """Conversation metadata row."""

    id: str
    title: str = "New Conversation"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    is_pinned: bool = False


@dataclass(frozen=True)
class CacheEntry:
    """One page of persisted messages for a conversation."""

    messages: tuple[Message, ...]
    has_more: bool = False
