"""Streaming state for the active conversation."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class ConversationState(str, Enum):
    IDLE = "IDLE"
    STREAMING = "STREAMING"


class StateManager:
    """Tracks which AI message, if any, is currently being streamed.

    Only the stream that entered STREAMING can return the conversation to
    IDLE, so a superseded stream finishing late cannot clear a newer one.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = ConversationState.IDLE
        self._message_id: str | None = None

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def streaming_message_id(self) -> str | None:
        return self._message_id

    def _log_change(self, new_state: ConversationState, message_id: str | None) -> None:
        LOGGER.debug(
            "state.transition",
            extra={
                "event": "state.transition",
                "from_state": self._state.value,
                "to_state": new_state.value,
                "ai_message_id": message_id,
            },
        )

    async def begin_stream(self, message_id: str) -> None:
        """Enter STREAMING on behalf of ``message_id``."""
        async with self._lock:
            self._log_change(ConversationState.STREAMING, message_id)
            self._state = ConversationState.STREAMING
            self._message_id = message_id

    async def end_stream(self, message_id: str) -> bool:
        """Return to IDLE if ``message_id`` still owns the stream."""
        async with self._lock:
            if self._message_id != message_id:
                return False
            self._log_change(ConversationState.IDLE, message_id)
            self._state = ConversationState.IDLE
            self._message_id = None
            return True

    async def is_idle(self) -> bool:
        async with self._lock:
            return self._state is ConversationState.IDLE
