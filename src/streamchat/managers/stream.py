"""Stream management for assistant responses.

Owns cancellation, the one-stream-per-controller rule, and bounded retry
with exponential backoff across provider adapters.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import TYPE_CHECKING

from ..cancellation import CancellationToken
from ..exceptions import (
    ConfigError,
    StreamCancelledError,
    StreamChatError,
    classify_error,
)
from ..logging_utils import bind_stream_context, clear_stream_context
from ..models import Message, ProviderKind
from ..providers import ProviderAdapter, default_adapters

if TYPE_CHECKING:
    from ..config import StreamConfig

LOGGER = logging.getLogger(__name__)

StreamChunkCallback = Callable[[str, str], None]
SleepFunc = Callable[[float], Awaitable[None]]


class StreamOutcome(str, Enum):
    """Terminal outcome of one logical stream."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class StreamResult:
    """Final text and bookkeeping for one call to ``StreamController.start``."""

    text: str
    outcome: StreamOutcome
    attempts: int
    error: StreamChatError | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.outcome is StreamOutcome.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.outcome is StreamOutcome.CANCELLED


class StreamController:
    """Runs at most one provider stream at a time.

    Responsibilities:
    - Cancel the previous stream before the next one reads from the network
    - Thread one CancellationToken through the adapter
    - Retry recoverable failures with exponential backoff
    - Append the user-facing message of terminal failures to the output
    """

    def __init__(
        self,
        adapters: Mapping[ProviderKind, ProviderAdapter] | None = None,
        *,
        sleep: SleepFunc | None = None,
    ) -> None:
        """Initialize stream controller.

        Args:
            adapters: Adapter per provider; defaults to one of each built-in kind
            sleep: Backoff sleep override; defaults to the token's cancellable sleep
        """
        self._adapters = dict(adapters) if adapters is not None else default_adapters()
        self._sleep = sleep
        self._token: CancellationToken | None = None
        self._attempt_task: asyncio.Task[None] | None = None

    @property
    def is_streaming(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the active stream, if any. Safe to call repeatedly."""
        if self._token is not None:
            LOGGER.info(
                "stream.cancel",
                extra={"event": "stream.cancel", "reason": reason},
            )
            self._token.cancel(reason)
        if self._attempt_task is not None and not self._attempt_task.done():
            self._attempt_task.cancel()

    async def _cancel_previous(self) -> None:
        previous = self._attempt_task
        self.cancel("superseded by a new stream")
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

    def _adapter_for(self, kind: ProviderKind) -> ProviderAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ConfigError(f"No adapter is registered for provider {kind.value!r}.")
        return adapter

    async def _backoff(self, delay: float, token: CancellationToken) -> None:
        if self._sleep is None:
            await token.sleep(delay)
            return
        await self._sleep(delay)
        token.raise_if_cancelled()

    async def start(
        self,
        history: Sequence[Message],
        new_message: Message,
        ai_message_id: str,
        config: StreamConfig,
        on_chunk: StreamChunkCallback,
    ) -> StreamResult:
        """Stream a reply to ``new_message``.

        Args:
            history: Prior messages, oldest first, excluding ``new_message``
            new_message: The user message being answered
            ai_message_id: Id of the placeholder message receiving the text
            config: Provider and retry settings for this request
            on_chunk: Called with each raw chunk and the running accumulation

        Returns:
            StreamResult with exactly one of COMPLETED, CANCELLED or FAILED.
        """
        await self._cancel_previous()
        token = CancellationToken()
        self._token = token
        delays: list[float] = []
        attempt = 0
        accumulated = ""

        def forward(chunk: str) -> None:
            nonlocal accumulated
            if token.cancelled:
                return
            accumulated += chunk
            on_chunk(chunk, accumulated)

        bind_stream_context(ai_message_id, config.provider.value)
        LOGGER.info(
            "stream.start",
            extra={
                "event": "stream.start",
                "provider": config.provider.value,
                "model": config.model,
                "ai_message_id": ai_message_id,
                "history_length": len(history),
            },
        )
        try:
            while True:
                accumulated = ""
                try:
                    token.raise_if_cancelled()
                    adapter = self._adapter_for(config.provider)
                    self._attempt_task = asyncio.create_task(
                        adapter.stream(
                            history,
                            new_message,
                            config.system_instruction,
                            config,
                            forward,
                            token,
                        )
                    )
                    await self._attempt_task
                    LOGGER.info(
                        "stream.complete",
                        extra={
                            "event": "stream.complete",
                            "ai_message_id": ai_message_id,
                            "attempts": attempt + 1,
                            "characters": len(accumulated),
                        },
                    )
                    return StreamResult(
                        accumulated, StreamOutcome.COMPLETED, attempt + 1, delays=delays
                    )
                except asyncio.CancelledError:
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        token.cancel("task cancelled")
                        raise
                    return self._cancelled(accumulated, attempt, delays, ai_message_id)
                except Exception as exc:  # noqa: BLE001 - every failure is classified.
                    error = classify_error(exc)

                if isinstance(error, StreamCancelledError) or token.cancelled:
                    return self._cancelled(accumulated, attempt, delays, ai_message_id)

                if error.recoverable and attempt < config.max_retries:
                    delay = config.backoff_base_seconds * (2**attempt)
                    LOGGER.warning(
                        "stream.retry",
                        extra={
                            "event": "stream.retry",
                            "ai_message_id": ai_message_id,
                            "attempt": attempt + 1,
                            "max_retries": config.max_retries,
                            "delay_seconds": delay,
                            "error_code": error.code,
                            "error": error.detail or error.user_message,
                        },
                    )
                    delays.append(delay)
                    try:
                        await self._backoff(delay, token)
                    except StreamCancelledError:
                        return self._cancelled("", attempt, delays, ai_message_id)
                    attempt += 1
                    continue

                LOGGER.error(
                    "stream.failed",
                    extra={
                        "event": "stream.failed",
                        "ai_message_id": ai_message_id,
                        "attempts": attempt + 1,
                        "error_code": error.code,
                        "error": error.detail or error.user_message,
                    },
                )
                suffix = f"\n\n{error.user_message}" if accumulated else error.user_message
                accumulated += suffix
                on_chunk(suffix, accumulated)
                return StreamResult(
                    accumulated,
                    StreamOutcome.FAILED,
                    attempt + 1,
                    error=error,
                    delays=delays,
                )
        finally:
            clear_stream_context()
            if self._token is token:
                self._token = None
                self._attempt_task = None

    @staticmethod
    def _cancelled(
        text: str, attempt: int, delays: list[float], ai_message_id: str
    ) -> StreamResult:
        LOGGER.info(
            "stream.cancelled",
            extra={"event": "stream.cancelled", "ai_message_id": ai_message_id},
        )
        return StreamResult(
            text,
            StreamOutcome.CANCELLED,
            attempt + 1,
            error=StreamCancelledError("Request was cancelled by the user."),
            delays=delays,
        )


__all__ = [
    "StreamChunkCallback",
    "StreamController",
    "StreamOutcome",
    "StreamResult",
]
