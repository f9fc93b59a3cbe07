"""Shared contract for provider adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from ..attachments import extract_text, is_text_attachment
from ..exceptions import ConfigError, StreamChatError, classify_error, error_for_status
from ..models import Attachment, Message, ProviderKind

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..config import StreamConfig

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

__all__ = [
    "ChunkCallback",
    "HttpProviderAdapter",
    "ProviderAdapter",
    "ProviderKind",
    "SSE_DATA_PREFIX",
]

SSE_DATA_PREFIX = "data:"


class ProviderAdapter(ABC):
    """Convert chat history into one provider's wire format and stream text back.

    Implementations must check ``token`` on every read iteration and raise
    only ``StreamChatError`` subclasses.
    """

    kind: ProviderKind

    @abstractmethod
    async def stream(
        self,
        history: Sequence[Message],
        new_message: Message,
        system_instruction: str,
        config: StreamConfig,
        on_chunk: ChunkCallback,
        token: CancellationToken,
    ) -> None:
        """Stream the reply to ``new_message`` given ``history``."""

    @staticmethod
    def reject_video_models(config: StreamConfig) -> None:
        if "veo" in config.model.lower():
            raise ConfigError(
                "Configuration Error: Video generation models are not supported "
                "in chat. Please select a text-based model in settings."
            )

    @staticmethod
    def inline_text_attachments(
        attachments: Sequence[Attachment], max_chars: int
    ) -> str:
        """Render text attachments as a block appended to the user's prompt."""
        sections: list[str] = []
        for attachment in attachments:
            if is_text_attachment(attachment):
                summary = extract_text(attachment, max_chars)
                sections.append(
                    f"\n\n--- Attachment summary: {attachment.name} ---\n{summary}"
                )
        return "".join(sections)


class HttpProviderAdapter(ProviderAdapter):
    """Base for adapters that speak server-sent events over httpx."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    @asynccontextmanager
    async def _client_scope(self, config: StreamConfig) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        timeout = httpx.Timeout(config.timeout_seconds, connect=10.0)
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    @staticmethod
    def error_message_from_body(body: bytes) -> str:
        """Extract ``error.message`` from a JSON error body, else the raw text."""
        text = body.decode("utf-8", errors="replace").strip()
        try:
            payload = json.loads(text)
        except ValueError:
            return text
        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
            if isinstance(error, str):
                return error
        return text

    @staticmethod
    @asynccontextmanager
    async def translated_errors() -> AsyncIterator[None]:
        """Re-raise httpx failures as domain errors."""
        try:
            yield
        except StreamChatError:
            raise
        except httpx.HTTPError as exc:
            raise classify_error(exc) from exc

    @classmethod
    def stream_error(cls, payload: dict[str, Any]) -> StreamChatError:
        """Map an ``{"error": ...}`` frame received mid-stream."""
        error = payload.get("error")
        status = 500
        if isinstance(error, dict) and isinstance(error.get("code"), int):
            status = error["code"]
        message = cls.error_message_from_body(json.dumps(payload).encode("utf-8"))
        return error_for_status(status, message)

    async def raise_for_response(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = await response.aread()
        raise error_for_status(response.status_code, self.error_message_from_body(body))

    @staticmethod
    def sse_payloads(line: str) -> Any | None:
        """Decode one ``data:`` line; return None for keep-alives and bad frames."""
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        data = line[len(SSE_DATA_PREFIX) :].strip()
        if not data:
            return None
        if data == "[DONE]":
            return data
        try:
            return json.loads(data)
        except ValueError:
            LOGGER.warning(
                "provider.stream.bad_frame",
                extra={"event": "provider.stream.bad_frame", "frame": data[:200]},
            )
            return None
