"""Local Ollama adapter built on the ``ollama`` SDK."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import TYPE_CHECKING, Any

from ollama import AsyncClient, ResponseError

from ..attachments import is_pdf_attachment, is_text_attachment, split_data_url
from ..exceptions import (
    NotFoundError,
    StreamChatError,
    UnsupportedAttachmentError,
    classify_error,
    error_for_status,
)
from ..models import Message, ProviderKind
from .base import ChunkCallback, ProviderAdapter

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..config import StreamConfig

LOGGER = logging.getLogger(__name__)

THINKING_OPEN = "<thinking>"
THINKING_CLOSE = "</thinking>"


class OllamaAdapter(ProviderAdapter):
    """Stream chat replies from a local Ollama server.

    Separate ``thinking`` fields reported by reasoning models are folded
    back into the text as a ``<thinking>`` block, so downstream parsing is
    identical for every provider.
    """

    kind = ProviderKind.OLLAMA

    def __init__(self, client: Any | None = None) -> None:
        self._client = client
        self._clients: dict[str, AsyncClient] = {}

    def _client_for(self, config: StreamConfig) -> Any:
        if self._client is not None:
            return self._client
        client = self._clients.get(config.base_url)
        if client is None:
            client = AsyncClient(host=config.base_url, timeout=config.timeout_seconds)
            self._clients[config.base_url] = client
        return client

    def build_messages(
        self,
        history: Sequence[Message],
        new_message: Message,
        system_instruction: str,
        max_text_chars: int,
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        for message in [*history, new_message]:
            if not message.is_user:
                if message.text:
                    messages.append({"role": "assistant", "content": message.text})
                continue
            content = message.text
            images: list[str] = []
            for attachment in message.attachments:
                if is_pdf_attachment(attachment):
                    raise UnsupportedAttachmentError(
                        "Error: PDF files are not supported by Ollama models. "
                        "Please remove the PDF attachment or switch to Gemini."
                    )
                if attachment.is_image:
                    images.append(split_data_url(attachment.data, attachment.type)[1])
                elif not is_text_attachment(attachment):
                    content += (
                        f"\n\n[Attachment {attachment.name} ({attachment.type}) "
                        "omitted. Unsupported type for Ollama]"
                    )
            content += self.inline_text_attachments(message.attachments, max_text_chars)
            entry: dict[str, Any] = {"role": "user", "content": content}
            if images:
                entry["images"] = images
            messages.append(entry)
        return messages

    @staticmethod
    def _extract_from_chunk(chunk: Any, field: str) -> Any:
        """Read ``message.<field>`` from an SDK object or a plain dict chunk."""
        message_obj = getattr(chunk, "message", None)
        if message_obj is not None and not isinstance(chunk, dict):
            value = getattr(message_obj, field, None)
            if value is not None:
                return value
        if isinstance(chunk, dict):
            message = chunk.get("message")
            if isinstance(message, dict):
                return message.get(field)
        return None

    @classmethod
    def _extract_chunk_text(cls, chunk: Any) -> str:
        value = cls._extract_from_chunk(chunk, "content")
        return value if isinstance(value, str) else ""

    @classmethod
    def _extract_chunk_thinking(cls, chunk: Any) -> str:
        value = cls._extract_from_chunk(chunk, "thinking")
        return value if isinstance(value, str) else ""

    @staticmethod
    def _map_exception(exc: Exception, config: StreamConfig) -> StreamChatError:
        if isinstance(exc, StreamChatError):
            return exc
        if isinstance(exc, ResponseError):
            lowered = str(exc.error).lower()
            if exc.status_code == 404 or ("model" in lowered and "not found" in lowered):
                return NotFoundError(
                    f"Model {config.model!r} was not found on {config.base_url}.",
                    detail=str(exc.error),
                )
            return error_for_status(exc.status_code, str(exc.error))
        return classify_error(exc)

    async def stream(
        self,
        history: Sequence[Message],
        new_message: Message,
        system_instruction: str,
        config: StreamConfig,
        on_chunk: ChunkCallback,
        token: CancellationToken,
    ) -> None:
        self.reject_video_models(config)
        messages = self.build_messages(
            history, new_message, system_instruction, config.max_text_attachment_chars
        )
        client = self._client_for(config)

        token.raise_if_cancelled()
        LOGGER.debug(
            "provider.ollama.request",
            extra={
                "event": "provider.ollama.request",
                "model": config.model,
                "host": config.base_url,
                "message_count": len(messages),
            },
        )
        in_thinking = False
        try:
            response = await client.chat(
                model=config.model, messages=messages, stream=True
            )
            async for chunk in response:
                token.raise_if_cancelled()
                thinking = self._extract_chunk_thinking(chunk)
                if thinking:
                    if not in_thinking:
                        in_thinking = True
                        thinking = THINKING_OPEN + thinking
                    on_chunk(thinking)
                text = self._extract_chunk_text(chunk)
                if text:
                    if in_thinking:
                        in_thinking = False
                        text = THINKING_CLOSE + text
                    on_chunk(text)
        except StreamChatError:
            raise
        except Exception as exc:
            raise self._map_exception(exc, config) from exc
        if in_thinking:
            on_chunk(THINKING_CLOSE)
        token.raise_if_cancelled()


__all__ = ["OllamaAdapter", "THINKING_CLOSE", "THINKING_OPEN"]
