"""OpenAI-compatible ``/chat/completions`` streaming adapter."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import TYPE_CHECKING, Any

import httpx

from ..attachments import as_data_url, is_pdf_attachment, is_text_attachment
from ..exceptions import ConfigError, UnsupportedAttachmentError
from ..models import Message, ProviderKind
from .base import ChunkCallback, HttpProviderAdapter

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..config import StreamConfig

LOGGER = logging.getLogger(__name__)

GOOGLE_API_HOST_MARKER = "googleapis.com"


class OpenAIAdapter(HttpProviderAdapter):
    """Stream completions from OpenAI or any server speaking its SSE dialect."""

    kind = ProviderKind.OPENAI

    def build_messages(
        self,
        history: Sequence[Message],
        new_message: Message,
        system_instruction: str,
        max_text_chars: int,
    ) -> list[dict[str, Any]]:
        """Return the ``messages`` array, system prompt first.

        Raises UnsupportedAttachmentError for PDFs so nothing is sent.
        """
        messages: list[dict[str, Any]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        for message in [*history, new_message]:
            if not message.is_user:
                if message.text:
                    messages.append({"role": "assistant", "content": message.text})
                continue
            messages.append(
                {"role": "user", "content": self._user_content(message, max_text_chars)}
            )
        return messages

    def _user_content(self, message: Message, max_text_chars: int) -> Any:
        text = message.text
        images: list[dict[str, Any]] = []
        for attachment in message.attachments:
            if is_pdf_attachment(attachment):
                raise UnsupportedAttachmentError(
                    "Error: PDF files are not supported by OpenAI models. "
                    "Please remove the PDF attachment or switch to Gemini."
                )
            if attachment.is_image:
                images.append(
                    {"type": "image_url", "image_url": {"url": as_data_url(attachment)}}
                )
            elif not is_text_attachment(attachment):
                text += (
                    f"\n\n[Attachment {attachment.name} ({attachment.type}) omitted. "
                    "Unsupported type for OpenAI]"
                )
        text += self.inline_text_attachments(message.attachments, max_text_chars)
        if not images:
            return text
        return [{"type": "text", "text": text}, *images]

    @staticmethod
    def _delta_text(payload: dict[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        delta = first.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return delta["content"]
        return ""

    async def _raise_for_openai_response(
        self, response: httpx.Response, config: StreamConfig
    ) -> None:
        if response.status_code == 404 and GOOGLE_API_HOST_MARKER in config.base_url:
            raise ConfigError(
                "Configuration Error: The Base URL points to a Google API, but the "
                "provider is set to OpenAI. Please select the Gemini provider or "
                "use an OpenAI-compatible Base URL."
            )
        await self.raise_for_response(response)

    async def stream(
        self,
        history: Sequence[Message],
        new_message: Message,
        system_instruction: str,
        config: StreamConfig,
        on_chunk: ChunkCallback,
        token: CancellationToken,
    ) -> None:
        if not config.api_key:
            raise ConfigError("Error: OpenAI API key is not configured in settings.")
        self.reject_video_models(config)
        messages = self.build_messages(
            history, new_message, system_instruction, config.max_text_attachment_chars
        )
        endpoint = f"{config.base_url.rstrip('/')}/chat/completions"
        body = {"model": config.model, "messages": messages, "stream": True}
        headers = {"Authorization": f"Bearer {config.api_key}"}

        token.raise_if_cancelled()
        LOGGER.debug(
            "provider.openai.request",
            extra={
                "event": "provider.openai.request",
                "model": config.model,
                "message_count": len(messages),
            },
        )
        async with self.translated_errors():
            async with self._client_scope(config) as client:
                async with client.stream(
                    "POST", endpoint, json=body, headers=headers
                ) as response:
                    await self._raise_for_openai_response(response, config)
                    async for line in response.aiter_lines():
                        token.raise_if_cancelled()
                        payload = self.sse_payloads(line)
                        if payload is None:
                            continue
                        if payload == "[DONE]":
                            break
                        if not isinstance(payload, dict):
                            continue
                        if "error" in payload:
                            raise self.stream_error(payload)
                        text = self._delta_text(payload)
                        if text:
                            on_chunk(text)
        token.raise_if_cancelled()


__all__ = ["GOOGLE_API_HOST_MARKER", "OpenAIAdapter"]
