"""Gemini REST ``streamGenerateContent`` adapter."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import TYPE_CHECKING, Any

from ..attachments import is_text_attachment, split_data_url
from ..exceptions import ConfigError
from ..models import Message, ProviderKind
from .base import ChunkCallback, HttpProviderAdapter

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..config import StreamConfig

LOGGER = logging.getLogger(__name__)


class GeminiAdapter(HttpProviderAdapter):
    """Stream Gemini replies over server-sent events."""

    kind = ProviderKind.GEMINI

    def build_contents(
        self,
        history: Sequence[Message],
        new_message: Message,
        max_text_chars: int,
    ) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in [*history, new_message]:
            role = "user" if message.is_user else "model"
            contents.append(
                {"role": role, "parts": self._parts(message, max_text_chars)}
            )
        return contents

    def _parts(self, message: Message, max_text_chars: int) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        text = message.text
        if message.is_user:
            text += self.inline_text_attachments(message.attachments, max_text_chars)
        if text:
            parts.append({"text": text})
        if message.is_user:
            for attachment in message.attachments:
                if is_text_attachment(attachment):
                    continue
                mime_type, payload = split_data_url(attachment.data, attachment.type)
                parts.append({"inlineData": {"mimeType": mime_type, "data": payload}})
        # Gemini rejects a content entry with no parts.
        return parts or [{"text": ""}]

    def build_request(
        self,
        history: Sequence[Message],
        new_message: Message,
        system_instruction: str,
        config: StreamConfig,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "contents": self.build_contents(
                history, new_message, config.max_text_attachment_chars
            ),
            "generationConfig": {
                "thinkingConfig": {"thinkingBudget": config.thinking_budget}
            },
        }
        if system_instruction:
            request["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return request

    @staticmethod
    def _candidate_text(payload: dict[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        if not isinstance(content, dict):
            return ""
        pieces: list[str] = []
        for part in content.get("parts") or []:
            if not isinstance(part, dict) or part.get("thought"):
                continue
            value = part.get("text")
            if isinstance(value, str):
                pieces.append(value)
        return "".join(pieces)

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
            raise ConfigError("Error: Gemini API key is not configured in settings.")
        self.reject_video_models(config)
        body = self.build_request(history, new_message, system_instruction, config)
        endpoint = (
            f"{config.base_url.rstrip('/')}/models/{config.model}"
            ":streamGenerateContent"
        )
        headers = {"x-goog-api-key": config.api_key}

        token.raise_if_cancelled()
        LOGGER.debug(
            "provider.gemini.request",
            extra={
                "event": "provider.gemini.request",
                "model": config.model,
                "content_count": len(body["contents"]),
            },
        )
        async with self.translated_errors():
            async with self._client_scope(config) as client:
                async with client.stream(
                    "POST",
                    endpoint,
                    params={"alt": "sse"},
                    json=body,
                    headers=headers,
                ) as response:
                    await self.raise_for_response(response)
                    async for line in response.aiter_lines():
                        token.raise_if_cancelled()
                        payload = self.sse_payloads(line)
                        if payload is None or payload == "[DONE]":
                            continue
                        if not isinstance(payload, dict):
                            continue
                        if "error" in payload:
                            raise self.stream_error(payload)
                        text = self._candidate_text(payload)
                        if text:
                            on_chunk(text)
        token.raise_if_cancelled()


__all__ = ["GeminiAdapter"]
