"""Provider adapters, one per model backend."""

from __future__ import annotations

from typing import Any

import httpx

from ..exceptions import ConfigError
from ..models import ProviderKind
from .base import ChunkCallback, HttpProviderAdapter, ProviderAdapter
from .gemini import GeminiAdapter
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter


def build_adapter(
    kind: ProviderKind | str,
    *,
    http_client: httpx.AsyncClient | None = None,
    ollama_client: Any | None = None,
) -> ProviderAdapter:
    """Return the adapter for ``kind``."""
    kind = ProviderKind(kind)
    if kind is ProviderKind.GEMINI:
        return GeminiAdapter(http_client)
    if kind is ProviderKind.OPENAI:
        return OpenAIAdapter(http_client)
    if kind is ProviderKind.OLLAMA:
        return OllamaAdapter(ollama_client)
    raise ConfigError(f"Unsupported provider {kind.value!r}.")


def default_adapters(
    *,
    http_client: httpx.AsyncClient | None = None,
    ollama_client: Any | None = None,
) -> dict[ProviderKind, ProviderAdapter]:
    return {
        kind: build_adapter(kind, http_client=http_client, ollama_client=ollama_client)
        for kind in ProviderKind
    }


__all__ = [
    "ChunkCallback",
    "GeminiAdapter",
    "HttpProviderAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderKind",
    "build_adapter",
    "default_adapters",
]
