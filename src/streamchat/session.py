"""Composition of one chat session from validated configuration."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

from .cache import ConversationCache
from .config import StreamConfig
from .managers.attachment import AttachmentPreviewLifecycle
from .managers.conversation import ConversationStateManager
from .managers.stream import StreamController
from .models import ProviderKind
from .notifications import NotificationSink
from .persistence import SQLiteConversationStore
from .providers import ProviderAdapter


@asynccontextmanager
async def open_session(
    config: dict[str, Any],
    *,
    provider: ProviderKind | str | None = None,
    adapters: Mapping[ProviderKind, ProviderAdapter] | None = None,
    notifications: NotificationSink | None = None,
) -> AsyncIterator[ConversationStateManager]:
    """Yield a ready conversation manager and release its resources on exit.

    The store, cache, preview lifecycle and controller are created here once
    and shared by everything the manager does.
    """
    page_size = int(config["storage"]["page_size"])
    store = SQLiteConversationStore(config["storage"]["database_path"])
    await store.open()
    cache = ConversationCache(partial(store.get_messages_page, limit=page_size))
    manager = ConversationStateManager(
        store,
        cache,
        StreamController(adapters),
        StreamConfig.from_config(config, provider),
        previews=AttachmentPreviewLifecycle(config["attachments"]["preview_directory"]),
        notifications=notifications,
        page_size=page_size,
    )
    try:
        yield manager
    finally:
        await manager.close()
        cache.clear()
        await store.close()


__all__ = ["open_session"]
