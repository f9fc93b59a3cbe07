"""Per-session cache of the newest message page of each conversation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging

from .models import CacheEntry

LOGGER = logging.getLogger(__name__)

PageLoader = Callable[[str], Awaitable[CacheEntry]]


class ConversationCache:
    """Invalidate-on-write cache with single-flight loading.

    Entries are replaced wholesale and dropped on every write; they are never
    patched. A fetch that was in flight when its key was invalidated still
    resolves for the callers already waiting on it but never repopulates the
    entry.
    """

    def __init__(self, loader: PageLoader) -> None:
        self._loader = loader
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task[CacheEntry]] = {}
        self._generations: dict[str, int] = {}

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return True

    def peek(self, conversation_id: str) -> CacheEntry | None:
        """Return the cached entry without loading."""
        return self._entries.get(conversation_id)

    def is_loading(self, conversation_id: str) -> bool:
        return conversation_id in self._inflight

    async def load(self, conversation_id: str) -> CacheEntry:
        """Return the cached page, fetching it once if absent.

        Loader errors propagate to every caller sharing the fetch.
        """
        entry = self._entries.get(conversation_id)
        if entry is not None:
            LOGGER.debug(
                "cache.hit",
                extra={"event": "cache.hit", "conversation_id": conversation_id},
            )
            return entry

        task = self._inflight.get(conversation_id)
        if task is None:
            LOGGER.debug(
                "cache.miss",
                extra={"event": "cache.miss", "conversation_id": conversation_id},
            )
            generation = self._generations.get(conversation_id, 0)
            task = asyncio.create_task(self._fetch(conversation_id, generation))
            self._inflight[conversation_id] = task
        # A cancelled caller must not cancel the fetch other callers share.
        return await asyncio.shield(task)

    async def _fetch(self, conversation_id: str, generation: int) -> CacheEntry:
        try:
            entry = await self._loader(conversation_id)
        finally:
            if self._inflight.get(conversation_id) is asyncio.current_task():
                del self._inflight[conversation_id]
        if self._generations.get(conversation_id, 0) == generation:
            self._entries[conversation_id] = entry
        else:
            LOGGER.debug(
                "cache.stale_fetch_dropped",
                extra={
                    "event": "cache.stale_fetch_dropped",
                    "conversation_id": conversation_id,
                },
            )
        return entry

    async def preload(self, conversation_id: str) -> None:
        """Warm the cache; failures are logged and never raised."""
        if conversation_id in self._entries or conversation_id in self._inflight:
            return
        try:
            await self.load(conversation_id)
        except Exception as exc:  # noqa: BLE001 - preloading is best-effort.
            LOGGER.warning(
                "cache.preload.failed",
                extra={
                    "event": "cache.preload.failed",
                    "conversation_id": conversation_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def delete(self, conversation_id: str) -> None:
        """Invalidate one conversation's entry and orphan any in-flight fetch."""
        self._generations[conversation_id] = (
            self._generations.get(conversation_id, 0) + 1
        )
        self._entries.pop(conversation_id, None)
        self._inflight.pop(conversation_id, None)
        LOGGER.debug(
            "cache.invalidate",
            extra={"event": "cache.invalidate", "conversation_id": conversation_id},
        )

    def clear(self) -> None:
        for conversation_id in list(self._inflight):
            self.delete(conversation_id)
        self._entries.clear()
