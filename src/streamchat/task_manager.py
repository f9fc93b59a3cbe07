"""Registry of the background tasks owned by a conversation manager."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TaskManager:
    """Keeps strong references to running tasks, by slot name or anonymously.

    A slot holds at most one task. Starting a task in an occupied slot does
    not cancel the occupant; callers ``drain`` or ``cancel`` it first.
    """

    def __init__(self) -> None:
        self._slots: dict[str, asyncio.Task[Any]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def start(
        self, coro: Coroutine[Any, Any, T], slot: str | None = None
    ) -> asyncio.Task[T]:
        """Schedule ``coro`` and track the resulting task."""
        task = asyncio.create_task(coro, name=slot)
        if slot is None:
            self._background.add(task)
            task.add_done_callback(self._background_done)
        else:
            self._slots[slot] = task
            task.add_done_callback(lambda done: self._release(slot, done))
        return task

    def _release(self, slot: str, task: asyncio.Task[Any]) -> None:
        if self._slots.get(slot) is task:
            del self._slots[slot]

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        LOGGER.warning(
            "task.background.failed",
            extra={
                "event": "task.background.failed",
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )

    def get(self, slot: str) -> asyncio.Task[Any] | None:
        return self._slots.get(slot)

    async def drain(self, slot: str) -> None:
        """Wait until the task in ``slot`` finishes, without cancelling it.

        Its result or failure stays with whoever awaits the task itself.
        """
        task = self._slots.get(slot)
        if task is None or task.done() or task is asyncio.current_task():
            return
        await asyncio.wait({task})

    async def cancel(self, slot: str) -> None:
        task = self._slots.pop(slot, None)
        if task is not None:
            await self._cancel_and_wait([task])

    async def cancel_all(self) -> None:
        tasks = [*self._slots.values(), *self._background]
        self._slots.clear()
        self._background.clear()
        await self._cancel_and_wait(tasks)

    @staticmethod
    async def _cancel_and_wait(tasks: list[asyncio.Task[Any]]) -> None:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
