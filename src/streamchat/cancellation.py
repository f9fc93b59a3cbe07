"""Cooperative cancellation token threaded through every stream suspension point."""

from __future__ import annotations

import asyncio

from .exceptions import StreamCancelledError


class CancellationToken:
    """One-shot cancellation signal owned by a single logical stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token; repeated calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelledError("Request was cancelled by the user.")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first, then raise."""
        if seconds > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except TimeoutError:
                pass
        self.raise_if_cancelled()
