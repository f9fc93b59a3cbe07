"""Preview handle lifecycle for stored attachments.

Preview handles are session-scoped temporary files holding decoded image
bytes, so a renderer can reference an image without the base64 payload.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
import logging
from pathlib import Path
import shutil
import tempfile
import uuid

import aiofiles

from ..attachments import decode_payload, guess_extension, split_data_url
from ..exceptions import UnsupportedAttachmentError
from ..models import Attachment, Message

LOGGER = logging.getLogger(__name__)


class AttachmentPreviewLifecycle:
    """Creates and revokes preview handles for one session.

    Responsibilities:
    - Decoding image payloads off the event loop
    - Writing preview files under a private session directory
    - Revoking the previous load's handles only after new ones are assigned
    - Idempotent revocation
    """

    def __init__(self, directory: str | Path | None = None) -> None:
        """Initialize preview lifecycle.

        Args:
            directory: Parent directory for the session folder; system temp if empty
        """
        self._parent = Path(directory).expanduser() if directory else None
        self._session_dir: Path | None = None
        self._live: set[str] = set()
        self._current: set[str] = set()

    @property
    def live_handles(self) -> frozenset[str]:
        return frozenset(self._live)

    @property
    def current_handles(self) -> frozenset[str]:
        """Handles belonging to the most recent load."""
        return frozenset(self._current)

    def _ensure_session_dir(self) -> Path:
        if self._session_dir is None:
            if self._parent is not None:
                self._parent.mkdir(parents=True, exist_ok=True)
            self._session_dir = Path(
                tempfile.mkdtemp(
                    prefix="streamchat-previews-",
                    dir=str(self._parent) if self._parent else None,
                )
            )
        return self._session_dir

    async def _create_handle(self, attachment: Attachment) -> str | None:
        try:
            payload = await asyncio.to_thread(decode_payload, attachment)
        except UnsupportedAttachmentError as exc:
            LOGGER.warning(
                "preview.decode.failed",
                extra={
                    "event": "preview.decode.failed",
                    "attachment": attachment.name,
                    "error": exc.detail or str(exc),
                },
            )
            return None
        mime_type, _ = split_data_url(attachment.data, attachment.type)
        target = self._ensure_session_dir() / f"{uuid.uuid4().hex}{guess_extension(mime_type)}"
        async with aiofiles.open(target, "wb") as handle_file:
            await handle_file.write(payload)
        handle = str(target)
        self._live.add(handle)
        return handle

    async def attach_previews(self, messages: Sequence[Message]) -> list[Message]:
        """Return copies of ``messages`` whose image attachments carry previews.

        New handles are live but not yet part of the current load; see ``swap``.
        """
        result: list[Message] = []
        for message in messages:
            copy = message.copy()
            for attachment in copy.attachments:
                if attachment.is_image and attachment.data:
                    attachment.preview = await self._create_handle(attachment)
            result.append(copy)
        return result

    async def swap(self, messages: Sequence[Message]) -> list[Message]:
        """Attach previews for a fresh load, then revoke the previous load's."""
        with_previews = await self.attach_previews(messages)
        previous = self._current
        self._current = set(self._handles_of(with_previews))
        for handle in previous - self._current:
            self.revoke(handle)
        LOGGER.debug(
            "preview.swap",
            extra={
                "event": "preview.swap",
                "created": len(self._current),
                "revoked": len(previous - self._current),
            },
        )
        return with_previews

    async def extend(self, messages: Sequence[Message]) -> list[Message]:
        """Attach previews for an older page joining the current load."""
        with_previews = await self.attach_previews(messages)
        self._current.update(self._handles_of(with_previews))
        return with_previews

    def track(self, attachments: Iterable[Attachment]) -> None:
        """Adopt handles created elsewhere so they are revoked with this load."""
        for attachment in attachments:
            if attachment.preview:
                self._live.add(attachment.preview)
                self._current.add(attachment.preview)

    def revoke(self, handle: str | None) -> None:
        """Release one handle. Unknown or already revoked handles are ignored."""
        if not handle or handle not in self._live:
            return
        self._live.discard(handle)
        self._current.discard(handle)
        try:
            Path(handle).unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning(
                "preview.revoke.failed",
                extra={"event": "preview.revoke.failed", "handle": handle, "error": str(exc)},
            )

    async def close(self) -> None:
        """Revoke every live handle and remove the session directory."""
        for handle in list(self._live):
            self.revoke(handle)
        self._current.clear()
        if self._session_dir is not None:
            session_dir, self._session_dir = self._session_dir, None
            await asyncio.to_thread(shutil.rmtree, session_dir, True)

    @staticmethod
    def _handles_of(messages: Iterable[Message]) -> list[str]:
        return [
            attachment.preview
            for message in messages
            for attachment in message.attachments
            if attachment.preview
        ]


__all__ = ["AttachmentPreviewLifecycle"]
