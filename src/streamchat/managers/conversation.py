"""Conversation state coordination.

Keeps the in-memory message list, the persisted history, the conversation
cache and the in-flight stream coherent across send, resend, regenerate,
edit and delete.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
import logging
import time
from typing import TYPE_CHECKING, TypeVar
from uuid import uuid4

from ..exceptions import StorageError
from ..models import Attachment, Conversation, Message, Sender, new_message_id, utcnow
from ..notifications import LoggingNotificationSink, NotificationSink, Severity
from ..state import StateManager
from ..stream_parser import parse_streamed_text
from ..task_manager import TaskManager
from .attachment import AttachmentPreviewLifecycle
from .stream import StreamOutcome, StreamResult

if TYPE_CHECKING:
    from ..cache import ConversationCache
    from ..config import StreamConfig
    from ..persistence import ConversationStore
    from .stream import StreamController

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50

MessagesListener = Callable[[list[Message]], None]


def derive_title(text: str, attachments: Sequence[Attachment] = ()) -> str:
    """Title from the first 50 characters of text, else the first attachment."""
    title = text[:TITLE_MAX_CHARS].strip()
    if title:
        return title
    if attachments:
        return attachments[0].name
    return DEFAULT_TITLE


class ConversationStateManager:
    """Coordinates message mutations for the active conversation.

    Responsibilities:
    - Creating conversations and persisting user and AI messages
    - Serializing mutations behind one operation lock
    - Running at most one stream, tracked as the ``active_stream`` task
    - Cascade-deleting later messages on resend and edit
    - Invalidating the cache entry after every mutation
    - Routing storage failures to the notification sink
    """

    ACTIVE_STREAM_TASK = "active_stream"

    def __init__(
        self,
        store: ConversationStore,
        cache: ConversationCache,
        controller: StreamController,
        stream_config: StreamConfig,
        *,
        previews: AttachmentPreviewLifecycle | None = None,
        notifications: NotificationSink | None = None,
        page_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize conversation manager.

        Args:
            store: Persistent message and conversation store
            cache: Session cache of message pages, shared with other consumers
            controller: Stream controller used for every reply
            stream_config: Provider and retry settings for new streams
            previews: Preview handle lifecycle for image attachments
            notifications: Sink for storage failures
            page_size: Messages fetched per ``load_more`` call
            clock: Monotonic clock used for thinking durations
        """
        self.store = store
        self.cache = cache
        self.controller = controller
        self.stream_config = stream_config
        self.previews = previews or AttachmentPreviewLifecycle()
        self.notifications: NotificationSink = notifications or LoggingNotificationSink()
        self.page_size = page_size
        self._clock = clock
        self.state = StateManager()
        self.task_manager = TaskManager()
        self.conversation: Conversation | None = None
        self.messages: list[Message] = []
        self.has_more = False
        self._listeners: list[MessagesListener] = []
        self._operation_lock = asyncio.Lock()
        self._stream_cancel_requested = False

    @property
    def conversation_id(self) -> str | None:
        return self.conversation.id if self.conversation is not None else None

    def on_messages_changed(self, callback: MessagesListener) -> None:
        """Register a callback invoked after every in-memory change."""
        self._listeners.append(callback)

    def _emit(self) -> None:
        snapshot = list(self.messages)
        for listener in self._listeners:
            listener(snapshot)

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def _report_storage_error(self, exc: StorageError) -> None:
        LOGGER.error(
            "conversation.storage.failed",
            extra={
                "event": "conversation.storage.failed",
                "conversation_id": self.conversation_id,
                "error": exc.detail or exc.user_message,
            },
        )
        self.notifications.notify(exc.user_message, Severity.ERROR)

    async def _persist(self, operation: Awaitable[T]) -> T | None:
        try:
            return await operation
        except StorageError as exc:
            self._report_storage_error(exc)
            return None

    def _invalidate(self, conversation_id: str | None) -> None:
        if conversation_id is not None:
            self.cache.delete(conversation_id)

    async def _touch_conversation(self) -> None:
        if self.conversation is None:
            return
        self.conversation.updated_at = utcnow()
        await self.store.update_conversation(self.conversation)

    async def _stop_active_stream(self, reason: str) -> None:
        """Cancel the running stream and wait until it has been finalized."""
        if self.task_manager.get(self.ACTIVE_STREAM_TASK) is None:
            return
        self._stream_cancel_requested = True
        self.controller.cancel(reason)
        await self.task_manager.drain(self.ACTIVE_STREAM_TASK)

    # Streaming

    def _start_stream(
        self,
        history: Sequence[Message],
        prompt: Message,
        ai_message_id: str,
        *,
        previous: Message | None = None,
    ) -> asyncio.Task[Message]:
        """Schedule the reply as the active stream task.

        Called with the operation lock held. Callers await the returned task
        after releasing it, so a later operation can supersede this stream.
        """
        self._stream_cancel_requested = False
        return self.task_manager.start(
            self._stream_reply(list(history), prompt, ai_message_id, previous),
            slot=self.ACTIVE_STREAM_TASK,
        )

    async def _stream_reply(
        self,
        history: list[Message],
        prompt: Message,
        ai_message_id: str,
        previous: Message | None,
    ) -> Message:
        conversation_id = prompt.conversation_id
        started = self._clock()
        placeholder = Message(
            id=ai_message_id,
            conversation_id=conversation_id,
            sender=Sender.AI,
            is_loading=True,
            thinking_start_time=started,
        )
        index = self._index_of(ai_message_id)
        if index >= 0:
            self.messages[index] = placeholder
        else:
            self.messages.append(placeholder)
        self._emit()
        await self.state.begin_stream(ai_message_id)

        def on_chunk(chunk: str, accumulated: str) -> None:
            parsed = parse_streamed_text(accumulated)
            placeholder.text = parsed.final_content.strip()
            placeholder.thinking_text = parsed.thinking_content.strip()
            placeholder.is_thinking_complete = parsed.is_thinking_block_complete
            if parsed.is_thinking_block_complete and placeholder.thinking_duration is None:
                placeholder.thinking_duration = self._clock() - started
            self._emit()

        result: StreamResult | None = None
        try:
            if self._stream_cancel_requested:
                # Cancelled before the controller took ownership of the stream.
                result = StreamResult("", StreamOutcome.CANCELLED, 0)
            else:
                result = await self.controller.start(
                    history, prompt, ai_message_id, self.stream_config, on_chunk
                )
        finally:
            self._finalize(placeholder, result, started)
            await self.state.end_stream(ai_message_id)

        if result.outcome is StreamOutcome.CANCELLED:
            if previous is not None:
                self._replace_in_memory(previous)
            self._emit()
            return placeholder

        self._emit()
        try:
            await self.store.put_message(placeholder)
            await self._touch_conversation()
        except StorageError as exc:
            self._report_storage_error(exc)
        finally:
            self._invalidate(conversation_id)
        return placeholder

    def _finalize(
        self, placeholder: Message, result: StreamResult | None, started: float
    ) -> None:
        """Mark the placeholder finished; runs exactly once per stream."""
        if result is not None:
            parsed = parse_streamed_text(result.text)
            final_text = parsed.final_content.strip()
            if (
                result.outcome is StreamOutcome.FAILED
                and result.error is not None
                and result.error.user_message not in final_text
            ):
                final_text = f"{final_text}\n\n{result.error.user_message}".strip()
            placeholder.text = final_text
            placeholder.thinking_text = parsed.thinking_content.strip()
        placeholder.is_loading = False
        placeholder.is_thinking_complete = True
        placeholder.thinking_duration = placeholder.thinking_duration or (
            self._clock() - started
        )

    def _replace_in_memory(self, message: Message) -> None:
        index = self._index_of(message.id)
        if index >= 0:
            self.messages[index] = message

    # Public operations

    async def send(
        self, text: str, attachments: Iterable[Attachment] | None = None
    ) -> Message | None:
        """Append a user message and stream the reply to it.

        Returns the finalized AI message, or None for an empty submission.
        """
        attachments = list(attachments or [])
        if not text.strip() and not attachments:
            return None
        async with self._operation_lock:
            await self._stop_active_stream("superseded by a new message")

            if self.conversation is None:
                conversation = Conversation(
                    id=uuid4().hex, title=derive_title(text, attachments)
                )
                self.conversation = conversation
                self.messages = []
                self.has_more = False
                LOGGER.info(
                    "conversation.created",
                    extra={"event": "conversation.created", "conversation_id": conversation.id},
                )
                await self._persist(self.store.add_conversation(conversation))

            conversation_id = self.conversation.id
            history = list(self.messages)
            user_message = Message(
                id=new_message_id(),
                conversation_id=conversation_id,
                sender=Sender.USER,
                text=text,
                attachments=attachments,
            )
            self.previews.track(attachments)
            self.messages.append(user_message)
            self._emit()
            try:
                await self.store.put_message(user_message)
                await self._touch_conversation()
            except StorageError as exc:
                self._report_storage_error(exc)
            finally:
                self._invalidate(conversation_id)

            task = self._start_stream(history, user_message, new_message_id())
        return await task

    def _resend_target(self, message_id: str) -> int:
        index = self._index_of(message_id)
        if index < 0 or not self.messages[index].is_user:
            return -1
        return index

    async def resend(self, user_message: Message) -> Message | None:
        """Drop every message after ``user_message`` and stream a fresh reply.

        Returns None when the message is unknown or was not sent by the user.
        """
        async with self._operation_lock:
            if self._resend_target(user_message.id) < 0:
                return None
            await self._stop_active_stream("resend")
            index = self._resend_target(user_message.id)
            if index < 0:
                return None

            prompt = self.messages[index]
            later_ids = [message.id for message in self.messages[index + 1 :]]
            self.messages = self.messages[: index + 1]
            self._emit()
            try:
                if later_ids:
                    await self.store.delete_messages(later_ids)
                    await self._touch_conversation()
            except StorageError as exc:
                self._report_storage_error(exc)
            finally:
                self._invalidate(prompt.conversation_id)

            LOGGER.info(
                "conversation.resend",
                extra={
                    "event": "conversation.resend",
                    "message_id": prompt.id,
                    "deleted": len(later_ids),
                },
            )
            task = self._start_stream(self.messages[:index], prompt, new_message_id())
        return await task

    def _regenerate_target(self, message_id: str) -> int:
        index = self._index_of(message_id)
        if index <= 0 or self.messages[index].is_user:
            return -1
        if not self.messages[index - 1].is_user:
            return -1
        return index

    async def regenerate(self, ai_message: Message) -> Message | None:
        """Re-stream an AI message in place from the user message before it."""
        async with self._operation_lock:
            if self._regenerate_target(ai_message.id) < 0:
                return None
            await self._stop_active_stream("regenerate")
            index = self._regenerate_target(ai_message.id)
            if index < 0:
                return None

            previous = self.messages[index]
            prompt = self.messages[index - 1]
            task = self._start_stream(
                self.messages[: index - 1], prompt, previous.id, previous=previous
            )
        return await task

    async def edit(
        self,
        message_id: str,
        new_text: str,
        new_attachments: Iterable[Attachment] | None = None,
    ) -> Message | None:
        """Replace a message's content and delete everything after it.

        Returns the updated message, or None when it does not exist or could
        not be persisted.
        """
        async with self._operation_lock:
            return await self._edit(message_id, new_text, new_attachments)

    async def _edit(
        self,
        message_id: str,
        new_text: str,
        new_attachments: Iterable[Attachment] | None,
    ) -> Message | None:
        if self._index_of(message_id) < 0:
            return None
        await self._stop_active_stream("message edited")
        index = self._index_of(message_id)
        if index < 0:
            return None

        target = self.messages[index]
        changes: dict[str, object] = {"text": new_text}
        if new_attachments is not None:
            changes["attachments"] = list(new_attachments)
        updated = target.copy(**changes)
        later_ids = [message.id for message in self.messages[index + 1 :]]
        first_user_index = next(
            (i for i, message in enumerate(self.messages) if message.is_user), -1
        )

        self.previews.track(updated.attachments)
        self.messages = [*self.messages[:index], updated]
        self._emit()
        try:
            if later_ids:
                await self.store.delete_messages(later_ids)
            await self.store.put_message(updated)
            if (
                self.conversation is not None
                and updated.is_user
                and index == first_user_index
            ):
                self.conversation.title = derive_title(new_text, updated.attachments)
            await self._touch_conversation()
        except StorageError as exc:
            self._report_storage_error(exc)
            return None
        finally:
            self._invalidate(updated.conversation_id)
        return updated

    async def delete(self, message_id: str) -> bool:
        """Remove one message from memory and storage."""
        return await self.batch_delete([message_id])

    async def batch_delete(self, message_ids: Iterable[str]) -> bool:
        """Remove several messages in one storage transaction."""
        ids = set(message_ids)
        if not ids:
            return False
        async with self._operation_lock:
            return await self._delete_ids(ids)

    async def _delete_ids(self, ids: set[str]) -> bool:
        if any(m.id in ids and m.is_loading for m in self.messages):
            await self._stop_active_stream("message deleted")
        conversation_id = self.conversation_id
        self.messages = [m for m in self.messages if m.id not in ids]
        self._emit()
        try:
            if len(ids) == 1:
                await self.store.delete_message(next(iter(ids)))
            else:
                await self.store.delete_messages(sorted(ids))
            await self._touch_conversation()
        except StorageError as exc:
            self._report_storage_error(exc)
            return False
        finally:
            self._invalidate(conversation_id)
        return True

    async def load_conversation(self, conversation_id: str) -> list[Message]:
        """Make ``conversation_id`` active and load its newest page."""
        async with self._operation_lock:
            return await self._load_conversation(conversation_id)

    async def _load_conversation(self, conversation_id: str) -> list[Message]:
        await self._stop_active_stream("conversation switched")
        try:
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is None:
                LOGGER.warning(
                    "conversation.load.missing",
                    extra={
                        "event": "conversation.load.missing",
                        "conversation_id": conversation_id,
                    },
                )
                return []
            entry = await self.cache.load(conversation_id)
        except StorageError as exc:
            self._report_storage_error(exc)
            return []

        self.messages = await self.previews.swap(entry.messages)
        self.conversation = conversation
        self.has_more = entry.has_more
        self._emit()
        return list(self.messages)

    async def load_more(self) -> list[Message]:
        """Prepend the page preceding the oldest loaded message."""
        if self.conversation is None or not self.has_more or not self.messages:
            return []
        entry = await self._persist(
            self.store.get_messages_page(
                self.conversation.id, self.page_size, before_id=self.messages[0].id
            )
        )
        if entry is None:
            return []
        older = await self.previews.extend(entry.messages)
        self.messages = [*older, *self.messages]
        self.has_more = entry.has_more
        self._emit()
        return older

    async def preload(self, conversation_id: str) -> None:
        await self.cache.preload(conversation_id)

    async def start_new_conversation(self) -> None:
        """Clear the active conversation; the next ``send`` creates a new one."""
        async with self._operation_lock:
            await self._stop_active_stream("new conversation")
            self.conversation = None
            self.messages = []
            self.has_more = False
            await self.previews.swap([])
            self._emit()

    async def update_conversation_metadata(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        is_pinned: bool | None = None,
    ) -> Conversation | None:
        """Rename or pin a conversation."""
        try:
            if self.conversation is not None and self.conversation.id == conversation_id:
                conversation = self.conversation
            else:
                conversation = await self.store.get_conversation(conversation_id)
            if conversation is None:
                return None
            if title is not None and title.strip():
                conversation.title = title.strip()
            if is_pinned is not None:
                conversation.is_pinned = is_pinned
            conversation.updated_at = utcnow()
            await self.store.update_conversation(conversation)
        except StorageError as exc:
            self._report_storage_error(exc)
            return None
        finally:
            self._invalidate(conversation_id)
        return conversation

    def cancel(self) -> None:
        """Stop the active stream; its partial text is kept but not persisted."""
        self._stream_cancel_requested = True
        self.controller.cancel("cancelled by user")

    async def close(self) -> None:
        self._stream_cancel_requested = True
        self.controller.cancel("session closed")
        await self.task_manager.cancel_all()
        await self.previews.close()


__all__ = ["ConversationStateManager", "DEFAULT_TITLE", "derive_title"]
