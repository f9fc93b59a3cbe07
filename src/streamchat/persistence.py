"""Local conversation store backed by SQLite through aiosqlite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sqlite3
from types import TracebackType
from typing import Any, Protocol

import aiosqlite

from .exceptions import STORAGE_USER_MESSAGE, StorageError
from .models import Attachment, CacheEntry, Conversation, Message, Sender

LOGGER = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    is_pinned INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    text TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    attachments TEXT NOT NULL DEFAULT '[]',
    thinking_text TEXT NOT NULL DEFAULT '',
    is_thinking_complete INTEGER NOT NULL DEFAULT 0,
    thinking_duration REAL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages (conversation_id, id);
"""

_MESSAGE_COLUMNS = (
    "id, conversation_id, sender, text, timestamp, attachments, "
    "thinking_text, is_thinking_complete, thinking_duration"
)
_CONVERSATION_COLUMNS = "id, title, created_at, updated_at, is_pinned"


class ConversationStore(Protocol):
    """Async persistence contract used by the conversation manager."""

    async def add_conversation(self, conversation: Conversation) -> None: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def update_conversation(self, conversation: Conversation) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def put_message(self, message: Message) -> None: ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def get_messages_page(
        self,
        conversation_id: str,
        limit: int,
        before_id: str | None = None,
    ) -> CacheEntry: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def delete_messages(self, message_ids: Iterable[str]) -> None: ...


def _row_to_conversation(row: Sequence[Any]) -> Conversation:
    return Conversation(
        id=row[0],
        title=row[1],
        created_at=datetime.fromisoformat(row[2]),
        updated_at=datetime.fromisoformat(row[3]),
        is_pinned=bool(row[4]),
    )


def _row_to_message(row: Sequence[Any]) -> Message:
    raw_attachments = json.loads(row[5] or "[]")
    return Message(
        id=row[0],
        conversation_id=row[1],
        sender=Sender(row[2]),
        text=row[3],
        timestamp=datetime.fromisoformat(row[4]),
        attachments=[
            Attachment.from_stored(item)
            for item in raw_attachments
            if isinstance(item, dict)
        ],
        thinking_text=row[6] or "",
        is_thinking_complete=bool(row[7]),
        thinking_duration=row[8],
    )


class SQLiteConversationStore:
    """Conversations and messages in one SQLite file.

    Use as an async context manager or call ``open``/``close`` explicitly.
    Every sqlite failure surfaces as StorageError.
    """

    def __init__(self, database_path: str | Path) -> None:
        self.database_path = (
            database_path
            if str(database_path) == ":memory:"
            else Path(database_path).expanduser()
        )
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> SQLiteConversationStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def _prepare_directory(self) -> None:
        if not isinstance(self.database_path, Path):
            return
        directory = self.database_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        if os.name == "posix":
            try:
                directory.chmod(0o700)
            except OSError:
                LOGGER.warning(
                    "Unable to enforce 0700 permissions for %s", directory
                )

    async def open(self) -> None:
        if self._db is not None:
            return
        try:
            self._prepare_directory()
            self._db = await aiosqlite.connect(self.database_path)
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except (sqlite3.Error, OSError) as exc:
            self._db = None
            raise StorageError(STORAGE_USER_MESSAGE, detail=str(exc)) from exc
        LOGGER.info(
            "storage.open",
            extra={"event": "storage.open", "path": str(self.database_path)},
        )

    async def close(self) -> None:
        if self._db is None:
            return
        db, self._db = self._db, None
        await db.close()

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        if self._db is None:
            raise StorageError(
                STORAGE_USER_MESSAGE, detail=f"{operation}: store is not open"
            )
        try:
            yield self._db
        except (sqlite3.Error, ValueError) as exc:
            LOGGER.error(
                "storage.error",
                extra={
                    "event": "storage.error",
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise StorageError(STORAGE_USER_MESSAGE, detail=f"{operation}: {exc}") from exc

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        async with self._connection(operation) as db:
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    # Conversations

    async def add_conversation(self, conversation: Conversation) -> None:
        async with self._transaction("add_conversation") as db:
            await db.execute(
                f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    conversation.id,
                    conversation.title,
                    conversation.created_at.isoformat(),
                    conversation.updated_at.isoformat(),
                    int(conversation.is_pinned),
                ),
            )

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with self._connection("get_conversation") as db:
            cursor = await db.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        return _row_to_conversation(row) if row is not None else None

    async def list_conversations(self) -> list[Conversation]:
        """Return conversations, pinned first, then most recently updated."""
        async with self._connection("list_conversations") as db:
            cursor = await db.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                "ORDER BY is_pinned DESC, updated_at DESC"
            )
            rows = await cursor.fetchall()
        return [_row_to_conversation(row) for row in rows]

    async def get_latest_conversation(self) -> Conversation | None:
        async with self._connection("get_latest_conversation") as db:
            cursor = await db.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                "ORDER BY updated_at DESC LIMIT 1"
            )
            row = await cursor.fetchone()
        return _row_to_conversation(row) if row is not None else None

    async def update_conversation(self, conversation: Conversation) -> None:
        async with self._transaction("update_conversation") as db:
            await db.execute(
                "UPDATE conversations SET title = ?, updated_at = ?, is_pinned = ? "
                "WHERE id = ?",
                (
                    conversation.title,
                    conversation.updated_at.isoformat(),
                    int(conversation.is_pinned),
                    conversation.id,
                ),
            )

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and all of its messages atomically."""
        async with self._transaction("delete_conversation") as db:
            await db.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            await db.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )

    # Messages

    async def put_message(self, message: Message) -> None:
        """Insert or replace a message. Preview handles are never stored."""
        attachments = json.dumps([a.to_stored() for a in message.attachments])
        async with self._transaction("put_message") as db:
            await db.execute(
                f"INSERT OR REPLACE INTO messages ({_MESSAGE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.conversation_id,
                    message.sender.value,
                    message.text,
                    message.timestamp.isoformat(),
                    attachments,
                    message.thinking_text,
                    int(message.is_thinking_complete),
                    message.thinking_duration,
                ),
            )

    async def get_message(self, message_id: str) -> Message | None:
        async with self._connection("get_message") as db:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
        return _row_to_message(row) if row is not None else None

    async def get_messages(self, conversation_id: str) -> list[Message]:
        async with self._connection("get_messages") as db:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def get_messages_page(
        self,
        conversation_id: str,
        limit: int,
        before_id: str | None = None,
    ) -> CacheEntry:
        """Return up to ``limit`` messages ending just before ``before_id``.

        Without ``before_id`` the newest page is returned. Messages within the
        page are ordered oldest first.
        """
        query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ?"
        params: list[Any] = [conversation_id]
        if before_id is not None:
            query += " AND id < ?"
            params.append(before_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit + 1)
        async with self._connection("get_messages_page") as db:
            cursor = await db.execute(query, params)
            rows = list(await cursor.fetchall())
        has_more = len(rows) > limit
        page = [_row_to_message(row) for row in reversed(rows[:limit])]
        return CacheEntry(messages=tuple(page), has_more=has_more)

    async def delete_message(self, message_id: str) -> None:
        async with self._transaction("delete_message") as db:
            await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    async def delete_messages(self, message_ids: Iterable[str]) -> None:
        """Delete several messages in one transaction."""
        ids = [(message_id,) for message_id in message_ids]
        if not ids:
            return
        async with self._transaction("delete_messages") as db:
            await db.executemany("DELETE FROM messages WHERE id = ?", ids)


__all__ = ["ConversationStore", "SCHEMA", "SQLiteConversationStore"]
