"""Tests for the aiosqlite conversation store."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
import tempfile
import unittest

from streamchat.exceptions import StorageError
from streamchat.models import (
    Attachment,
    Conversation,
    Message,
    Sender,
    new_message_id,
    utcnow,
)
from streamchat.persistence import SQLiteConversationStore


def _message(conversation_id: str, text: str, sender: Sender = Sender.USER) -> Message:
    return Message(
        id=new_message_id(), conversation_id=conversation_id, sender=sender, text=text
    )


class SQLiteConversationStoreTests(unittest.IsolatedAsyncioTestCase):
    """Validate CRUD, pagination and transactional deletes."""

    async def asyncSetUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self._temp_dir.name) / "nested" / "chat.sqlite3"
        self.store = SQLiteConversationStore(self.db_path)
        await self.store.open()
        self.conversation = Conversation(id="c1", title="First")
        await self.store.add_conversation(self.conversation)

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self._temp_dir.cleanup()

    async def test_open_creates_parent_directory(self) -> None:
        self.assertTrue(self.db_path.exists())
        self.assertTrue(self.store.is_open)

    async def test_message_round_trip_drops_preview(self) -> None:
        message = _message("c1", "Hello")
        message.attachments = [
            Attachment(name="p.png", type="image/png", data="iVBORw==", size=4, preview="/tmp/x.png")
        ]
        message.thinking_text = "plan"
        message.is_thinking_complete = True
        message.thinking_duration = 1.5
        await self.store.put_message(message)

        [stored] = await self.store.get_messages("c1")
        self.assertEqual(stored.text, "Hello")
        self.assertEqual(stored.attachments[0].data, "iVBORw==")
        self.assertIsNone(stored.attachments[0].preview)
        self.assertEqual(stored.thinking_text, "plan")
        self.assertEqual(stored.thinking_duration, 1.5)
        self.assertFalse(stored.is_loading)

    async def test_put_message_replaces_existing_row(self) -> None:
        message = _message("c1", "draft", Sender.AI)
        await self.store.put_message(message)
        message.text = "final"
        await self.store.put_message(message)
        stored = await self.store.get_message(message.id)
        self.assertIsNotNone(stored)
        self.assertEqual(stored.text, "final")  # type: ignore[union-attr]
        self.assertEqual(len(await self.store.get_messages("c1")), 1)

    async def test_pages_are_newest_first_and_ordered_within(self) -> None:
        messages = [_message("c1", f"m{i}") for i in range(5)]
        for message in messages:
            await self.store.put_message(message)

        newest = await self.store.get_messages_page("c1", limit=2)
        self.assertEqual([m.text for m in newest.messages], ["m3", "m4"])
        self.assertTrue(newest.has_more)

        older = await self.store.get_messages_page(
            "c1", limit=2, before_id=newest.messages[0].id
        )
        self.assertEqual([m.text for m in older.messages], ["m1", "m2"])
        self.assertTrue(older.has_more)

        oldest = await self.store.get_messages_page(
            "c1", limit=2, before_id=older.messages[0].id
        )
        self.assertEqual([m.text for m in oldest.messages], ["m0"])
        self.assertFalse(oldest.has_more)

    async def test_delete_messages_removes_batch(self) -> None:
        messages = [_message("c1", f"m{i}") for i in range(4)]
        for message in messages:
            await self.store.put_message(message)
        await self.store.delete_messages([m.id for m in messages[1:3]])
        remaining = await self.store.get_messages("c1")
        self.assertEqual([m.text for m in remaining], ["m0", "m3"])

    async def test_delete_conversation_cascades_messages(self) -> None:
        await self.store.put_message(_message("c1", "bye"))
        await self.store.delete_conversation("c1")
        self.assertIsNone(await self.store.get_conversation("c1"))
        self.assertEqual(await self.store.get_messages("c1"), [])

    async def test_list_conversations_pinned_first_then_recent(self) -> None:
        now = utcnow()
        older = Conversation(id="c2", title="Older", updated_at=now - timedelta(hours=1))
        pinned = Conversation(
            id="c3", title="Pinned", updated_at=now - timedelta(days=1), is_pinned=True
        )
        await self.store.add_conversation(older)
        await self.store.add_conversation(pinned)

        listed = await self.store.list_conversations()
        self.assertEqual([c.id for c in listed], ["c3", "c1", "c2"])
        latest = await self.store.get_latest_conversation()
        self.assertEqual(latest.id, "c1")  # type: ignore[union-attr]

    async def test_update_conversation_persists_metadata(self) -> None:
        self.conversation.title = "Renamed"
        self.conversation.is_pinned = True
        await self.store.update_conversation(self.conversation)
        stored = await self.store.get_conversation("c1")
        self.assertEqual(stored.title, "Renamed")  # type: ignore[union-attr]
        self.assertTrue(stored.is_pinned)  # type: ignore[union-attr]

    async def test_sqlite_errors_become_storage_errors(self) -> None:
        with self.assertRaises(StorageError) as ctx:
            await self.store.add_conversation(Conversation(id="c1"))
        self.assertEqual(ctx.exception.code, "DB_ERROR")


class ClosedStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_operations_on_closed_store_raise_storage_error(self) -> None:
        store = SQLiteConversationStore(":memory:")
        with self.assertRaises(StorageError):
            await store.get_messages("c1")

    async def test_context_manager_opens_and_closes(self) -> None:
        async with SQLiteConversationStore(":memory:") as store:
            self.assertTrue(store.is_open)
            await store.add_conversation(Conversation(id="x"))
            self.assertIsNotNone(await store.get_conversation("x"))
        self.assertFalse(store.is_open)


if __name__ == "__main__":
    unittest.main()
