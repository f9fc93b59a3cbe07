"""Tests for stream ownership of the conversation state."""

from __future__ import annotations

import unittest

from streamchat.state import ConversationState, StateManager


class StateManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_begin_and_end_stream(self) -> None:
        manager = StateManager()
        self.assertTrue(await manager.is_idle())

        await manager.begin_stream("ai-1")
        self.assertIs(manager.state, ConversationState.STREAMING)
        self.assertEqual(manager.streaming_message_id, "ai-1")
        self.assertFalse(await manager.is_idle())

        self.assertTrue(await manager.end_stream("ai-1"))
        self.assertIs(manager.state, ConversationState.IDLE)
        self.assertIsNone(manager.streaming_message_id)

    async def test_superseded_stream_cannot_clear_newer_one(self) -> None:
        manager = StateManager()
        await manager.begin_stream("old")
        await manager.begin_stream("new")

        self.assertFalse(await manager.end_stream("old"))
        self.assertIs(manager.state, ConversationState.STREAMING)
        self.assertEqual(manager.streaming_message_id, "new")

        self.assertTrue(await manager.end_stream("new"))
        self.assertTrue(await manager.is_idle())

    async def test_end_without_stream_is_rejected(self) -> None:
        self.assertFalse(await StateManager().end_stream("ai-1"))


if __name__ == "__main__":
    unittest.main()
