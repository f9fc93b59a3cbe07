"""Tests for session composition and notification sinks."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import tempfile
import unittest

from streamchat.config import DEFAULT_CONFIG
from streamchat.models import ProviderKind
from streamchat.notifications import (
    LoggingNotificationSink,
    RecordingNotificationSink,
    Severity,
)
from streamchat.providers.base import ProviderAdapter
from streamchat.session import open_session


class EchoAdapter(ProviderAdapter):
    """Fake adapter that echoes the prompt back."""

    def __init__(self) -> None:
        self.configs = []

    async def stream(self, history, new_message, system_instruction, config, on_chunk, token):  # noqa: ANN001
        self.configs.append(config)
        on_chunk(f"echo: {new_message.text}")


class OpenSessionTests(unittest.IsolatedAsyncioTestCase):
    """Validate that a session persists across reopen."""

    async def asyncSetUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        base = Path(self._temp_dir.name)
        self.config = deepcopy(DEFAULT_CONFIG)
        self.config["storage"]["database_path"] = str(base / "db" / "chat.sqlite3")
        self.config["attachments"]["preview_directory"] = str(base / "previews")
        self.adapter = EchoAdapter()
        self.adapters = {kind: self.adapter for kind in ProviderKind}

    async def asyncTearDown(self) -> None:
        self._temp_dir.cleanup()

    async def test_conversation_survives_reopen(self) -> None:
        async with open_session(self.config, adapters=self.adapters) as manager:
            reply = await manager.send("ping")
            conversation_id = manager.conversation_id
        self.assertEqual(reply.text, "echo: ping")  # type: ignore[union-attr]

        async with open_session(self.config, adapters=self.adapters) as manager:
            messages = await manager.load_conversation(conversation_id)  # type: ignore[arg-type]
            self.assertEqual([m.text for m in messages], ["ping", "echo: ping"])
            self.assertEqual(manager.conversation.title, "ping")  # type: ignore[union-attr]

    async def test_provider_override_selects_stream_config(self) -> None:
        async with open_session(
            self.config, provider="ollama", adapters=self.adapters
        ) as manager:
            await manager.send("hi")
        self.assertIs(self.adapter.configs[0].provider, ProviderKind.OLLAMA)


class NotificationSinkTests(unittest.TestCase):
    def test_recording_sink_keeps_order(self) -> None:
        sink = RecordingNotificationSink()
        sink.notify("first")
        sink.notify("second", Severity.WARNING)
        self.assertEqual(
            sink.notifications,
            [("first", Severity.ERROR), ("second", Severity.WARNING)],
        )

    def test_logging_sink_logs_at_severity(self) -> None:
        with self.assertLogs("streamchat.notifications", level="WARNING") as logs:
            LoggingNotificationSink().notify("disk full", Severity.WARNING)
        self.assertEqual(logs.records[0].levelno, 30)
        self.assertEqual(logs.records[0].notification, "disk full")


if __name__ == "__main__":
    unittest.main()
