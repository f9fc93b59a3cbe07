"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

from contextlib import asynccontextmanager, redirect_stderr, redirect_stdout
import io
import unittest
from unittest.mock import patch

from streamchat.__main__ import main
from streamchat.config import DEFAULT_CONFIG
from streamchat.models import Conversation, Message, Sender


class FakeManager:
    """Replays a two-step stream to registered listeners."""

    def __init__(self) -> None:
        self.listeners = []
        self.loaded: list[str] = []
        self.sent: list[str] = []
        self.conversation_id = "conv-1"
        self.conversation: Conversation | None = None
        self.known = {"abc"}

    def on_messages_changed(self, callback) -> None:  # noqa: ANN001
        self.listeners.append(callback)

    async def load_conversation(self, conversation_id: str) -> list[Message]:
        self.loaded.append(conversation_id)
        if conversation_id in self.known:
            self.conversation = Conversation(id=conversation_id)
        return []

    async def send(self, text: str) -> Message:
        self.sent.append(text)
        reply = Message(id="2", conversation_id="conv-1", sender=Sender.AI, is_loading=True)
        for partial in ("Hel", "Hello"):
            reply.text = partial
            for listener in self.listeners:
                listener([reply])
        reply.text = "Hello!"
        reply.is_loading = False
        return reply


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def _run_main(
        self, argv: list[str], manager: FakeManager | None = None
    ) -> tuple[FakeManager, dict, str, str]:
        if manager is None:
            manager = FakeManager()
        calls: dict = {}

        @asynccontextmanager
        async def fake_open_session(config, *, provider=None):  # noqa: ANN001
            calls["provider"] = provider
            yield manager

        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("streamchat.__main__.ensure_config_dir") as ensure_mock, patch(
            "streamchat.__main__.load_config", return_value=DEFAULT_CONFIG
        ), patch("streamchat.__main__.configure_logging") as logging_mock, patch(
            "streamchat.__main__.open_session", fake_open_session
        ), redirect_stdout(stdout), redirect_stderr(stderr):
            main(argv)
        ensure_mock.assert_called_once()
        logging_mock.assert_called_once_with(DEFAULT_CONFIG["logging"])
        return manager, calls, stdout.getvalue(), stderr.getvalue()

    def test_main_streams_reply_to_stdout(self) -> None:
        manager, calls, out, err = self._run_main(["Hi there", "--provider", "openai"])
        self.assertEqual(manager.sent, ["Hi there"])
        self.assertEqual(manager.loaded, [])
        self.assertEqual(calls["provider"], "openai")
        self.assertEqual(out, "Hello!\n")
        self.assertIn("[conversation conv-1]", err)

    def test_main_continues_existing_conversation(self) -> None:
        manager, _calls, _out, _err = self._run_main(["again", "--conversation", "abc"])
        self.assertEqual(manager.loaded, ["abc"])
        self.assertEqual(manager.sent, ["again"])

    def test_unknown_conversation_exits_without_sending(self) -> None:
        manager = FakeManager()
        with self.assertRaises(SystemExit) as ctx:
            self._run_main(["again", "--conversation", "missing"], manager)
        self.assertEqual(ctx.exception.code, 1)
        self.assertEqual(manager.loaded, ["missing"])
        self.assertEqual(manager.sent, [])

    def test_version_flag_skips_session(self) -> None:
        stdout = io.StringIO()
        with patch("streamchat.__main__.open_session") as session_mock, redirect_stdout(stdout):
            main(["--version"])
        session_mock.assert_not_called()
        self.assertTrue(stdout.getvalue().startswith("streamchat "))

    def test_missing_prompt_is_usage_error(self) -> None:
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as ctx:
            main([])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
