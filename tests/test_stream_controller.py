"""Tests for StreamController retry, cancellation and re-entrancy."""

from __future__ import annotations

import asyncio
import unittest

from streamchat.config import StreamConfig
from streamchat.exceptions import (
    AuthError,
    RateLimitError,
    TransportError,
)
from streamchat.managers.stream import StreamController, StreamOutcome
from streamchat.models import Message, ProviderKind, Sender
from streamchat.providers.base import ProviderAdapter


def _user_message(text: str = "Hi") -> Message:
    return Message(id="1", conversation_id="c1", sender=Sender.USER, text=text)


def _config(**overrides: object) -> StreamConfig:
    values: dict[str, object] = {
        "provider": ProviderKind.GEMINI,
        "model": "test-model",
        "max_retries": 2,
        "backoff_base_seconds": 0.5,
    }
    values.update(overrides)
    return StreamConfig(**values)  # type: ignore[arg-type]


class ScriptedAdapter(ProviderAdapter):
    """Fake adapter that replays one scripted step per call."""

    kind = ProviderKind.GEMINI

    def __init__(self, script: list[object]) -> None:
        self.script = script
        self.calls = 0

    async def stream(self, history, new_message, system_instruction, config, on_chunk, token):  # noqa: ANN001
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, BaseException):
            raise step
        for chunk in step:  # type: ignore[union-attr]
            token.raise_if_cancelled()
            on_chunk(chunk)
            await asyncio.sleep(0)


class BlockingAdapter(ProviderAdapter):
    """First call emits one chunk then blocks on a read that never completes."""

    kind = ProviderKind.GEMINI

    def __init__(self) -> None:
        self.calls = 0
        self.events: list[str] = []
        self.first_chunk = asyncio.Event()

    async def stream(self, history, new_message, system_instruction, config, on_chunk, token):  # noqa: ANN001
        self.calls += 1
        call = self.calls
        self.events.append(f"read-{call}")
        on_chunk(f"chunk-{call}")
        self.first_chunk.set()
        if call == 1:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.events.append("cancelled-1")
                raise


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class StreamControllerTests(unittest.IsolatedAsyncioTestCase):
    """Validate the controller's terminal outcomes."""

    async def test_completed_stream_forwards_chunks_and_accumulation(self) -> None:
        adapter = ScriptedAdapter([["Hel", "lo"]])
        controller = StreamController({ProviderKind.GEMINI: adapter})
        seen: list[tuple[str, str]] = []

        result = await controller.start(
            [], _user_message(), "2", _config(), lambda c, acc: seen.append((c, acc))
        )

        self.assertEqual(result.outcome, StreamOutcome.COMPLETED)
        self.assertEqual(result.text, "Hello")
        self.assertEqual(result.attempts, 1)
        self.assertEqual(seen, [("Hel", "Hel"), ("lo", "Hello")])
        self.assertFalse(controller.is_streaming)

    async def test_rate_limited_twice_then_success_backs_off(self) -> None:
        adapter = ScriptedAdapter(
            [
                RateLimitError("slow down"),
                RateLimitError("slow down"),
                ["Done"],
            ]
        )
        sleeper = SleepRecorder()
        controller = StreamController({ProviderKind.GEMINI: adapter}, sleep=sleeper)
        accumulations: list[str] = []

        with self.assertLogs("streamchat.managers.stream", level="WARNING") as logs:
            result = await controller.start(
                [], _user_message(), "2", _config(), lambda _c, acc: accumulations.append(acc)
            )

        self.assertEqual(sleeper.delays, [0.5, 1.0])
        self.assertEqual(result.delays, [0.5, 1.0])
        self.assertEqual(result.outcome, StreamOutcome.COMPLETED)
        self.assertEqual(result.text, "Done")
        self.assertEqual(result.attempts, 3)
        self.assertIsNone(result.error)
        self.assertEqual(accumulations, ["Done"])
        self.assertEqual(sum("stream.retry" in line for line in logs.output), 2)

    async def test_retries_are_bounded_then_error_text_is_appended(self) -> None:
        adapter = ScriptedAdapter([TransportError("Network down.")])
        controller = StreamController({ProviderKind.GEMINI: adapter}, sleep=SleepRecorder())
        seen: list[str] = []

        result = await controller.start(
            [], _user_message(), "2", _config(), lambda _c, acc: seen.append(acc)
        )

        self.assertEqual(adapter.calls, 3)
        self.assertEqual(result.outcome, StreamOutcome.FAILED)
        self.assertEqual(result.text, "Network down.")
        self.assertIsInstance(result.error, TransportError)
        self.assertEqual(seen, ["Network down."])

    async def test_terminal_error_is_not_retried_and_follows_partial_text(self) -> None:
        class PartialThenAuth(ProviderAdapter):
            kind = ProviderKind.GEMINI
            calls = 0

            async def stream(self, history, new_message, system_instruction, config, on_chunk, token):  # noqa: ANN001
                type(self).calls += 1
                on_chunk("partial")
                raise AuthError("Bad key.")

        controller = StreamController({ProviderKind.GEMINI: PartialThenAuth()})
        result = await controller.start([], _user_message(), "2", _config(), lambda *_: None)

        self.assertEqual(PartialThenAuth.calls, 1)
        self.assertEqual(result.outcome, StreamOutcome.FAILED)
        self.assertEqual(result.text, "partial\n\nBad key.")

    async def test_unexpected_exception_is_classified(self) -> None:
        adapter = ScriptedAdapter([RuntimeError("quota exceeded for project")])
        controller = StreamController({ProviderKind.GEMINI: adapter}, sleep=SleepRecorder())

        result = await controller.start([], _user_message(), "2", _config(), lambda *_: None)

        self.assertIsInstance(result.error, RateLimitError)
        self.assertEqual(adapter.calls, 3)

    async def test_missing_adapter_fails_with_config_error(self) -> None:
        controller = StreamController({})
        result = await controller.start([], _user_message(), "2", _config(), lambda *_: None)
        self.assertEqual(result.outcome, StreamOutcome.FAILED)
        self.assertEqual(result.error.code, "CONFIG_ERROR")  # type: ignore[union-attr]

    async def test_cancel_interrupts_blocked_read_without_error_text(self) -> None:
        adapter = BlockingAdapter()
        controller = StreamController({ProviderKind.GEMINI: adapter})
        seen: list[str] = []

        task = asyncio.create_task(
            controller.start([], _user_message(), "2", _config(), lambda _c, acc: seen.append(acc))
        )
        await adapter.first_chunk.wait()
        self.assertTrue(controller.is_streaming)
        controller.cancel()
        result = await task

        self.assertEqual(result.outcome, StreamOutcome.CANCELLED)
        self.assertEqual(result.text, "chunk-1")
        self.assertEqual(seen, ["chunk-1"])
        self.assertIn("cancelled-1", adapter.events)

    async def test_cancel_during_backoff_stops_retrying(self) -> None:
        adapter = ScriptedAdapter([TransportError("flaky")])
        controller: StreamController

        async def cancelling_sleep(_seconds: float) -> None:
            controller.cancel()

        controller = StreamController({ProviderKind.GEMINI: adapter}, sleep=cancelling_sleep)
        result = await controller.start([], _user_message(), "2", _config(), lambda *_: None)

        self.assertEqual(result.outcome, StreamOutcome.CANCELLED)
        self.assertEqual(adapter.calls, 1)
        self.assertEqual(result.text, "")

    async def test_new_start_cancels_prior_stream_before_first_read(self) -> None:
        adapter = BlockingAdapter()
        controller = StreamController({ProviderKind.GEMINI: adapter})

        first = asyncio.create_task(
            controller.start([], _user_message(), "2", _config(), lambda *_: None)
        )
        await adapter.first_chunk.wait()
        second = await controller.start([], _user_message(), "3", _config(), lambda *_: None)
        first_result = await first

        self.assertEqual(adapter.events, ["read-1", "cancelled-1", "read-2"])
        self.assertEqual(first_result.outcome, StreamOutcome.CANCELLED)
        self.assertEqual(second.outcome, StreamOutcome.COMPLETED)
        self.assertEqual(second.text, "chunk-2")

    async def test_outer_task_cancellation_propagates(self) -> None:
        adapter = BlockingAdapter()
        controller = StreamController({ProviderKind.GEMINI: adapter})
        task = asyncio.create_task(
            controller.start([], _user_message(), "2", _config(), lambda *_: None)
        )
        await adapter.first_chunk.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertFalse(controller.is_streaming)


if __name__ == "__main__":
    unittest.main()
