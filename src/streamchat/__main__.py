"""CLI entrypoint: stream one reply to stdout."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import sys
from typing import Any

from .config import ensure_config_dir, load_config
from .logging_utils import configure_logging
from .models import Message, ProviderKind
from .session import open_session


class UnknownConversationError(Exception):
    """Raised when ``--conversation`` names a conversation that does not exist."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamchat",
        description="StreamChat - stream a model reply into a local conversation",
    )
    parser.add_argument("prompt", nargs="?", help="Message to send")
    parser.add_argument(
        "--conversation",
        metavar="ID",
        help="Continue an existing conversation instead of starting a new one",
    )
    parser.add_argument(
        "--provider",
        choices=[kind.value for kind in ProviderKind],
        help="Override the configured provider for this request",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser


class _StdoutEcho:
    """Writes the growing final text of the streaming message to stdout."""

    def __init__(self) -> None:
        self._printed = ""

    def __call__(self, messages: list[Message]) -> None:
        streaming = next((m for m in reversed(messages) if m.is_loading), None)
        if streaming is None:
            return
        text = streaming.text
        if text.startswith(self._printed):
            sys.stdout.write(text[len(self._printed) :])
            sys.stdout.flush()
            self._printed = text

    def finish(self, reply: Message | None) -> None:
        if reply is not None and reply.text.startswith(self._printed):
            sys.stdout.write(reply.text[len(self._printed) :])
        sys.stdout.write("\n")
        sys.stdout.flush()


async def _run(config: dict[str, Any], args: argparse.Namespace) -> str | None:
    async with open_session(config, provider=args.provider) as manager:
        if args.conversation:
            await manager.load_conversation(args.conversation)
            if manager.conversation is None:
                raise UnknownConversationError(args.conversation)
        echo = _StdoutEcho()
        manager.on_messages_changed(echo)
        reply = await manager.send(args.prompt)
        echo.finish(reply)
        return manager.conversation_id


def main(argv: Sequence[str] | None = None) -> None:
    """Load configuration, handle CLI flags, and stream one reply."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("streamchat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"streamchat {version}")
        return

    if not args.prompt:
        parser.error("a prompt is required")

    ensure_config_dir()
    config = load_config()
    configure_logging(config["logging"])
    try:
        conversation_id = asyncio.run(_run(config, args))
    except UnknownConversationError as exc:
        print(f"streamchat: conversation {exc} not found", file=sys.stderr)
        raise SystemExit(1) from None
    if conversation_id:
        print(f"[conversation {conversation_id}]", file=sys.stderr)


if __name__ == "__main__":
    main()
