"""Split accumulated model output into a reasoning block and a final answer."""

from __future__ import annotations

from dataclasses import dataclass
import re

SUPPORTED_THINKING_TAGS: tuple[str, ...] = (
    "thinking",
    "thought",
    "scratchpad",
    "tool_code",
    "function_calls",
    "tool_calls",
)

_OPEN_TAG_PATTERN = re.compile(
    r"<(" + "|".join(re.escape(tag) for tag in SUPPORTED_THINKING_TAGS) + r")>"
)


@dataclass(frozen=True)
class ParsedStream:
    """Classification of the text received so far for one response."""

    thinking_content: str
    final_content: str
    is_thinking_block_complete: bool


def parse_streamed_text(text: str) -> ParsedStream:
    """Classify the *entire* accumulated text.

    Tags may arrive split across network chunks, so this always re-scans the
    whole accumulation rather than the latest chunk. The function is pure:
    calling it any number of times with the same text yields equal results.
    """
    open_match = _OPEN_TAG_PATTERN.search(text)
    if open_match is None:
        return ParsedStream("", text, False)

    tag = open_match.group(1)
    close_tag = f"</{tag}>"
    if close_tag not in text:
        return ParsedStream(text[open_match.end() :], "", False)

    block = re.search(
        rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", text, flags=re.DOTALL
    )
    if block is None:
        # Close tag precedes the open tag; keep everything as reasoning.
        return ParsedStream(text, "", False)

    return ParsedStream(block.group(1), text[block.end() :].strip(), True)
