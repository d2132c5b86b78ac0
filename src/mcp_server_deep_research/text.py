"""Text helpers for model output: think-tag splitting, JSON extraction, markdown utilities."""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class ThinkTagStreamProcessor:
    """Split a streamed completion into visible content and ``<think>`` reasoning.

    Tags may be split across chunks, so partial tag prefixes are held back until
    the next chunk decides what they are.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_think = False

    def process_chunk(
        self,
        chunk: str,
        on_content: Callable[[str], None],
        on_reasoning: Callable[[str], None] | None = None,
    ) -> None:
        self._buffer += chunk
        while self._buffer:
            tag = THINK_CLOSE if self._in_think else THINK_OPEN
            index = self._buffer.find(tag)
            if index >= 0:
                self._flush(self._buffer[:index], on_content, on_reasoning)
                self._buffer = self._buffer[index + len(tag) :]
                self._in_think = not self._in_think
                continue

            keep = _partial_suffix(self._buffer, tag)
            self._flush(self._buffer[: len(self._buffer) - keep], on_content, on_reasoning)
            self._buffer = self._buffer[len(self._buffer) - keep :]
            break

    def end(self, on_content: Callable[[str], None], on_reasoning: Callable[[str], None] | None = None) -> None:
        """Flush whatever is still held back."""
        self._flush(self._buffer, on_content, on_reasoning)
        self._buffer = ""

    def _flush(self, text: str, on_content: Callable[[str], None], on_reasoning: Callable[[str], None] | None) -> None:
        if not text:
            return
        if self._in_think:
            if on_reasoning is not None:
                on_reasoning(text)
        else:
            on_content(text)


def _partial_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)


def strip_think_tags(text: str) -> str:
    return _THINK_BLOCK.sub("", text).strip()


def remove_json_markdown(text: str) -> str:
    """Strip a surrounding markdown code fence from a JSON answer."""
    text = strip_think_tags(text).strip()
    if "```json" in text:
        return text.split("```json", 1)[1].split("```", 1)[0].strip()
    if text.startswith("```"):
        return text.split("```", 2)[1].strip()
    return text


def parse_json_list(text: str) -> list[Any]:
    """Parse a JSON array from model output, tolerating code fences and surrounding prose.

    Raises:
        ValueError: If no JSON array can be found.
    """
    content = remove_json_markdown(text)
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        start, end = content.find("["), content.rfind("]")
        if start < 0 or end <= start:
            raise ValueError(f"No JSON array in model output: {content[:200]}") from None
        try:
            data = json.loads(content[start : end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON array in model output: {e}") from e
    if isinstance(data, dict):
        # Some models wrap the list: {"queries": [...]}
        lists = [value for value in data.values() if isinstance(value, list)]
        if lists:
            data = lists[0]
    if not isinstance(data, list):
        raise ValueError("Model output is not a JSON array")
    return data


def extract_title(report: str) -> str:
    """First non-empty line of a markdown report without heading or emphasis markers."""
    for line in report.splitlines():
        title = line.strip().lstrip("#").replace("*", "").strip()
        if title:
            return title
    return ""


def parse_sections(report: str) -> dict[str, str]:
    """Split a markdown report into ``## `` sections keyed by heading text."""
    sections: dict[str, str] = {}
    current: str | None = None
    lines: list[str] = []
    for line in report.splitlines():
        if line.startswith("## "):
            if current is not None:
                sections[current] = "\n".join(lines).strip()
            current = line[3:].strip()
            lines = []
        elif current is not None:
            lines.append(line)
    if current is not None:
        sections[current] = "\n".join(lines).strip()
    return sections
