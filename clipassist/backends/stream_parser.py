"""Incremental decoders for the two streaming wire formats.

Ollama streams one JSON object per line. Gemini streams a JSON array whose
elements arrive in arbitrary chunk boundaries with no reliable delimiter, so
complete objects are isolated by tracking brace depth outside of strings.
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class NdjsonDecoder:
    """Line-buffered decoder for newline-delimited JSON streams."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        """Consume a text chunk and return every complete object in it.

        A trailing partial line is kept until the next chunk completes it.
        """
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [obj for obj in (self._parse(line) for line in lines) if obj is not None]

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        remainder, self._buffer = self._buffer, ""
        obj = self._parse(remainder)
        return [obj] if obj is not None else []

    def _parse(self, line: str) -> dict[str, Any] | None:
        line = line.strip()
        if not line:
            return None
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed stream line (%d chars): %s", len(line), e)
            return None
        if not isinstance(obj, dict):
            logger.warning("Skipping non-object stream line: %s", type(obj).__name__)
            return None
        return obj


class JsonObjectScanner:
    """Isolate top-level JSON objects from a growing character buffer.

    The scanner walks characters once, tracking brace depth and whether it
    is inside a string literal (with backslash escapes). Characters between
    top-level objects (array brackets, commas, whitespace) are discarded.
    An object that is still open when a chunk ends is kept in ``pending``
    and completed by later chunks.
    """

    def __init__(self) -> None:
        self._current: list[str] = []
        self._depth = 0
        self._in_string = False
        self._escape_next = False

    @property
    def pending(self) -> str:
        return "".join(self._current)

    @property
    def depth(self) -> int:
        return self._depth

    def reset(self) -> None:
        self._current = []
        self._depth = 0
        self._in_string = False
        self._escape_next = False

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        objects: list[dict[str, Any]] = []

        for char in chunk:
            if self._depth == 0:
                if char == "{":
                    self._depth = 1
                    self._current = [char]
                continue

            self._current.append(char)

            if self._escape_next:
                self._escape_next = False
                continue

            if self._in_string:
                if char == "\\":
                    self._escape_next = True
                elif char == '"':
                    self._in_string = False
                continue

            if char == '"':
                self._in_string = True
            elif char == "{":
                self._depth += 1
            elif char == "}":
                self._depth -= 1
                if self._depth == 0:
                    obj = self._parse("".join(self._current))
                    self._current = []
                    if obj is not None:
                        objects.append(obj)

        return objects

    def _parse(self, text: str) -> dict[str, Any] | None:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed stream object (%d chars): %s", len(text), e)
            return None
