"""Incremental decoder for OpenAI-style Server-Sent-Events streams."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Callable

from sheetstream.types import StreamState

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE = "[DONE]"


class SSEDecoder:
    """Turns raw response bytes into content deltas.

    Bytes may be split anywhere, including inside a multi-byte UTF-8 code
    point or inside a JSON frame; incomplete input is held back until the
    next ``feed()``.  Frames that fail to parse are dropped without error.
    """

    def __init__(self, on_chunk: Callable[[str, str], None] | None = None) -> None:
        self.state = StreamState()
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._on_chunk = on_chunk
        self._finished = False

    @property
    def accumulated(self) -> str:
        return self.state.accumulated_text

    def feed(self, data: bytes) -> list[str]:
        """Consume a chunk of bytes.  Returns the deltas it completed."""
        if self._finished:
            raise RuntimeError("SSEDecoder.feed() called after finish()")
        return self._consume(self._utf8.decode(data), final=False)

    def finish(self) -> list[str]:
        """Flush buffered input at end of stream."""
        if self._finished:
            return []
        self._finished = True
        return self._consume(self._utf8.decode(b"", final=True), final=True)

    def _consume(self, text: str, final: bool) -> list[str]:
        self.state.decode_buffer += text
        lines = self.state.decode_buffer.split("\n")
        # The last piece may be an incomplete line
        self.state.decode_buffer = "" if final else lines.pop()

        deltas: list[str] = []
        for line in lines:
            delta = self._parse_line(line.rstrip("\r"))
            if not delta:
                continue
            self.state.accumulated_text += delta
            deltas.append(delta)
            if self._on_chunk is not None:
                self._on_chunk(delta, self.state.accumulated_text)
        return deltas

    def _parse_line(self, line: str) -> str | None:
        if not line.startswith(_DATA_PREFIX):
            return None
        payload = line[len(_DATA_PREFIX):]
        if payload.strip() == _DONE:
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            _logger.debug("Skipping unparseable SSE frame: %.80s", payload)
            return None
        try:
            content = data["choices"][0]["delta"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        if not isinstance(content, str) or not content:
            return None
        return content
