"""Line framing for raw ``data:`` event streams.

Providers that answer with an undifferentiated body deliver events as lines of
the form ``data: {...}``. Network chunks do not respect those lines, so the
parser keeps a carry-over buffer and only parses a line once its terminating
newline has arrived (or the stream has ended).
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
_IGNORED_FIELDS = ("event:", "id:", "retry:")


class FrameParser:
    def __init__(self, *, prefix: str = DATA_PREFIX) -> None:
        self.prefix = prefix
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.skipped = 0

    def feed(self, chunk: str | bytes) -> list[dict[str, Any]]:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        if not chunk:
            return []
        self._buffer += chunk
        boundary = self._buffer.rfind("\n")
        if boundary == -1:
            return []
        complete = self._buffer[:boundary]
        self._buffer = self._buffer[boundary + 1 :]
        events: list[dict[str, Any]] = []
        for line in complete.split("\n"):
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not remainder.strip():
            return []
        events: list[dict[str, Any]] = []
        for line in remainder.split("\n"):
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, raw_line: str) -> dict[str, Any] | None:
        line = raw_line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith(self.prefix):
            line = line[len(self.prefix) :].strip()
        elif line.startswith(_IGNORED_FIELDS):
            return None
        if not line or line == DONE_SENTINEL:
            return None
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            self.skipped += 1
            logger.warning("frame.malformed error=%s line=%.200s", exc.msg, line)
            return None
        if not isinstance(payload, dict):
            self.skipped += 1
            logger.warning("frame.malformed error=not-an-object line=%.200s", line)
            return None
        return payload


async def aiter_frames(
    chunks: AsyncIterable[str | bytes],
    *,
    parser: FrameParser | None = None,
) -> AsyncIterator[dict[str, Any]]:
    frame_parser = parser or FrameParser()
    async for chunk in chunks:
        for event in frame_parser.feed(chunk):
            yield event
    for event in frame_parser.flush():
        yield event
