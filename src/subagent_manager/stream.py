"""Line framing for the newline-delimited JSON records a child process streams."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024


class JsonlFramer:
    """Accumulates byte chunks and yields complete, non-blank lines.

    Splitting happens on raw bytes so a multi-byte UTF-8 sequence broken
    across two chunks is decoded intact.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer.extend(chunk)
        lines: list[str] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if line.strip():
                lines.append(line)
        return lines

    def flush(self) -> list[str]:
        """Return the trailing unterminated line, if any."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        return [line] if line.strip() else []


@dataclass(frozen=True, slots=True)
class StreamRecord:
    raw: str
    data: dict[str, Any] | None

    @property
    def type(self) -> str | None:
        if self.data is None:
            return None
        value = self.data.get("type")
        return value if isinstance(value, str) else None


def parse_record(line: str) -> StreamRecord:
    """Decode one line; non-JSON or non-object lines keep ``data=None``."""
    try:
        decoded = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Ignoring non-JSON stream line (%d chars)", len(line))
        return StreamRecord(raw=line, data=None)
    return StreamRecord(raw=line, data=decoded if isinstance(decoded, dict) else None)


async def iter_records(
    reader: asyncio.StreamReader,
    *,
    on_chunk: Callable[[bytes], None] | None = None,
) -> AsyncIterator[StreamRecord]:
    """Pull structured records from ``reader`` until EOF."""
    framer = JsonlFramer()
    while True:
        chunk = await reader.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        if on_chunk is not None:
            on_chunk(chunk)
        for line in framer.feed(chunk):
            yield parse_record(line)
    for line in framer.flush():
        yield parse_record(line)
