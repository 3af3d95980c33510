"""
Decoder contract for byte streams coming off an HTTP response.

A decoder is stateful (SSE keeps the last event id and retry hint), so a
fresh instance is created for every stream.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator


class StreamFormat(str, Enum):
    SSE = "sse"
    NDJSON = "ndjson"
    EVENT_STREAM = "event-stream"
    UNKNOWN = "unknown"


@dataclass
class StreamEvent:
    """One decoded event. ``raw`` holds the bytes the event was built from."""

    type: str = "message"
    data: str = ""
    id: str = ""
    retry: int | None = None  # reconnection hint in milliseconds
    raw: bytes = b""


class LineReader:
    """
    Splits an async byte iterator into lines.

    Accepts ``\\n``, ``\\r\\n`` and bare ``\\r`` terminators; a final line
    without terminator is returned before end-of-stream.
    """

    def __init__(self, source: AsyncIterator[bytes]) -> None:
        self._source = source.__aiter__()
        self._buffer = b""
        self._eof = False
        self._pending_cr = False

    async def readline(self) -> bytes | None:
        """Next line without its terminator, or None at end of stream."""
        while True:
            line = self._take_line()
            if line is not None:
                return line
            if self._eof:
                if self._buffer:
                    line, self._buffer = self._buffer, b""
                    return line
                return None
            try:
                chunk = await self._source.__anext__()
            except StopAsyncIteration:
                self._eof = True
                continue
            if chunk:
                self._buffer += chunk

    def _take_line(self) -> bytes | None:
        if self._pending_cr and self._buffer:
            # \r\n split across two reads
            if self._buffer.startswith(b"\n"):
                self._buffer = self._buffer[1:]
            self._pending_cr = False

        lf = self._buffer.find(b"\n")
        cr = self._buffer.find(b"\r")
        if lf == -1 and cr == -1:
            return None

        if cr == -1 or (lf != -1 and lf < cr):
            line, self._buffer = self._buffer[:lf], self._buffer[lf + 1 :]
            return line

        line, rest = self._buffer[:cr], self._buffer[cr + 1 :]
        if rest.startswith(b"\n"):
            rest = rest[1:]
        elif not rest and not self._eof:
            self._pending_cr = True
        self._buffer = rest
        return line


class StreamDecoder(ABC):
    @abstractmethod
    async def decode(self, reader: LineReader) -> StreamEvent | None:
        """Next event from ``reader``, or None at end of stream."""

    @abstractmethod
    def format(self) -> StreamFormat:
        """Format tag this decoder handles."""

    async def events(self, reader: LineReader) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.decode(reader)
            if event is None:
                return
            yield event


__all__ = ["StreamFormat", "StreamEvent", "LineReader", "StreamDecoder"]
