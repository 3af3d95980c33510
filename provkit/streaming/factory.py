"""
Decoder registry and stream-format detection.

Usage:
    fmt = detect_format(response.headers.get("content-type"))
    decoder = default_factory.create(fmt)
"""

import threading
from typing import Callable

from provkit.errors import DecoderError
from provkit.streaming.base import StreamDecoder, StreamFormat
from provkit.streaming.ndjson import NDJSONDecoder
from provkit.streaming.sse import SSEDecoder
from provkit.utils.locks import ReadWriteLock
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

DecoderConstructor = Callable[[], StreamDecoder]

_SSE_PREFIXES = ("event:", "data:", "id:", "retry:", ":")


class DecoderFactory:
    """Maps format tags to decoder constructors. Safe for concurrent use."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._constructors: dict[str, DecoderConstructor] = {}
        self.register(StreamFormat.SSE, SSEDecoder)
        self.register(StreamFormat.NDJSON, NDJSONDecoder)
        # Generic JSON event streams are line-delimited
        self.register(StreamFormat.EVENT_STREAM, NDJSONDecoder)

    def register(self, fmt: StreamFormat | str, constructor: DecoderConstructor) -> None:
        key = _key(fmt)
        with self._lock.write():
            self._constructors[key] = constructor
        logger.debug("decoder_registered", format=key)

    def create(self, fmt: StreamFormat | str) -> StreamDecoder:
        """Return a fresh decoder for ``fmt``."""
        key = _key(fmt)
        with self._lock.read():
            constructor = self._constructors.get(key)
        if constructor is None:
            raise DecoderError(f"unsupported stream format: {key}", operation="create_decoder")
        return constructor()

    def supported_formats(self) -> list[str]:
        with self._lock.read():
            return sorted(self._constructors)


def _key(fmt: StreamFormat | str) -> str:
    return fmt.value if isinstance(fmt, StreamFormat) else str(fmt)


def detect_from_content_type(content_type: str | None) -> StreamFormat:
    if not content_type:
        return StreamFormat.UNKNOWN
    media_type = content_type.split(";", 1)[0].strip().lower()

    if media_type == "text/event-stream":
        return StreamFormat.SSE
    if media_type in ("application/x-ndjson", "application/jsonlines", "application/ndjson"):
        return StreamFormat.NDJSON
    if media_type == "application/stream+json":
        return StreamFormat.EVENT_STREAM
    if "event-stream" in media_type:
        return StreamFormat.SSE
    if "ndjson" in media_type or "jsonlines" in media_type:
        return StreamFormat.NDJSON
    return StreamFormat.UNKNOWN


def detect_from_bytes(sample: bytes) -> StreamFormat:
    if not sample:
        return StreamFormat.UNKNOWN
    text = sample.decode("utf-8", errors="ignore")
    lines = [line.strip() for line in text.splitlines() if line.strip()]

    if any(line.startswith(_SSE_PREFIXES) for line in lines):
        return StreamFormat.SSE
    if lines and any(_looks_like_json(line) for line in lines):
        return StreamFormat.NDJSON
    return StreamFormat.UNKNOWN


def _looks_like_json(line: str) -> bool:
    return (line.startswith("{") and "}" in line) or (line.startswith("[") and "]" in line)


def detect_format(content_type: str | None, sample: bytes = b"") -> StreamFormat:
    """Content-Type first, then a sniff of the first bytes."""
    fmt = detect_from_content_type(content_type)
    if fmt != StreamFormat.UNKNOWN:
        return fmt
    return detect_from_bytes(sample)


default_factory = DecoderFactory()


__all__ = [
    "DecoderFactory",
    "default_factory",
    "detect_format",
    "detect_from_content_type",
    "detect_from_bytes",
]
