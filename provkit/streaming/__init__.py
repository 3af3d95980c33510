from provkit.streaming.base import LineReader, StreamDecoder, StreamEvent, StreamFormat
from provkit.streaming.factory import (
    DecoderFactory,
    default_factory,
    detect_format,
    detect_from_bytes,
    detect_from_content_type,
)
from provkit.streaming.ndjson import NDJSONDecoder
from provkit.streaming.sse import SSEDecoder

__all__ = [
    "LineReader",
    "StreamDecoder",
    "StreamEvent",
    "StreamFormat",
    "DecoderFactory",
    "default_factory",
    "detect_format",
    "detect_from_bytes",
    "detect_from_content_type",
    "NDJSONDecoder",
    "SSEDecoder",
]
