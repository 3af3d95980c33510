import orjson

from provkit.errors import DecoderError
from provkit.streaming.base import LineReader, StreamDecoder, StreamEvent, StreamFormat


class NDJSONDecoder(StreamDecoder):
    """
    Newline-delimited JSON: one JSON value per line, blank lines skipped.

    With ``strict=False`` (the default) lines that fail to parse are skipped
    so a single corrupt line does not end the stream.
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict

    def format(self) -> StreamFormat:
        return StreamFormat.NDJSON

    async def decode(self, reader: LineReader) -> StreamEvent | None:
        while True:
            raw_line = await reader.readline()
            if raw_line is None:
                return None

            line = raw_line.strip()
            if not line:
                continue

            try:
                orjson.loads(line)
            except orjson.JSONDecodeError as e:
                if self.strict:
                    raise DecoderError(
                        f"invalid NDJSON line: {e}", operation="decode", cause=e
                    ) from e
                continue

            return StreamEvent(type="message", data=line.decode("utf-8"), raw=raw_line)


__all__ = ["NDJSONDecoder"]
