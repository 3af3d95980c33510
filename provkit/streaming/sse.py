"""
Server-Sent Events decoder (WHATWG event-stream parsing).

- ``field:value`` or ``field: value``; one leading space is stripped
- lines starting with ``:`` are comments, lines without a colon are ignored
- ``data`` lines accumulate and are joined with ``\\n`` on dispatch
- an empty line dispatches; ``id`` and ``retry`` persist across events while
  the event type resets to ``message``
"""

from provkit.streaming.base import LineReader, StreamDecoder, StreamEvent, StreamFormat


class SSEDecoder(StreamDecoder):
    def __init__(self) -> None:
        self._event_type = ""
        self._data: list[str] = []
        self._raw: list[bytes] = []
        self._last_id = ""
        self._retry: int | None = None

    def format(self) -> StreamFormat:
        return StreamFormat.SSE

    @property
    def last_event_id(self) -> str:
        return self._last_id

    async def decode(self, reader: LineReader) -> StreamEvent | None:
        while True:
            raw_line = await reader.readline()
            if raw_line is None:
                if self._has_pending():
                    return self._dispatch()
                return None

            if raw_line == b"":
                if self._has_pending():
                    return self._dispatch()
                self._reset()
                continue

            self._raw.append(raw_line)
            self._process_line(raw_line.decode("utf-8", errors="replace"))

    def _process_line(self, line: str) -> None:
        if line.startswith(":"):
            return

        name, sep, value = line.partition(":")
        if not sep:
            return
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event_type = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\x00" not in value:
                self._last_id = value
        elif name == "retry":
            if value.isascii() and value.isdigit():
                self._retry = int(value)

    def _has_pending(self) -> bool:
        return bool(self._data) or bool(self._event_type)

    def _dispatch(self) -> StreamEvent:
        event = StreamEvent(
            type=self._event_type or "message",
            data="\n".join(self._data),
            id=self._last_id,
            retry=self._retry,
            raw=b"\n".join(self._raw),
        )
        self._reset()
        return event

    def _reset(self) -> None:
        self._event_type = ""
        self._data = []
        self._raw = []


__all__ = ["SSEDecoder"]
