"""
Stream translation: decoded events in, uniform ChatCompletionChunks out.

ChatCompletionStream owns the HTTP response and its decoder and guarantees:
- exactly one chunk with ``done=True``, always the last one
- tool-call fragments are accumulated and only emitted, complete, on the
  terminal chunk
- the caller's AbortSignal is consulted before every read
- ``close()`` is idempotent and releases the connection

Usage:
    stream = await provider.generate_chat_completion(options)
    async for chunk in stream:
        print(chunk.content, end="")
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

import httpx

from provkit.errors import DecoderError, ProviderError, RequestCancelledError
from provkit.llm.helper import is_valid_json
from provkit.streaming.base import LineReader, StreamDecoder, StreamEvent
from provkit.types import ChatCompletionChunk, FinishReason, ToolCall, Usage
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

# Provider-specific stop reasons mapped to the uniform set
FINISH_REASON_MAP: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "eos": FinishReason.STOP,
    "finish_reason_stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "model_length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    "safety": FinishReason.CONTENT_FILTER,
    "recitation": FinishReason.CONTENT_FILTER,
    "blocklist": FinishReason.CONTENT_FILTER,
    "prohibited_content": FinishReason.CONTENT_FILTER,
    "spii": FinishReason.CONTENT_FILTER,
    "refusal": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(reason: str | None) -> str:
    if not reason:
        return FinishReason.NONE.value
    mapped = FINISH_REASON_MAP.get(reason.lower())
    # Unknown non-empty reasons still end the turn
    return (mapped or FinishReason.STOP).value


def new_chunk_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


@dataclass
class _PendingCall:
    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """
    Assembles tool calls from indexed deltas.

    A delta that carries an id for a slot opens the entry; later deltas for
    the same index append to ``arguments``. A name, once seen, is kept.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PendingCall] = {}

    def add_delta(
        self,
        index: int,
        id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        call = self._calls.get(index)
        if call is None:
            call = _PendingCall(index=index)
            self._calls[index] = call
        if id:
            call.id = id
        if name:
            call.name = name
        if arguments:
            call.arguments += arguments

    def add_complete(self, call: ToolCall) -> None:
        index = len(self._calls)
        self._calls[index] = _PendingCall(
            index=index, id=call.id, name=call.name, arguments=call.arguments
        )

    def __bool__(self) -> bool:
        return bool(self._calls)

    def finalize(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._calls):
            pending = self._calls[index]
            arguments = pending.arguments or "{}"
            if not is_valid_json(arguments):
                logger.warning(
                    "tool_call_arguments_invalid", tool=pending.name, index=index
                )
            calls.append(
                ToolCall(
                    id=pending.id or f"call_{uuid.uuid4().hex[:24]}",
                    name=pending.name,
                    arguments=arguments,
                    index=index,
                )
            )
        return calls


class StreamTranslator(ABC):
    """
    Per-dialect event translator.

    ``translate`` returns the chunks produced by one event (possibly none).
    A chunk with ``done=True`` ends the stream. ``finish`` is called at end
    of input when no terminal chunk was produced and returns the terminal
    chunk to emit.
    """

    def __init__(self, model: str = "") -> None:
        self.model = model
        self.chunk_id = new_chunk_id()
        self.tool_calls = ToolCallAccumulator()
        self.finish_reason = ""
        self.usage: Usage | None = None

    @abstractmethod
    def translate(self, event: StreamEvent) -> list[ChatCompletionChunk]: ...

    def finish(self) -> ChatCompletionChunk:
        return self.terminal_chunk()

    def chunk(self, **fields) -> ChatCompletionChunk:
        fields.setdefault("id", self.chunk_id)
        fields.setdefault("model", self.model)
        return ChatCompletionChunk(**fields)

    def terminal_chunk(self, content: str = "", **fields) -> ChatCompletionChunk:
        tool_calls = self.tool_calls.finalize()
        finish_reason = self.finish_reason
        if tool_calls and finish_reason in ("", FinishReason.STOP.value):
            finish_reason = FinishReason.TOOL_CALLS.value
        return self.chunk(
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason or FinishReason.STOP.value,
            usage=self.usage,
            done=True,
            **fields,
        )


class StreamState(str, Enum):
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


class ChatCompletionStream:
    """
    Async iterator over one streamed completion. Not safe for concurrent readers.
    """

    def __init__(
        self,
        response: httpx.Response,
        decoder: StreamDecoder,
        translator: StreamTranslator,
        *,
        provider: str = "",
        signal: AbortSignal | None = None,
        source: AsyncIterator[bytes] | None = None,
    ) -> None:
        self.response = response
        self.decoder = decoder
        self.translator = translator
        self.provider = provider
        self.signal = signal
        self.state = StreamState.OPEN
        self._reader = LineReader(source if source is not None else response.aiter_bytes())
        self._queue: list[ChatCompletionChunk] = []
        self._error: BaseException | None = None
        self._terminal_sent = False

    @property
    def model(self) -> str:
        return self.translator.model

    def __aiter__(self) -> "ChatCompletionStream":
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        chunk = await self.next()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def next(self) -> ChatCompletionChunk | None:
        """Next chunk, or None once the stream has ended."""
        if self._queue:
            return await self._pop()

        if self._error is not None:
            error, self._error = self._error, None
            raise error

        if self.state != StreamState.OPEN:
            return None

        if self.signal is not None and self.signal.is_aborted():
            await self._fail(
                RequestCancelledError(
                    self.signal.reason or "stream cancelled",
                    provider=self.provider,
                    operation="stream_read",
                )
            )
            return await self.next()

        try:
            await self._fill()
        except asyncio.CancelledError as e:
            if self.signal is None or not self.signal.is_aborted():
                await self.close()
                raise
            await self._fail(
                RequestCancelledError(
                    self.signal.reason or "stream cancelled",
                    provider=self.provider,
                    operation="stream_read",
                    cause=e,
                )
            )
        except ProviderError as e:
            await self._fail(e)
        except httpx.HTTPError as e:
            await self._fail(
                DecoderError(
                    f"stream read failed: {e}",
                    provider=self.provider,
                    operation="stream_read",
                    cause=e,
                )
            )
        return await self.next()

    async def collect(self) -> list[ChatCompletionChunk]:
        return [chunk async for chunk in self]

    async def close(self) -> None:
        if self.state == StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        self._queue.clear()
        await self.response.aclose()

    async def aclose(self) -> None:
        await self.close()

    async def __aenter__(self) -> "ChatCompletionStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── internals ────────────────────────────────────────────────────

    async def _fill(self) -> None:
        """Read events until at least one chunk is queued or input ends."""
        while not self._queue and self.state == StreamState.OPEN:
            read = self.decoder.decode(self._reader)
            event = await (self.signal.guard(read) if self.signal is not None else read)

            if event is None:
                self._enqueue([self.translator.finish()])
                break
            self._enqueue(self.translator.translate(event))

    def _enqueue(self, chunks: list[ChatCompletionChunk]) -> None:
        for chunk in chunks:
            if self._terminal_sent:
                break
            self._queue.append(chunk)
            if chunk.done:
                self._terminal_sent = True
                self.state = StreamState.DRAINING

    async def _pop(self) -> ChatCompletionChunk:
        chunk = self._queue.pop(0)
        if chunk.done:
            await self.close()
        return chunk

    async def _fail(self, error: BaseException) -> None:
        logger.warning("stream_failed", provider=self.provider, error=str(error))
        self._error = error
        self._queue.clear()
        await self.close()


__all__ = [
    "ChatCompletionStream",
    "StreamTranslator",
    "StreamState",
    "ToolCallAccumulator",
    "map_finish_reason",
    "new_chunk_id",
    "FINISH_REASON_MAP",
]
