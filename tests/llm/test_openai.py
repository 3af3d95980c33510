import asyncio
import json

import httpx
import pytest

from provkit.config.settings import settings
from provkit.errors import (
    AuthenticationError,
    DecoderError,
    RateLimitError,
    RequestCancelledError,
    ValidationError,
)
from provkit.llm.openai import OpenAIProvider, OpenAIStreamTranslator
from provkit.llm.stream import StreamState
from provkit.streaming.base import StreamEvent
from provkit.types import ChatMessage, GenerateOptions, Tool, ToolChoice
from provkit.utils.abort_signal import AbortSignal


def _options(**kwargs) -> GenerateOptions:
    kwargs.setdefault("messages", [ChatMessage(role="user", content="Hello")])
    return GenerateOptions(**kwargs)


def _delta(delta: dict, finish_reason=None, **extra) -> dict:
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        **extra,
    }


USAGE = {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20}}


class TestToolCallStream:
    @pytest.mark.asyncio
    async def test_argument_fragments_are_assembled(self, make_provider, recorder, sse_response):
        handler = recorder(
            sse_response(
                _delta(
                    {
                        "role": "assistant",
                        "tool_calls": [
                            {
                                "index": 0,
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "get_weather", "arguments": ""},
                            }
                        ],
                    }
                ),
                _delta({"tool_calls": [{"index": 0, "function": {"arguments": '{"loc'}}]}),
                _delta({"tool_calls": [{"index": 0, "function": {"arguments": 'ation":"SF"}'}}]}),
                _delta({}, finish_reason="tool_calls"),
                USAGE,
                done=True,
            )
        )
        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert len(chunks) == 1
        terminal = chunks[0]
        assert terminal.done
        assert terminal.finish_reason == "tool_calls"
        assert len(terminal.tool_calls) == 1
        call = terminal.tool_calls[0]
        assert (call.id, call.name, call.arguments) == ("call_1", "get_weather", '{"location":"SF"}')
        assert terminal.usage.total_tokens == 20

    def test_parallel_calls_keep_index_order(self):
        translator = OpenAIStreamTranslator("gpt-4o")
        for payload in (
            _delta({"tool_calls": [{"index": 1, "id": "b", "function": {"name": "second"}}]}),
            _delta({"tool_calls": [{"index": 0, "id": "a", "function": {"name": "first"}}]}),
            _delta({"tool_calls": [{"index": 1, "function": {"arguments": "{}"}}]}),
        ):
            assert translator.translate(StreamEvent(data=json.dumps(payload))) == []

        terminal = translator.translate(StreamEvent(data="[DONE]"))[0]

        assert [c.name for c in terminal.tool_calls] == ["first", "second"]
        assert terminal.tool_calls[0].arguments == "{}"


class TestTextStream:
    @pytest.mark.asyncio
    async def test_usage_lands_on_terminal_chunk(self, make_provider, recorder, sse_response):
        handler = recorder(
            sse_response(
                _delta({"role": "assistant", "content": ""}),
                _delta({"content": "Hello"}),
                _delta({"content": " there"}),
                _delta({}, finish_reason="stop"),
                USAGE,
                done=True,
            )
        )
        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        chunks = await (await provider.generate_chat_completion(_options(model="gpt-4o-mini"))).collect()

        assert [c.content for c in chunks] == ["Hello", " there", ""]
        assert [c.done for c in chunks].count(True) == 1
        assert chunks[-1].usage.prompt_tokens == 12
        assert chunks[-1].finish_reason == "stop"
        assert chunks[0].id == "chatcmpl-1"
        assert chunks[0].model == "gpt-4o"
        assert handler.requests[0].headers["authorization"] == "Bearer sk-test"
        assert handler.body()["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_eof_without_done_sentinel(self, make_provider, recorder, sse_response):
        provider = make_provider(
            OpenAIProvider,
            recorder(sse_response(_delta({"content": "hi"}), _delta({}, finish_reason="length"))),
            api_key="sk-test",
        )

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert chunks[-1].done
        assert chunks[-1].finish_reason == "length"
        assert chunks[-1].usage is None

    @pytest.mark.asyncio
    async def test_reasoning_deltas(self, make_provider, recorder, sse_response):
        provider = make_provider(
            OpenAIProvider,
            recorder(sse_response(_delta({"reasoning_content": "hmm"}), done=True)),
            api_key="sk-test",
        )

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert chunks[0].reasoning_content == "hmm"

    @pytest.mark.asyncio
    async def test_error_payload_fails_stream(self, make_provider, recorder, sse_response):
        provider = make_provider(
            OpenAIProvider,
            recorder(
                sse_response(
                    _delta({"content": "a"}),
                    {"error": {"message": "upstream overloaded", "type": "server_error"}},
                )
            ),
            api_key="sk-test",
        )
        stream = await provider.generate_chat_completion(_options())

        assert (await stream.next()).content == "a"
        with pytest.raises(DecoderError, match="upstream overloaded"):
            await stream.next()
        assert await stream.next() is None

    def test_invalid_json_is_skipped(self):
        translator = OpenAIStreamTranslator("gpt-4o")
        assert translator.translate(StreamEvent(data="{not json")) == []
        assert translator.translate(StreamEvent(data="")) == []


class TestStreamLifecycle:
    @pytest.mark.asyncio
    async def test_abort_before_read(self, make_provider, recorder, sse_response):
        provider = make_provider(
            OpenAIProvider,
            recorder(sse_response(_delta({"content": "a"}), done=True)),
            api_key="sk-test",
        )
        signal = AbortSignal()
        stream = await provider.generate_chat_completion(_options(), signal)

        signal.abort("user pressed stop")

        with pytest.raises(RequestCancelledError, match="user pressed stop"):
            await stream.next()
        assert stream.state == StreamState.CLOSED
        assert await stream.next() is None

    @pytest.mark.asyncio
    async def test_abort_while_waiting_for_data(self, make_provider):
        release = asyncio.Event()

        async def slow_body():
            yield b'data: {"choices":[{"index":0,"delta":{"content":"a"}}]}\n\n'
            await release.wait()
            yield b"data: [DONE]\n\n"

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=slow_body()
            )

        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")
        signal = AbortSignal()
        stream = await provider.generate_chat_completion(_options(), signal)
        assert (await stream.next()).content == "a"

        asyncio.get_running_loop().call_later(0.01, signal.abort, "timeout")
        with pytest.raises(RequestCancelledError):
            await stream.next()
        release.set()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_provider, recorder, sse_response):
        provider = make_provider(
            OpenAIProvider,
            recorder(sse_response(_delta({"content": "a"}), done=True)),
            api_key="sk-test",
        )
        stream = await provider.generate_chat_completion(_options())

        await stream.close()
        await stream.close()

        assert stream.state == StreamState.CLOSED
        assert await stream.next() is None

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, make_provider, recorder, sse_response):
        provider = make_provider(
            OpenAIProvider,
            recorder(sse_response(_delta({"content": "a"}), done=True)),
            api_key="sk-test",
        )
        async with await provider.generate_chat_completion(_options()) as stream:
            first = await stream.next()
        assert first.content == "a"
        assert stream.state == StreamState.CLOSED


class TestRequest:
    def _provider(self, make_provider):
        return make_provider(OpenAIProvider, lambda r: httpx.Response(200), api_key="sk-test")

    def test_body(self, make_provider):
        options = _options(
            temperature=0.5,
            max_tokens=100,
            stop=["END"],
            tools=[Tool(name="get_weather", description="Weather lookup")],
            tool_choice=ToolChoice.specific("get_weather"),
            response_format="json",
        )
        body = self._provider(make_provider).build_request(options, "gpt-4o")

        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert body["temperature"] == 0.5
        assert body["max_tokens"] == 100
        assert body["stop"] == ["END"]
        assert body["tools"][0]["function"]["name"] == "get_weather"
        assert body["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}
        assert body["response_format"] == {"type": "json_object"}

    def test_omits_unset_fields(self, make_provider):
        body = self._provider(make_provider).build_request(_options(), "gpt-4o")
        assert set(body) == {"model", "messages", "stream", "stream_options"}

    @pytest.mark.asyncio
    async def test_validation_runs_before_sending(self, make_provider):
        calls = []
        provider = make_provider(
            OpenAIProvider, lambda r: calls.append(r) or httpx.Response(200), api_key="sk-test"
        )
        with pytest.raises(ValidationError):
            await provider.generate_chat_completion(_options(temperature=3.0))
        with pytest.raises(ValidationError):
            await provider.generate_chat_completion(GenerateOptions())
        assert calls == []


class TestErrors:
    @pytest.mark.asyncio
    async def test_key_failover_on_auth_error(self, make_provider, sse_response):
        seen = []

        def handler(request):
            key = request.headers["authorization"]
            seen.append(key)
            if key == "Bearer sk-bad":
                return httpx.Response(401, json={"error": {"message": "invalid key"}})
            return sse_response(_delta({"content": "ok"}), done=True)

        provider = make_provider(OpenAIProvider, handler, api_keys=["sk-bad", "sk-good"])

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert chunks[0].content == "ok"
        assert seen == ["Bearer sk-bad", "Bearer sk-good"]

    @pytest.mark.asyncio
    async def test_rate_limit_headers_recorded_on_429(self, make_provider):
        def handler(request):
            return httpx.Response(
                429,
                headers={
                    "x-ratelimit-limit-requests": "100",
                    "x-ratelimit-remaining-requests": "0",
                    "x-ratelimit-reset-requests": "20s",
                    "retry-after": "7",
                },
                json={"error": {"message": "slow down"}},
            )

        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        with pytest.raises(RateLimitError) as exc_info:
            await provider.generate_chat_completion(_options(model="gpt-4o"))

        assert exc_info.value.retry_after == 7.0
        assert not provider.can_make_request("gpt-4o")
        assert provider.wait_time("gpt-4o") > 0

    @pytest.mark.asyncio
    async def test_exhausted_limits_block_next_send(self, make_provider, sse_response):
        calls = []

        def handler(request):
            calls.append(json.loads(request.content)["model"])
            response = sse_response(_delta({"content": "ok"}, finish_reason="stop"), done=True)
            response.headers.update(
                {
                    "x-ratelimit-limit-requests": "100",
                    "x-ratelimit-remaining-requests": "0",
                    "x-ratelimit-reset-requests": "60s",
                }
            )
            return response

        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        await (await provider.generate_chat_completion(_options(model="gpt-4o"))).collect()
        with pytest.raises(RateLimitError) as exc_info:
            await provider.generate_chat_completion(_options(model="gpt-4o"))

        assert calls == ["gpt-4o"]
        assert 0 < exc_info.value.retry_after <= 60
        # Limits are tracked per model
        await (await provider.generate_chat_completion(_options(model="gpt-4o-mini"))).collect()
        assert calls == ["gpt-4o", "gpt-4o-mini"]

    @pytest.mark.asyncio
    async def test_cleared_limits_allow_send(self, make_provider, sse_response):
        calls = []

        def handler(request):
            calls.append(request)
            response = sse_response(_delta({"content": "ok"}, finish_reason="stop"), done=True)
            response.headers.update(
                {
                    "x-ratelimit-limit-requests": "100",
                    "x-ratelimit-remaining-requests": "0",
                    "x-ratelimit-reset-requests": "60s",
                }
            )
            return response

        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")
        await (await provider.generate_chat_completion(_options(model="gpt-4o"))).collect()

        provider.rate_limits.clear("gpt-4o")
        await (await provider.generate_chat_completion(_options(model="gpt-4o"))).collect()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_no_credentials(self, make_provider, monkeypatch):
        monkeypatch.setattr(settings, "openai_api_key", None)
        provider = make_provider(OpenAIProvider, lambda r: httpx.Response(200))

        assert not provider.is_authenticated()
        with pytest.raises(AuthenticationError, match="no credentials"):
            await provider.generate_chat_completion(_options())


class TestCatalog:
    @pytest.mark.asyncio
    async def test_models_are_cached(self, make_provider, recorder):
        handler = recorder(
            httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}]})
        )
        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        first = await provider.get_models()
        second = await provider.get_models()

        assert [m.id for m in first] == ["gpt-4o", "gpt-4o-mini"]
        assert first == second
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_embeddings(self, make_provider, recorder):
        handler = recorder(httpx.Response(200, json={"data": [{"embedding": [0.5, 0.25]}]}))
        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        assert await provider.generate_embeddings("hi") == [0.5, 0.25]
        assert handler.body() == {"model": "text-embedding-3-small", "input": "hi"}

    @pytest.mark.asyncio
    async def test_health_check_cached_failure(self, make_provider, recorder):
        handler = recorder(httpx.Response(401, json={"error": {"message": "bad key"}}))
        provider = make_provider(OpenAIProvider, handler, api_key="sk-test")

        with pytest.raises(AuthenticationError):
            await provider.health_check()
        requests_after_first = len(handler.requests)
        with pytest.raises(AuthenticationError):
            await provider.health_check()

        assert len(handler.requests) == requests_after_first
