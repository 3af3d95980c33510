import json

import httpx
import pytest

from provkit.errors import ContextLengthError, RateLimitError, ServerError
from provkit.llm.anthropic import (
    ANTHROPIC_VERSION,
    AnthropicProvider,
    AnthropicStreamTranslator,
)
from provkit.streaming.base import StreamEvent
from provkit.types import (
    ChatMessage,
    ContentPart,
    GenerateOptions,
    OAuthCredentialSet,
    Tool,
    ToolCall,
    ToolChoice,
    ToolFormat,
)


def _event(kind: str, **payload) -> StreamEvent:
    return StreamEvent(type=kind, data=json.dumps({"type": kind, **payload}))


def _sse_events(*events: StreamEvent) -> bytes:
    return "".join(f"event: {e.type}\ndata: {e.data}\n\n" for e in events).encode()


MESSAGE_START = _event(
    "message_start",
    message={
        "id": "msg_01",
        "model": "claude-sonnet-4-5",
        "usage": {"input_tokens": 25, "cache_read_input_tokens": 5, "output_tokens": 1},
    },
)


def _options(**kwargs) -> GenerateOptions:
    kwargs.setdefault("messages", [ChatMessage(role="user", content="Hello")])
    return GenerateOptions(**kwargs)


class TestStreamTranslator:
    def test_text_stream(self):
        translator = AnthropicStreamTranslator()
        events = [
            MESSAGE_START,
            _event("content_block_start", index=0, content_block={"type": "text", "text": ""}),
            _event("ping"),
            _event("content_block_delta", index=0, delta={"type": "text_delta", "text": "Hel"}),
            _event("content_block_delta", index=0, delta={"type": "text_delta", "text": "lo"}),
            _event("content_block_stop", index=0),
            _event(
                "message_delta",
                delta={"stop_reason": "end_turn"},
                usage={"output_tokens": 12},
            ),
            _event("message_stop"),
        ]

        chunks = [c for e in events for c in translator.translate(e)]

        assert [c.content for c in chunks] == ["Hel", "lo", ""]
        terminal = chunks[-1]
        assert terminal.done
        assert terminal.id == "msg_01"
        assert terminal.model == "claude-sonnet-4-5"
        assert terminal.finish_reason == "stop"
        assert terminal.usage.prompt_tokens == 30
        assert terminal.usage.completion_tokens == 12
        assert terminal.usage.total_tokens == 42

    def test_tool_use_blocks(self):
        translator = AnthropicStreamTranslator()
        events = [
            MESSAGE_START,
            _event("content_block_start", index=0, content_block={"type": "text", "text": ""}),
            _event(
                "content_block_delta", index=0, delta={"type": "text_delta", "text": "Checking."}
            ),
            _event(
                "content_block_start",
                index=1,
                content_block={"type": "tool_use", "id": "toolu_1", "name": "get_weather"},
            ),
            _event(
                "content_block_delta",
                index=1,
                delta={"type": "input_json_delta", "partial_json": '{"location":'},
            ),
            _event(
                "content_block_delta",
                index=1,
                delta={"type": "input_json_delta", "partial_json": ' "SF"}'},
            ),
            _event("message_delta", delta={"stop_reason": "tool_use"}, usage={"output_tokens": 3}),
            _event("message_stop"),
        ]

        chunks = [c for e in events for c in translator.translate(e)]

        assert chunks[0].content == "Checking."
        terminal = chunks[-1]
        assert terminal.finish_reason == "tool_calls"
        assert len(terminal.tool_calls) == 1
        assert terminal.tool_calls[0].id == "toolu_1"
        assert json.loads(terminal.tool_calls[0].arguments) == {"location": "SF"}

    def test_thinking_deltas(self):
        translator = AnthropicStreamTranslator()
        chunks = translator.translate(
            _event("content_block_delta", index=0, delta={"type": "thinking_delta", "thinking": "hm"})
        )
        assert chunks[0].reasoning_content == "hm"

    @pytest.mark.parametrize(
        "error_type,error_cls",
        [("overloaded_error", ServerError), ("rate_limit_error", RateLimitError)],
    )
    def test_error_events(self, error_type, error_cls):
        translator = AnthropicStreamTranslator()
        with pytest.raises(error_cls, match="busy"):
            translator.translate(_event("error", error={"type": error_type, "message": "busy"}))


class TestRequest:
    def _provider(self, make_provider, **config):
        config.setdefault("api_key", "sk-ant")
        return make_provider(AnthropicProvider, lambda r: httpx.Response(200), **config)

    def test_system_prompts_are_joined(self, make_provider):
        messages = [
            ChatMessage(role="system", content="Be terse."),
            ChatMessage(role="system", content="Answer in English."),
            ChatMessage(role="user", content="Hi"),
        ]
        body = self._provider(make_provider).build_request(_options(messages=messages), "m")

        assert body["system"] == "Be terse.\n\nAnswer in English."
        assert body["messages"] == [{"role": "user", "content": "Hi"}]
        assert body["max_tokens"] == 4096

    def test_tool_round_trip_history(self, make_provider):
        call = ToolCall(id="toolu_1", name="get_weather", arguments='{"location": "SF"}')
        messages = [
            ChatMessage(role="user", content="Weather?"),
            ChatMessage(role="assistant", content="Let me check.", tool_calls=(call,)),
            ChatMessage(role="tool", content="Sunny", tool_call_id="toolu_1"),
        ]
        body = self._provider(make_provider).build_request(_options(messages=messages), "m")

        assistant = body["messages"][1]["content"]
        assert assistant[0] == {"type": "text", "text": "Let me check."}
        assert assistant[1]["input"] == {"location": "SF"}
        assert body["messages"][2]["content"][0] == {
            "type": "tool_result",
            "tool_use_id": "toolu_1",
            "content": "Sunny",
        }

    def test_images(self, make_provider):
        message = ChatMessage(
            role="user",
            content="What is this?",
            parts=(ContentPart.from_base64("aGk=", "image/jpeg"),),
        )
        body = self._provider(make_provider).build_request(_options(messages=[message]), "m")

        blocks = body["messages"][0]["content"]
        assert blocks[1]["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "aGk="}

    @pytest.mark.parametrize(
        "choice,expected",
        [
            (ToolChoice(), {"type": "auto"}),
            (ToolChoice(mode="required"), {"type": "any"}),
            (ToolChoice.specific("lookup"), {"type": "tool", "name": "lookup"}),
        ],
    )
    def test_tools(self, make_provider, choice, expected):
        body = self._provider(make_provider).build_request(
            _options(tools=[Tool(name="lookup")], tool_choice=choice), "m"
        )
        assert body["tools"][0]["input_schema"] == {"type": "object", "properties": {}}
        assert body["tool_choice"] == expected

    def test_response_format_is_ignored(self, make_provider):
        body = self._provider(make_provider).build_request(_options(response_format="json"), "m")
        assert "response_format" not in body
        assert self._provider(make_provider).get_tool_format() == ToolFormat.ANTHROPIC


class TestProvider:
    @pytest.mark.asyncio
    async def test_streams_with_api_key_headers(self, make_provider, recorder):
        handler = recorder(
            httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=_sse_events(
                    MESSAGE_START,
                    _event(
                        "content_block_delta", index=0, delta={"type": "text_delta", "text": "Hi"}
                    ),
                    _event("message_delta", delta={"stop_reason": "end_turn"}),
                    _event("message_stop"),
                ),
            )
        )
        provider = make_provider(AnthropicProvider, handler, api_key="sk-ant")

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert [c.content for c in chunks] == ["Hi", ""]
        request = handler.requests[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == ANTHROPIC_VERSION

    @pytest.mark.asyncio
    async def test_oauth_headers(self, make_provider, recorder):
        handler = recorder(httpx.Response(200, json={"data": []}))
        provider = make_provider(
            AnthropicProvider,
            handler,
            oauth_credentials=[
                OAuthCredentialSet(
                    access_token="at", refresh_token="rt", expires_at="2999-01-01T00:00:00Z"
                )
            ],
        )

        await provider.health_check()

        request = handler.requests[0]
        assert request.url.path == "/v1/models"
        assert request.headers["authorization"] == "Bearer at"
        assert "oauth" in request.headers["anthropic-beta"]

    @pytest.mark.asyncio
    async def test_prompt_too_long(self, make_provider, recorder):
        handler = recorder(
            httpx.Response(
                400,
                json={
                    "type": "error",
                    "error": {
                        "type": "invalid_request_error",
                        "message": "prompt is too long: 210000 tokens > 200000 maximum",
                    },
                },
            )
        )
        provider = make_provider(AnthropicProvider, handler, api_key="sk-ant")

        with pytest.raises(ContextLengthError):
            await provider.generate_chat_completion(_options())

    @pytest.mark.asyncio
    async def test_catalog_falls_back_to_static_list(self, make_provider, recorder):
        handler = recorder(httpx.Response(500, text="down"))
        provider = make_provider(AnthropicProvider, handler, api_key="sk-ant")

        models = await provider.get_models()

        assert models[0].id == "claude-opus-4-5"
        assert all(m.supports_vision for m in models)
