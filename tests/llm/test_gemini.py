import json

import httpx
import pytest

from provkit.errors import ContentFilterError
from provkit.llm.gemini import GeminiProvider, GeminiStreamTranslator
from provkit.streaming.base import StreamEvent
from provkit.types import (
    ChatMessage,
    ContentPart,
    GenerateOptions,
    OAuthCredentialSet,
    Tool,
    ToolCall,
    ToolChoice,
)


def _response(parts=None, finish_reason=None, usage=None) -> dict:
    candidate: dict = {"content": {"role": "model", "parts": parts or []}, "index": 0}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    payload: dict = {"candidates": [candidate], "modelVersion": "gemini-2.5-pro"}
    if usage:
        payload["usageMetadata"] = usage
    return payload


def _event(payload) -> StreamEvent:
    return StreamEvent(data=json.dumps(payload))


def _options(**kwargs) -> GenerateOptions:
    kwargs.setdefault("messages", [ChatMessage(role="user", content="Hello")])
    return GenerateOptions(**kwargs)


class TestStreamTranslator:
    def test_text_then_finish(self):
        translator = GeminiStreamTranslator("gemini-2.5-pro")

        first = translator.translate(_event(_response([{"text": "Hel"}])))
        last = translator.translate(
            _event(
                _response(
                    [{"text": "lo"}],
                    finish_reason="STOP",
                    usage={"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
                )
            )
        )

        assert [c.content for c in first] == ["Hel"]
        assert [c.content for c in last] == ["lo", ""]
        assert last[-1].done
        assert last[-1].finish_reason == "stop"
        assert last[-1].usage.total_tokens == 6

    def test_function_call_is_complete(self):
        translator = GeminiStreamTranslator()
        chunks = translator.translate(
            _event(
                _response(
                    [{"functionCall": {"name": "get_weather", "args": {"location": "SF"}}}],
                    finish_reason="STOP",
                )
            )
        )

        assert len(chunks) == 1
        terminal = chunks[0]
        assert terminal.finish_reason == "tool_calls"
        assert terminal.tool_calls[0].name == "get_weather"
        assert terminal.tool_calls[0].arguments == '{"location":"SF"}'

    def test_thought_parts_are_reasoning(self):
        translator = GeminiStreamTranslator()
        chunks = translator.translate(
            _event(_response([{"text": "considering", "thought": True}, {"text": "answer"}]))
        )
        assert chunks[0].reasoning_content == "considering"
        assert chunks[0].content == "answer"

    @pytest.mark.parametrize("reason,expected", [("MAX_TOKENS", "length"), ("SAFETY", "content_filter")])
    def test_finish_reasons(self, reason, expected):
        translator = GeminiStreamTranslator()
        chunks = translator.translate(_event(_response(finish_reason=reason)))
        assert chunks[-1].finish_reason == expected

    def test_blocked_prompt(self):
        translator = GeminiStreamTranslator()
        with pytest.raises(ContentFilterError, match="SAFETY"):
            translator.translate(_event({"promptFeedback": {"blockReason": "SAFETY"}}))


class TestRequest:
    def _provider(self, make_provider):
        return make_provider(GeminiProvider, lambda r: httpx.Response(200), api_key="g-key")

    def test_contents_and_system_instruction(self, make_provider):
        messages = [
            ChatMessage(role="system", content="Be brief."),
            ChatMessage(role="user", content="Hi"),
            ChatMessage(role="assistant", content="Hello!"),
        ]
        body = self._provider(make_provider).build_request(_options(messages=messages), "m")

        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert [c["role"] for c in body["contents"]] == ["user", "model"]
        assert "generationConfig" not in body

    def test_generation_config_and_schema(self, make_provider):
        options = _options(
            temperature=0.2,
            max_tokens=50,
            stop=["END"],
            response_format='{"type": "object", "properties": {"a": {"type": "string"}}}',
        )
        body = self._provider(make_provider).build_request(options, "m")

        generation = body["generationConfig"]
        assert generation["temperature"] == 0.2
        assert generation["maxOutputTokens"] == 50
        assert generation["stopSequences"] == ["END"]
        assert generation["responseMimeType"] == "application/json"
        assert generation["responseSchema"]["properties"] == {"a": {"type": "string"}}

    def test_function_history(self, make_provider):
        call = ToolCall(id="c1", name="get_weather", arguments='{"location": "SF"}')
        messages = [
            ChatMessage(role="user", content="Weather?"),
            ChatMessage(role="assistant", tool_calls=(call,)),
            ChatMessage(role="tool", content='{"temp": 20}', tool_call_id="c1"),
            ChatMessage(role="tool", content="plain text", tool_call_id="c1"),
        ]
        body = self._provider(make_provider).build_request(_options(messages=messages), "m")

        assert body["contents"][1]["parts"][0]["functionCall"] == {
            "name": "get_weather",
            "args": {"location": "SF"},
        }
        response = body["contents"][2]["parts"][0]["functionResponse"]
        assert response == {"name": "get_weather", "response": {"temp": 20}}
        wrapped = body["contents"][3]["parts"][0]["functionResponse"]["response"]
        assert wrapped == {"result": "plain text"}

    def test_inline_images(self, make_provider):
        message = ChatMessage(
            role="user", content="What?", parts=(ContentPart.from_base64("aGk=", "image/png"),)
        )
        body = self._provider(make_provider).build_request(_options(messages=[message]), "m")
        assert body["contents"][0]["parts"][1] == {
            "inlineData": {"mimeType": "image/png", "data": "aGk="}
        }

    def test_tools_and_tool_config(self, make_provider):
        body = self._provider(make_provider).build_request(
            _options(tools=[Tool(name="lookup")], tool_choice=ToolChoice.specific("lookup")), "m"
        )
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "lookup"
        assert body["toolConfig"] == {
            "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["lookup"]}
        }


class TestProvider:
    @pytest.mark.asyncio
    async def test_stream_endpoint_and_key_header(self, make_provider, recorder, sse_response):
        handler = recorder(
            sse_response(
                _response([{"text": "Hi"}]),
                _response(
                    finish_reason="STOP",
                    usage={"promptTokenCount": 1, "candidatesTokenCount": 1},
                ),
            )
        )
        provider = make_provider(GeminiProvider, handler, api_key="g-key")

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert [c.content for c in chunks] == ["Hi", ""]
        assert chunks[-1].usage.total_tokens == 2
        request = handler.requests[0]
        assert request.url.path == "/v1beta/models/gemini-2.5-pro:streamGenerateContent"
        assert request.url.params["alt"] == "sse"
        assert request.headers["x-goog-api-key"] == "g-key"

    @pytest.mark.asyncio
    async def test_oauth_uses_bearer(self, make_provider, recorder):
        handler = recorder(httpx.Response(200, json={"embedding": {"values": [1.0]}}))
        provider = make_provider(
            GeminiProvider,
            handler,
            oauth_credentials=[
                OAuthCredentialSet(
                    access_token="ya29", refresh_token="rt", expires_at="2999-01-01T00:00:00Z"
                )
            ],
        )

        assert await provider.generate_embeddings("hi") == [1.0]
        request = handler.requests[0]
        assert request.headers["authorization"] == "Bearer ya29"
        assert request.url.path.endswith("/models/text-embedding-004:embedContent")

    @pytest.mark.asyncio
    async def test_catalog_keeps_generation_models(self, make_provider, recorder):
        handler = recorder(
            httpx.Response(
                200,
                json={
                    "models": [
                        {
                            "name": "models/gemini-2.5-flash",
                            "displayName": "Gemini 2.5 Flash",
                            "inputTokenLimit": 1048576,
                            "supportedGenerationMethods": ["generateContent"],
                        },
                        {
                            "name": "models/text-embedding-004",
                            "supportedGenerationMethods": ["embedContent"],
                        },
                    ]
                },
            )
        )
        provider = make_provider(GeminiProvider, handler, api_key="g-key")

        models = await provider.get_models()

        assert [m.id for m in models] == ["gemini-2.5-flash"]
        assert models[0].max_tokens == 1048576
