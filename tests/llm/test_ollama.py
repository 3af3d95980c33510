import json

import httpx
import pytest

from provkit.config.settings import settings
from provkit.errors import (
    AuthenticationError,
    InvalidRequestError,
    NotFoundError,
    ProviderError,
    UnsupportedOperationError,
    ValidationError,
)
from provkit.llm.ollama import (
    CLOUD_MANAGEMENT_ERROR,
    OllamaNativeTranslator,
    OllamaProvider,
    build_model_info,
    infer_capabilities,
    infer_max_tokens,
)
from provkit.streaming.base import StreamEvent
from provkit.types import (
    ChatMessage,
    ContentPart,
    GenerateOptions,
    Tool,
    ToolCall,
    Usage,
)

MODEL = "llama3.1:8b"


def _line(content: str, **extra) -> dict:
    return {
        "model": MODEL,
        "created_at": "2024-01-01T00:00:00Z",
        "message": {"role": "assistant", "content": content},
        "done": False,
        **extra,
    }


def _done_line(**extra) -> dict:
    return _line("", done=True, done_reason="stop", prompt_eval_count=5, eval_count=10, **extra)


def _options(**kwargs) -> GenerateOptions:
    kwargs.setdefault("messages", [ChatMessage(role="user", content="Hi")])
    return GenerateOptions(**kwargs)


class TestNativeStream:
    @pytest.mark.asyncio
    async def test_content_lines_then_done(self, make_provider, recorder, ndjson_response):
        handler = recorder(
            ndjson_response(_line("Hello"), _line(" world"), _line("!"), _done_line())
        )
        provider = make_provider(OllamaProvider, handler)

        stream = await provider.generate_chat_completion(_options(model=MODEL))
        chunks = await stream.collect()

        assert len(chunks) == 4
        assert "".join(c.content for c in chunks) == "Hello world!"
        assert [c.done for c in chunks] == [False, False, False, True]
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].usage == Usage(prompt_tokens=5, completion_tokens=10, total_tokens=15)
        assert handler.requests[0].url.path == "/api/chat"
        assert handler.body()["stream"] is True

    @pytest.mark.asyncio
    async def test_tool_calls_arrive_on_terminal_chunk(
        self, make_provider, recorder, ndjson_response
    ):
        call_line = _line("")
        call_line["message"]["tool_calls"] = [
            {"function": {"name": "get_weather", "arguments": {"location": "SF"}}}
        ]
        provider = make_provider(
            OllamaProvider, recorder(ndjson_response(call_line, _done_line()))
        )

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert len(chunks) == 1
        terminal = chunks[0]
        assert terminal.done
        assert terminal.finish_reason == "tool_calls"
        assert terminal.tool_calls[0].name == "get_weather"
        assert terminal.tool_calls[0].arguments == '{"location":"SF"}'
        assert terminal.tool_calls[0].id.startswith("call_")

    @pytest.mark.asyncio
    async def test_missing_done_line_still_terminates(
        self, make_provider, recorder, ndjson_response
    ):
        provider = make_provider(OllamaProvider, recorder(ndjson_response(_line("partial"))))

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert [c.content for c in chunks] == ["partial", ""]
        assert chunks[-1].done
        assert chunks[-1].usage is None

    @pytest.mark.asyncio
    async def test_error_line_fails_the_stream(self, make_provider, recorder, ndjson_response):
        provider = make_provider(
            OllamaProvider,
            recorder(ndjson_response(_line("a"), {"error": "model crashed"})),
        )
        stream = await provider.generate_chat_completion(_options())

        first = await stream.next()
        assert first.content == "a"
        with pytest.raises(ProviderError, match="model crashed"):
            await stream.next()
        assert await stream.next() is None

    def test_translator_reasoning(self):
        translator = OllamaNativeTranslator(MODEL)
        line = _line("")
        line["message"]["thinking"] = "pondering"
        chunks = translator.translate(StreamEvent(type="message", data=json.dumps(line)))
        assert chunks[0].reasoning_content == "pondering"


class TestNativeRequest:
    def _provider(self, make_provider, **config):
        return make_provider(OllamaProvider, lambda r: httpx.Response(200), **config)

    def test_json_response_format(self, make_provider):
        body = self._provider(make_provider).build_request(
            _options(response_format="json"), MODEL
        )
        assert body["format"] == "json"

    def test_schema_response_format(self, make_provider):
        schema = '{"type":"object","properties":{"name":{"type":"string"}},"required":["name"]}'
        body = self._provider(make_provider).build_request(
            _options(response_format=schema), MODEL
        )
        assert body["format"] == {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        }

    def test_no_response_format(self, make_provider):
        body = self._provider(make_provider).build_request(_options(), MODEL)
        assert "format" not in body
        assert "options" not in body

    def test_model_options(self, make_provider):
        body = self._provider(make_provider).build_request(
            _options(temperature=0.3, max_tokens=64, stop=["\n\n"]), MODEL
        )
        assert body["options"] == {"temperature": 0.3, "num_predict": 64, "stop": ["\n\n"]}

    def test_images_and_tools(self, make_provider):
        message = ChatMessage(
            role="user", content="describe", parts=(ContentPart.from_base64("aGk="),)
        )
        body = self._provider(make_provider).build_request(
            _options(messages=[message], tools=[Tool(name="lookup")]), MODEL
        )
        assert body["messages"][0]["images"] == ["aGk="]
        assert body["tools"][0]["function"]["name"] == "lookup"

    def test_image_url_rejected(self, make_provider):
        message = ChatMessage(
            role="user", content="describe", parts=(ContentPart.from_url("https://x/y.png"),)
        )
        with pytest.raises(ValidationError):
            self._provider(make_provider).build_request(_options(messages=[message]), MODEL)

    def test_tool_history(self, make_provider):
        call = ToolCall(id="c1", name="lookup", arguments='{"q": 1}')
        messages = [
            ChatMessage(role="user", content="q"),
            ChatMessage(role="assistant", tool_calls=(call,)),
            ChatMessage(role="tool", content="42", tool_call_id="c1"),
        ]
        body = self._provider(make_provider).build_request(_options(messages=messages), MODEL)
        assert body["messages"][1]["tool_calls"][0]["function"]["name"] == "lookup"
        assert body["messages"][2]["tool_call_id"] == "c1"

    def test_openai_endpoint(self, make_provider):
        provider = self._provider(make_provider, provider_config={"stream_endpoint": "openai"})
        body = provider.build_request(_options(response_format="json"), MODEL)

        assert provider.chat_url(MODEL).endswith("/v1/chat/completions")
        assert body["response_format"] == {"type": "json_object"}
        assert body["stream_options"] == {"include_usage": True}


class TestOpenAIEndpointStream:
    @pytest.mark.asyncio
    async def test_sse_stream(self, make_provider, recorder, sse_response):
        handler = recorder(
            sse_response(
                {"id": "c1", "model": MODEL, "choices": [{"index": 0, "delta": {"content": "Hi"}}]},
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
                done=True,
            )
        )
        provider = make_provider(
            OllamaProvider, handler, provider_config={"stream_endpoint": "openai"}
        )

        chunks = await (await provider.generate_chat_completion(_options())).collect()

        assert [c.content for c in chunks] == ["Hi", ""]
        assert chunks[-1].done
        assert handler.requests[0].url.path == "/v1/chat/completions"


class TestCapabilities:
    @pytest.mark.parametrize(
        "model_id,expected",
        [
            ("codellama:13b", 16384),
            ("llama3.1:8b", 131072),
            ("mistral:7b", 32768),
            ("mixtral:8x7b", 32768),
            ("phi3:mini", 8192),
        ],
    )
    def test_max_tokens(self, model_id, expected):
        assert infer_max_tokens(model_id) == expected

    def test_llama_family_without_name_marker(self):
        assert infer_max_tokens("hermes3:8b") == 8192
        assert infer_max_tokens("hermes3:8b", family="llama") == 131072
        assert infer_max_tokens("codellama:13b", family="llama") == 16384

    def test_capabilities(self):
        assert infer_capabilities("nomic-embed-text") == ["embeddings"]
        assert infer_capabilities("llava:7b") == ["chat", "completion", "vision"]
        assert infer_capabilities("codellama:7b") == ["chat", "completion", "code"]

    def test_embedding_model_info(self):
        info = build_model_info("nomic-embed-text")
        assert not info.supports_streaming
        assert not info.supports_tool_calling
        assert info.max_tokens == 8192

    def test_tool_calling_families(self):
        assert build_model_info("qwen2.5:7b").supports_tool_calling
        assert not build_model_info("phi3:mini").supports_tool_calling


class TestCatalog:
    @pytest.mark.asyncio
    async def test_tags_listing(self, make_provider, recorder):
        tags = {
            "models": [
                {
                    "name": "llama3.1:8b",
                    "size": 4661224676,
                    "digest": "sha256:abc",
                    "details": {"family": "llama", "parameter_size": "8.0B"},
                },
                {"name": "hermes3:8b", "details": {"family": "llama"}},
            ]
        }
        provider = make_provider(OllamaProvider, recorder(httpx.Response(200, json=tags)))

        models = await provider.get_models()

        assert [m.id for m in models] == ["llama3.1:8b", "hermes3:8b"]
        assert models[0].description == "llama3.1:8b (8.0B parameters)"
        assert models[0].metadata["family"] == "llama"
        # Family alone identifies a llama derivative
        assert models[1].max_tokens == 131072

    @pytest.mark.asyncio
    async def test_static_fallback_when_unreachable(self, make_provider):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        provider = make_provider(OllamaProvider, handler)

        models = await provider.get_models()

        assert [m.id for m in models][:2] == ["llama3.1:8b", "llama3.1:70b"]

    @pytest.mark.asyncio
    async def test_running_models(self, make_provider, recorder):
        ps = {"models": [{"name": "llama3.1:8b", "model": "llama3.1:8b", "size_vram": 5}]}
        provider = make_provider(OllamaProvider, recorder(httpx.Response(200, json=ps)))

        running = await provider.get_running_models()

        assert running[0].name == "llama3.1:8b"
        assert running[0].size_vram == 5

    @pytest.mark.asyncio
    async def test_embeddings(self, make_provider, recorder):
        handler = recorder(httpx.Response(200, json={"embedding": [0.1, 0.2]}))
        provider = make_provider(OllamaProvider, handler)

        assert await provider.generate_embeddings("hello") == [0.1, 0.2]
        assert handler.body() == {"model": "nomic-embed-text", "prompt": "hello"}


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_cls",
        [(401, AuthenticationError), (404, NotFoundError), (400, InvalidRequestError)],
    )
    async def test_status_mapping(self, make_provider, recorder, status, error_cls):
        provider = make_provider(
            OllamaProvider, recorder(httpx.Response(status, text="nope"))
        )
        with pytest.raises(error_cls) as exc_info:
            await provider.generate_chat_completion(_options())
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_management_rejected_on_cloud(self, make_provider):
        calls = []
        provider = make_provider(
            OllamaProvider,
            lambda r: calls.append(r) or httpx.Response(200),
            base_url="https://ollama.com",
            api_key="k",
        )

        for operation in (
            provider.pull_model("llama3.1:8b"),
            provider.delete_model("llama3.1:8b"),
            provider.copy_model("a", "b"),
        ):
            with pytest.raises(UnsupportedOperationError, match=CLOUD_MANAGEMENT_ERROR):
                await operation
        assert calls == []

    def test_cloud_requires_credentials(self, make_provider):
        local = make_provider(OllamaProvider, lambda r: httpx.Response(200))
        cloud = make_provider(
            OllamaProvider, lambda r: httpx.Response(200), base_url="https://ollama.com"
        )
        assert local.is_authenticated()
        assert cloud.is_cloud()
        assert cloud.requires_credentials()


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_probe_is_cached(self, make_provider, recorder):
        handler = recorder(httpx.Response(200, json={"version": "0.5.1"}))
        provider = make_provider(OllamaProvider, handler)

        await provider.health_check()
        await provider.health_check()

        assert len(handler.requests) == 1
        assert handler.requests[0].url.path == "/api/version"

    @pytest.mark.asyncio
    async def test_falls_back_to_root(self, make_provider):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path == "/api/version":
                raise httpx.ConnectError("refused")
            return httpx.Response(200, text="Ollama is running")

        provider = make_provider(OllamaProvider, handler)
        await provider.test_connectivity()

        assert paths[-1] == "/"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_statuses(self, make_provider, recorder, status):
        provider = make_provider(
            OllamaProvider,
            recorder(httpx.Response(status)),
            base_url="https://ollama.com",
            api_key="k",
        )
        with pytest.raises(AuthenticationError):
            await provider.health_check()

    @pytest.mark.asyncio
    async def test_cloud_without_key(self, make_provider, monkeypatch):
        monkeypatch.setattr(settings, "ollama_api_key", None)
        provider = make_provider(
            OllamaProvider, lambda r: httpx.Response(200), base_url="https://ollama.com"
        )
        with pytest.raises(AuthenticationError, match="API key required"):
            await provider.health_check()


class TestModelManagement:
    @pytest.mark.asyncio
    async def test_pull_reports_progress(self, make_provider, recorder, ndjson_response):
        handler = recorder(
            ndjson_response(
                {"status": "pulling manifest"},
                {"status": "downloading", "digest": "sha256:1", "total": 100, "completed": 50},
                {"status": "success"},
            )
        )
        provider = make_provider(OllamaProvider, handler)
        seen = []

        await provider.pull_model("llama3.1:8b", progress=seen.append)

        assert [p.status for p in seen] == ["pulling manifest", "downloading", "success"]
        assert seen[1].percent == 50.0
        assert handler.requests[0].url.path == "/api/pull"

    @pytest.mark.asyncio
    async def test_pull_error_line(self, make_provider, recorder, ndjson_response):
        provider = make_provider(
            OllamaProvider, recorder(ndjson_response({"error": "pull model manifest: not found"}))
        )
        with pytest.raises(ProviderError, match="not found"):
            await provider.pull_model("missing")

    @pytest.mark.asyncio
    async def test_delete_invalidates_model_cache(self, make_provider, recorder):
        handler = recorder(
            httpx.Response(200, json={"models": [{"name": "a:1"}]}),
            httpx.Response(200),
            httpx.Response(200, json={"models": []}),
        )
        provider = make_provider(OllamaProvider, handler)

        assert [m.id for m in await provider.get_models()] == ["a:1"]
        await provider.delete_model("a:1")
        assert await provider.get_models() == []
        assert handler.requests[1].method == "DELETE"
