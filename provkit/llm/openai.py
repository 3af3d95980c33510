from typing import Any

from provkit.errors import DecoderError, ProviderError
from provkit.llm.base import BaseProvider
from provkit.llm.helper import (
    normalize_usage,
    to_openai_message,
    to_openai_response_format,
    to_openai_tool_choice,
    to_openai_tools,
)
from provkit.llm.stream import StreamTranslator, map_finish_reason
from provkit.streaming.base import StreamEvent
from provkit.types import ChatCompletionChunk, GenerateOptions, ModelInfo
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger
from provkit.utils.nested import get_nested_value
from provkit.utils.tojson import from_json

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


class OpenAIStreamTranslator(StreamTranslator):
    """
    Translates OpenAI chat-completion SSE chunks.

    The terminal chunk is held back after ``finish_reason`` until the usage
    chunk (``stream_options.include_usage``), ``[DONE]`` or end of input,
    so usage always lands on the final chunk.
    """

    def __init__(self, model: str = "", provider: str = "openai") -> None:
        super().__init__(model)
        self.provider = provider
        self._finished = False

    def translate(self, event: StreamEvent) -> list[ChatCompletionChunk]:
        data = event.data.strip()
        if not data:
            return []
        if data == DONE_SENTINEL:
            return [self.terminal_chunk()]

        try:
            payload = from_json(data)
        except ValueError:
            logger.warning("stream_event_skipped", provider=self.provider, reason="invalid_json")
            return []
        if not isinstance(payload, dict):
            return []

        if "error" in payload:
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise DecoderError(
                f"stream error: {message}", provider=self.provider, operation="stream_read"
            )

        if payload.get("id"):
            self.chunk_id = payload["id"]
        if payload.get("model"):
            self.model = payload["model"]

        usage = normalize_usage(payload.get("usage"))
        if usage is not None:
            self.usage = usage

        chunks: list[ChatCompletionChunk] = []
        choice = get_nested_value(payload, "choices.0")
        if isinstance(choice, dict):
            delta = choice.get("delta") or {}
            content = delta.get("content") or ""
            reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""

            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                self.tool_calls.add_delta(
                    tc.get("index", 0),
                    id=tc.get("id"),
                    name=function.get("name"),
                    arguments=function.get("arguments"),
                )

            if content or reasoning:
                chunks.append(self.chunk(content=content, reasoning_content=reasoning))

            if choice.get("finish_reason"):
                self.finish_reason = map_finish_reason(choice["finish_reason"])
                self._finished = True

        # Usage either rides on the finish chunk or arrives in a trailing
        # choices-less chunk; both end the stream.
        if self._finished and self.usage is not None:
            chunks.append(self.terminal_chunk())
        return chunks


class OpenAIProvider(BaseProvider):
    provider_type = "openai"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o"
    include_usage = True

    @property
    def description(self) -> str:
        return "OpenAI chat completions API"

    def supports_responses_api(self) -> bool:
        return True

    def chat_url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def create_translator(self, model: str) -> StreamTranslator:
        return OpenAIStreamTranslator(model, provider=self.name)

    def convert_messages(self, options: GenerateOptions) -> list[dict[str, Any]]:
        return [to_openai_message(m) for m in options.messages]

    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": self.convert_messages(options),
            "stream": True,
        }
        if self.include_usage:
            body["stream_options"] = {"include_usage": True}
        if options.temperature:
            body["temperature"] = options.temperature
        if options.max_tokens:
            body["max_tokens"] = options.max_tokens
        if options.stop:
            body["stop"] = list(options.stop)
        if options.tools:
            body["tools"] = to_openai_tools(options.tools)
            choice = to_openai_tool_choice(options.tool_choice)
            if choice is not None:
                body["tool_choice"] = choice
        response_format = to_openai_response_format(options.response_format)
        if response_format is not None:
            body["response_format"] = response_format
        return body

    async def fetch_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        response = await self.request(
            "GET", f"{self.base_url}/models", operation="get_models", signal=signal
        )
        data = from_json(response.content) if response.content else {}
        return [self.model_info(item) for item in data.get("data") or [] if item.get("id")]

    def model_info(self, item: dict[str, Any]) -> ModelInfo:
        model_id = item["id"]
        return ModelInfo(
            id=model_id,
            name=item.get("name") or model_id,
            provider=self.name,
            description=item.get("description", ""),
            max_tokens=int(item.get("context_length") or item.get("context_window") or 0),
            supports_tool_calling=self.supports_tool_calling(),
        )

    async def generate_embeddings(
        self, text: str, model: str = "", signal: AbortSignal | None = None
    ) -> list[float]:
        model = model or "text-embedding-3-small"
        response = await self.request(
            "POST",
            f"{self.base_url}/embeddings",
            json={"model": model, "input": text},
            model=model,
            operation="generate_embeddings",
            signal=signal,
        )
        embedding = get_nested_value(from_json(response.content), "data.0.embedding")
        if not isinstance(embedding, list):
            raise ProviderError(
                "embedding missing from response",
                provider=self.name,
                operation="generate_embeddings",
            )
        return embedding


__all__ = ["OpenAIProvider", "OpenAIStreamTranslator", "DONE_SENTINEL"]
