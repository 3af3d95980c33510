from typing import Any

from provkit.auth.oauth import OAuthEndpoints
from provkit.errors import (
    ContextLengthError,
    DecoderError,
    ProviderError,
    RateLimitError,
    ServerError,
)
from provkit.llm.base import BaseProvider
from provkit.llm.helper import parse_json_tool_args
from provkit.llm.stream import StreamTranslator, map_finish_reason
from provkit.streaming.base import StreamEvent
from provkit.types import (
    ChatCompletionChunk,
    ChatMessage,
    ContentPartType,
    GenerateOptions,
    ModelInfo,
    ToolChoice,
    ToolFormat,
    Usage,
)
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger
from provkit.utils.tojson import from_json

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
OAUTH_BETA = "oauth-2025-04-20"
DEFAULT_MAX_TOKENS = 4096

ANTHROPIC_OAUTH = OAuthEndpoints(
    token_url="https://console.anthropic.com/v1/oauth/token",
    client_id="9d1c250a-e61b-44d9-88ed-5944d1962f5e",
)

STATIC_MODELS = [
    ("claude-opus-4-5", "Claude Opus 4.5"),
    ("claude-sonnet-4-5", "Claude Sonnet 4.5"),
    ("claude-haiku-4-5", "Claude Haiku 4.5"),
    ("claude-opus-4-1", "Claude Opus 4.1"),
    ("claude-sonnet-4", "Claude Sonnet 4"),
]


class AnthropicStreamTranslator(StreamTranslator):
    """Translates Messages API stream events into chunks."""

    def __init__(self, model: str = "", provider: str = "anthropic") -> None:
        super().__init__(model)
        self.provider = provider
        self._input_tokens = 0
        self._output_tokens = 0
        self._blocks: dict[int, int] = {}  # content block index -> tool slot

    def translate(self, event: StreamEvent) -> list[ChatCompletionChunk]:
        if not event.data.strip():
            return []
        try:
            payload = from_json(event.data)
        except ValueError:
            logger.warning("stream_event_skipped", provider=self.provider, reason="invalid_json")
            return []
        if not isinstance(payload, dict):
            return []

        kind = payload.get("type") or event.type

        if kind == "message_start":
            message = payload.get("message") or {}
            if message.get("id"):
                self.chunk_id = message["id"]
            if message.get("model"):
                self.model = message["model"]
            self._update_usage(message.get("usage"))
            return []

        if kind == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                slot = len(self._blocks)
                self._blocks[payload.get("index", 0)] = slot
                self.tool_calls.add_delta(slot, id=block.get("id"), name=block.get("name"))
            elif block.get("type") == "text" and block.get("text"):
                return [self.chunk(content=block["text"])]
            return []

        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta" and delta.get("text"):
                return [self.chunk(content=delta["text"])]
            if delta_type == "thinking_delta" and delta.get("thinking"):
                return [self.chunk(reasoning_content=delta["thinking"])]
            if delta_type == "input_json_delta":
                slot = self._blocks.get(payload.get("index", 0))
                if slot is not None:
                    self.tool_calls.add_delta(slot, arguments=delta.get("partial_json"))
            return []

        if kind == "message_delta":
            delta = payload.get("delta") or {}
            if delta.get("stop_reason"):
                self.finish_reason = map_finish_reason(delta["stop_reason"])
            self._update_usage(payload.get("usage"))
            return []

        if kind == "message_stop":
            return [self.terminal_chunk()]

        if kind == "error":
            error = payload.get("error") or {}
            error_type = error.get("type", "")
            message = error.get("message") or "stream error"
            if error_type == "overloaded_error":
                raise ServerError(message, provider=self.provider, operation="stream_read")
            if error_type == "rate_limit_error":
                raise RateLimitError(message, provider=self.provider, operation="stream_read")
            raise DecoderError(
                f"stream error: {message}", provider=self.provider, operation="stream_read"
            )

        # ping, content_block_stop and unknown event types
        return []

    def _update_usage(self, usage: dict[str, Any] | None) -> None:
        if not usage:
            return
        prompt = sum(
            int(usage.get(key) or 0)
            for key in ("input_tokens", "cache_read_input_tokens", "cache_creation_input_tokens")
        )
        if prompt:
            self._input_tokens = prompt
        if usage.get("output_tokens") is not None:
            self._output_tokens = int(usage["output_tokens"])
        self.usage = Usage(
            prompt_tokens=self._input_tokens, completion_tokens=self._output_tokens
        )


class AnthropicProvider(BaseProvider):
    provider_type = "anthropic"
    default_base_url = "https://api.anthropic.com"
    default_model = "claude-sonnet-4-5"
    tool_format = ToolFormat.ANTHROPIC
    oauth_endpoints = ANTHROPIC_OAUTH

    @property
    def description(self) -> str:
        return "Anthropic Messages API"

    def default_headers(self) -> dict[str, str]:
        return {"anthropic-version": ANTHROPIC_VERSION}

    def auth_headers(self, credential: str | None) -> dict[str, str]:
        return {"x-api-key": credential} if credential else {}

    def oauth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "anthropic-beta": OAUTH_BETA}

    def chat_url(self, model: str) -> str:
        return f"{self.base_url}/v1/messages"

    def health_url(self) -> str:
        return f"{self.base_url}/v1/models"

    def create_translator(self, model: str) -> StreamTranslator:
        return AnthropicStreamTranslator(model, provider=self.name)

    # ── request conversion ───────────────────────────────────────────

    def convert_messages(
        self, messages: list[ChatMessage]
    ) -> tuple[str | None, list[dict[str, Any]]]:
        """Split out the system prompt and convert the rest to Messages API blocks."""
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.text())
            elif msg.role == "user":
                converted.append({"role": "user", "content": self._user_content(msg)})
            elif msg.role == "assistant":
                if msg.tool_calls or msg.reasoning_content:
                    blocks: list[dict[str, Any]] = []
                    if msg.reasoning_content:
                        blocks.append({"type": "thinking", "thinking": msg.reasoning_content})
                    if msg.text():
                        blocks.append({"type": "text", "text": msg.text()})
                    for call in msg.tool_calls:
                        blocks.append(
                            {
                                "type": "tool_use",
                                "id": call.id,
                                "name": call.name,
                                "input": parse_json_tool_args(call.arguments),
                            }
                        )
                    converted.append({"role": "assistant", "content": blocks})
                else:
                    converted.append({"role": "assistant", "content": msg.text()})
            elif msg.role == "tool":
                converted.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": msg.tool_call_id,
                                "content": msg.text(),
                            }
                        ],
                    }
                )

        system = "\n\n".join(p for p in system_parts if p) or None
        return system, converted

    @staticmethod
    def _user_content(msg: ChatMessage) -> str | list[dict[str, Any]]:
        if not any(p.type != ContentPartType.TEXT for p in msg.parts):
            return msg.text()
        blocks: list[dict[str, Any]] = []
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        for part in msg.parts:
            if part.type == ContentPartType.TEXT:
                if part.text and not msg.content:
                    blocks.append({"type": "text", "text": part.text})
            elif part.type == ContentPartType.IMAGE_BASE64:
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": part.media_type or "image/png",
                            "data": part.data,
                        },
                    }
                )
            else:
                blocks.append({"type": "image", "source": {"type": "url", "url": part.url}})
        return blocks

    @staticmethod
    def _tool_choice(choice: ToolChoice | None) -> dict[str, Any] | None:
        if choice is None:
            return None
        if choice.mode == "function":
            return {"type": "tool", "name": choice.name}
        if choice.mode == "required":
            return {"type": "any"}
        return {"type": choice.mode}

    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        system, messages = self.convert_messages(options.messages)
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if system:
            body["system"] = system
        if options.temperature:
            body["temperature"] = options.temperature
        if options.stop:
            body["stop_sequences"] = list(options.stop)
        if options.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in options.tools
            ]
            choice = self._tool_choice(options.tool_choice)
            if choice is not None:
                body["tool_choice"] = choice
        if options.response_format:
            logger.debug("response_format_ignored", provider=self.name)
        return body

    # ── catalog ──────────────────────────────────────────────────────

    async def fetch_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        response = await self.request(
            "GET", f"{self.base_url}/v1/models", operation="get_models", signal=signal
        )
        data = from_json(response.content) if response.content else {}
        return [
            ModelInfo(
                id=item["id"],
                name=item.get("display_name") or item["id"],
                provider=self.name,
                max_tokens=200000,
                supports_tool_calling=True,
                supports_vision=True,
            )
            for item in data.get("data") or []
            if item.get("id")
        ]

    def static_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=model_id,
                name=name,
                provider=self.name,
                max_tokens=200000,
                supports_tool_calling=True,
                supports_vision=True,
            )
            for model_id, name in STATIC_MODELS
        ]

    def map_error(self, response, body: str, operation: str) -> ProviderError:
        error = super().map_error(response, body, operation)
        if response.status_code == 400 and "prompt is too long" in error.message:
            return ContextLengthError(
                error.message,
                provider=self.name,
                operation=operation,
                status_code=response.status_code,
                request_id=error.request_id,
            )
        return error


__all__ = ["AnthropicProvider", "AnthropicStreamTranslator", "ANTHROPIC_VERSION"]
