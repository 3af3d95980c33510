"""
Google Gemini (Generative Language API) adapter.

Streams ``:streamGenerateContent?alt=sse``; every SSE data payload is a full
GenerateContentResponse. Function calls arrive whole, never as fragments.
"""

import uuid
from typing import Any

from provkit.auth.oauth import OAuthEndpoints
from provkit.config.settings import settings
from provkit.errors import ContentFilterError, ProviderError
from provkit.llm.base import BaseProvider
from provkit.llm.helper import (
    normalize_usage,
    parse_json_tool_args,
    parse_response_format,
    serialize_tool_args,
)
from provkit.llm.stream import StreamTranslator, map_finish_reason
from provkit.streaming.base import StreamEvent
from provkit.types import (
    ChatCompletionChunk,
    ChatMessage,
    ContentPartType,
    GenerateOptions,
    ModelInfo,
    ToolCall,
    ToolChoice,
    ToolFormat,
)
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger
from provkit.utils.nested import get_nested_value
from provkit.utils.tojson import from_json

logger = get_logger(__name__)

GEMINI_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GEMINI_TOKEN_URL = "https://oauth2.googleapis.com/token"
GEMINI_SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"

STATIC_MODELS = [
    ("gemini-2.5-pro", "Gemini 2.5 Pro", 1048576),
    ("gemini-2.5-flash", "Gemini 2.5 Flash", 1048576),
    ("gemini-2.5-flash-lite", "Gemini 2.5 Flash-Lite", 1048576),
    ("gemini-2.0-flash", "Gemini 2.0 Flash", 1048576),
]


def gemini_oauth_endpoints() -> OAuthEndpoints:
    secret = settings.gemini_oauth_client_secret
    return OAuthEndpoints(
        token_url=GEMINI_TOKEN_URL,
        auth_url=GEMINI_AUTH_URL,
        client_id=settings.gemini_oauth_client_id or "",
        client_secret=secret.get_secret_value() if secret else "",
        scopes=list(GEMINI_SCOPES),
    )


class GeminiStreamTranslator(StreamTranslator):
    def __init__(self, model: str = "", provider: str = "gemini") -> None:
        super().__init__(model)
        self.provider = provider

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

        if payload.get("responseId"):
            self.chunk_id = payload["responseId"]
        if payload.get("modelVersion"):
            self.model = payload["modelVersion"]
        usage = normalize_usage(payload.get("usageMetadata"))
        if usage is not None:
            self.usage = usage

        block_reason = get_nested_value(payload, "promptFeedback.blockReason")
        if block_reason:
            raise ContentFilterError(
                f"prompt blocked: {block_reason}", provider=self.provider, operation="stream_read"
            )

        candidate = get_nested_value(payload, "candidates.0")
        if not isinstance(candidate, dict):
            return []

        content: list[str] = []
        reasoning: list[str] = []
        for part in get_nested_value(candidate, "content.parts", []) or []:
            if "functionCall" in part:
                call = part["functionCall"]
                self.tool_calls.add_complete(
                    ToolCall(
                        id=call.get("id") or f"call_{uuid.uuid4().hex[:24]}",
                        name=call.get("name", ""),
                        arguments=serialize_tool_args(call.get("args") or {}),
                    )
                )
            elif part.get("thought") and part.get("text"):
                reasoning.append(part["text"])
            elif part.get("text"):
                content.append(part["text"])

        chunks: list[ChatCompletionChunk] = []
        if content or reasoning:
            chunks.append(
                self.chunk(content="".join(content), reasoning_content="".join(reasoning))
            )
        if candidate.get("finishReason"):
            self.finish_reason = map_finish_reason(candidate["finishReason"])
            chunks.append(self.terminal_chunk())
        return chunks


class GeminiProvider(BaseProvider):
    provider_type = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "gemini-2.5-pro"
    tool_format = ToolFormat.GEMINI

    def __init__(self, config, **kwargs) -> None:
        self.oauth_endpoints = gemini_oauth_endpoints()
        super().__init__(config, **kwargs)

    @property
    def description(self) -> str:
        return "Google Gemini API"

    def auth_headers(self, credential: str | None) -> dict[str, str]:
        return {"x-goog-api-key": credential} if credential else {}

    def chat_url(self, model: str) -> str:
        return f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"

    def create_translator(self, model: str) -> StreamTranslator:
        return GeminiStreamTranslator(model, provider=self.name)

    # ── request conversion ───────────────────────────────────────────

    def convert_messages(
        self, messages: list[ChatMessage]
    ) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
        system_parts: list[dict[str, Any]] = []
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}

        for msg in messages:
            if msg.role == "system":
                if msg.text():
                    system_parts.append({"text": msg.text()})
                continue

            if msg.role == "tool":
                contents.append(
                    {
                        "role": "user",
                        "parts": [
                            {
                                "functionResponse": {
                                    "name": call_names.get(msg.tool_call_id or "", ""),
                                    "response": _tool_response(msg.text()),
                                }
                            }
                        ],
                    }
                )
                continue

            parts: list[dict[str, Any]] = []
            if msg.content:
                parts.append({"text": msg.content})
            for part in msg.parts:
                if part.type == ContentPartType.TEXT:
                    if part.text and not msg.content:
                        parts.append({"text": part.text})
                elif part.type == ContentPartType.IMAGE_BASE64:
                    parts.append(
                        {"inlineData": {"mimeType": part.media_type or "image/png", "data": part.data}}
                    )
                else:
                    parts.append(
                        {"fileData": {"mimeType": part.media_type or "image/png", "fileUri": part.url}}
                    )
            for call in msg.tool_calls:
                call_names[call.id] = call.name
                parts.append(
                    {"functionCall": {"name": call.name, "args": parse_json_tool_args(call.arguments)}}
                )
            contents.append({"role": "model" if msg.role == "assistant" else "user", "parts": parts})

        system = {"parts": system_parts} if system_parts else None
        return system, contents

    @staticmethod
    def _tool_config(choice: ToolChoice | None) -> dict[str, Any] | None:
        if choice is None:
            return None
        if choice.mode == "function":
            config = {"mode": "ANY", "allowedFunctionNames": [choice.name]}
        elif choice.mode == "required":
            config = {"mode": "ANY"}
        elif choice.mode == "none":
            config = {"mode": "NONE"}
        else:
            config = {"mode": "AUTO"}
        return {"functionCallingConfig": config}

    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        system, contents = self.convert_messages(options.messages)
        body: dict[str, Any] = {"contents": contents}
        if system:
            body["systemInstruction"] = system

        generation: dict[str, Any] = {}
        if options.temperature:
            generation["temperature"] = options.temperature
        if options.max_tokens:
            generation["maxOutputTokens"] = options.max_tokens
        if options.stop:
            generation["stopSequences"] = list(options.stop)
        response_format = parse_response_format(options.response_format)
        if response_format is not None:
            generation["responseMimeType"] = "application/json"
            if isinstance(response_format, dict):
                generation["responseSchema"] = response_format
        if generation:
            body["generationConfig"] = generation

        if options.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.parameters,
                        }
                        for tool in options.tools
                    ]
                }
            ]
            tool_config = self._tool_config(options.tool_choice)
            if tool_config is not None:
                body["toolConfig"] = tool_config
        return body

    # ── catalog and embeddings ───────────────────────────────────────

    async def fetch_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        response = await self.request(
            "GET", f"{self.base_url}/models", operation="get_models", signal=signal
        )
        data = from_json(response.content) if response.content else {}
        models = []
        for item in data.get("models") or []:
            methods = item.get("supportedGenerationMethods") or []
            if "generateContent" not in methods:
                continue
            model_id = item.get("name", "").removeprefix("models/")
            models.append(
                ModelInfo(
                    id=model_id,
                    name=item.get("displayName") or model_id,
                    provider=self.name,
                    description=item.get("description", ""),
                    max_tokens=int(item.get("inputTokenLimit") or 0),
                    supports_tool_calling=True,
                    supports_vision=True,
                )
            )
        return models

    def static_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=model_id,
                name=name,
                provider=self.name,
                max_tokens=context,
                supports_tool_calling=True,
                supports_vision=True,
            )
            for model_id, name, context in STATIC_MODELS
        ]

    async def generate_embeddings(
        self, text: str, model: str = "", signal: AbortSignal | None = None
    ) -> list[float]:
        model = model or DEFAULT_EMBEDDING_MODEL
        response = await self.request(
            "POST",
            f"{self.base_url}/models/{model}:embedContent",
            json={"content": {"parts": [{"text": text}]}},
            model=model,
            operation="generate_embeddings",
            signal=signal,
        )
        values = get_nested_value(from_json(response.content), "embedding.values")
        if not isinstance(values, list):
            raise ProviderError(
                "embedding missing from response",
                provider=self.name,
                operation="generate_embeddings",
            )
        return values


def _tool_response(text: str) -> dict[str, Any]:
    """functionResponse.response must be an object; wrap plain results."""
    try:
        value = from_json(text)
    except ValueError:
        return {"result": text}
    return value if isinstance(value, dict) else {"result": value}


__all__ = ["GeminiProvider", "GeminiStreamTranslator", "gemini_oauth_endpoints"]
