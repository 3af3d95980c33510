"""
Ollama adapter.

Two wire dialects, chosen with ``provider_config.stream_endpoint``:

- ``"ollama"`` (default): native ``POST /api/chat`` streaming NDJSON
- ``"openai"``: the OpenAI-compatible ``POST /v1/chat/completions`` (SSE)

Local servers need no credentials. Cloud hosts (``ollama.com``) take an API
key as a Bearer token and do not allow model management.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

import httpx

from provkit.errors import (
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    RequestCancelledError,
    ServerError,
    UnsupportedOperationError,
    ValidationError,
)
from provkit.llm.base import BaseProvider, CacheEntry
from provkit.llm.helper import (
    normalize_usage,
    parse_response_format,
    serialize_tool_args,
    to_openai_message,
    to_openai_response_format,
    to_openai_tool_choice,
    to_openai_tools,
)
from provkit.llm.openai import OpenAIStreamTranslator
from provkit.llm.stream import StreamTranslator, map_finish_reason
from provkit.streaming.base import LineReader, StreamEvent, StreamFormat
from provkit.streaming.ndjson import NDJSONDecoder
from provkit.types import (
    ChatCompletionChunk,
    ChatMessage,
    ContentPartType,
    GenerateOptions,
    ModelInfo,
    RunningModel,
    ToolCall,
)
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger
from provkit.utils.tojson import from_json

logger = get_logger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
CLOUD_HOST_MARKER = "ollama.com"
CONNECTIVITY_TIMEOUT = 10.0

ENDPOINT_NATIVE = "ollama"
ENDPOINT_OPENAI = "openai"

CLOUD_MANAGEMENT_ERROR = "model management operations are not supported on cloud endpoints"

STATIC_MODELS = [
    ("llama3.1:8b", "8B"),
    ("llama3.1:70b", "70B"),
    ("codellama:13b", "13B"),
    ("mistral:7b", "7B"),
]

TOOL_CALLING_FAMILIES = ("llama3", "mistral", "mixtral", "qwen", "deepseek")
VISION_MARKERS = ("llava", "vision")
CODE_MARKERS = ("codellama", "deepseek-coder", "starcoder", "code")


# ═══════════════════════════════════════════════════════════════════════
# Capability inference
# ═══════════════════════════════════════════════════════════════════════


def infer_max_tokens(model_id: str, family: str = "") -> int:
    name = model_id.lower()
    if "codellama" in name:
        return 16384
    if (family or "").lower() == "llama" or "llama" in name:
        return 131072
    if "mistral" in name or "mixtral" in name:
        return 32768
    return 8192


def infer_capabilities(model_id: str) -> list[str]:
    name = model_id.lower()
    if "embed" in name:
        return ["embeddings"]
    capabilities = ["chat", "completion"]
    if any(marker in name for marker in VISION_MARKERS):
        capabilities.append("vision")
    if any(marker in name for marker in CODE_MARKERS):
        capabilities.append("code")
    return capabilities


def supports_tools(model_id: str) -> bool:
    name = model_id.lower()
    return any(family in name for family in TOOL_CALLING_FAMILIES)


def build_model_info(
    model_id: str,
    provider: str = "ollama",
    parameter_size: str = "",
    family: str = "",
    **metadata: Any,
) -> ModelInfo:
    capabilities = infer_capabilities(model_id)
    embeddings_only = capabilities == ["embeddings"]
    return ModelInfo(
        id=model_id,
        name=model_id,
        provider=provider,
        description=f"{model_id} ({parameter_size} parameters)" if parameter_size else model_id,
        max_tokens=8192 if embeddings_only else infer_max_tokens(model_id, family),
        capabilities=capabilities,
        supports_streaming=not embeddings_only,
        supports_tool_calling=not embeddings_only and supports_tools(model_id),
        supports_vision="vision" in capabilities,
        metadata={k: v for k, v in {"family": family, **metadata}.items() if v},
    )


# ═══════════════════════════════════════════════════════════════════════
# Native stream
# ═══════════════════════════════════════════════════════════════════════


class OllamaNativeTranslator(StreamTranslator):
    """
    Translates ``/api/chat`` NDJSON lines.

    Each line carries a message delta; the line with ``done: true`` carries
    the token counters and ends the stream.
    """

    def __init__(self, model: str = "", provider: str = "ollama") -> None:
        super().__init__(model)
        self.provider = provider

    def translate(self, event: StreamEvent) -> list[ChatCompletionChunk]:
        try:
            payload = from_json(event.data)
        except ValueError:
            logger.warning("stream_event_skipped", provider=self.provider, reason="invalid_json")
            return []
        if not isinstance(payload, dict):
            return []

        if payload.get("error"):
            raise ProviderError(
                str(payload["error"]), provider=self.provider, operation="stream_read"
            )

        if payload.get("model"):
            self.model = payload["model"]

        message = payload.get("message") or {}
        content = message.get("content") or ""
        reasoning = message.get("thinking") or ""
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            self.tool_calls.add_complete(
                ToolCall(
                    id=call.get("id") or "",
                    name=function.get("name", ""),
                    arguments=serialize_tool_args(function.get("arguments")),
                )
            )

        if payload.get("done"):
            self.usage = normalize_usage(payload)
            self.finish_reason = map_finish_reason(payload.get("done_reason") or "stop")
            return [self.terminal_chunk(content, reasoning_content=reasoning)]

        if content or reasoning:
            return [self.chunk(content=content, reasoning_content=reasoning)]
        return []


# ═══════════════════════════════════════════════════════════════════════
# Management progress
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class ModelProgress:
    status: str = ""
    digest: str = ""
    total: int = 0
    completed: int = 0

    @property
    def percent(self) -> float:
        return self.completed / self.total * 100.0 if self.total else 0.0


ProgressCallback = Callable[[ModelProgress], Awaitable[None] | None]


# ═══════════════════════════════════════════════════════════════════════
# Provider
# ═══════════════════════════════════════════════════════════════════════


class OllamaProvider(BaseProvider):
    provider_type = "ollama"
    default_base_url = DEFAULT_BASE_URL
    default_model = "llama3.1:8b"
    stream_format = StreamFormat.NDJSON

    @property
    def description(self) -> str:
        return "Ollama local and cloud model server"

    @property
    def stream_endpoint(self) -> str:
        value = str(self.config.provider_config.get("stream_endpoint") or ENDPOINT_NATIVE)
        return ENDPOINT_OPENAI if value.lower() == ENDPOINT_OPENAI else ENDPOINT_NATIVE

    def is_cloud(self) -> bool:
        host = urlparse(self.base_url).hostname or self.base_url
        return CLOUD_HOST_MARKER in host

    def requires_credentials(self) -> bool:
        return self.is_cloud()

    def chat_url(self, model: str) -> str:
        if self.stream_endpoint == ENDPOINT_OPENAI:
            return f"{self.base_url}/v1/chat/completions"
        return f"{self.base_url}/api/chat"

    def create_translator(self, model: str) -> StreamTranslator:
        if self.stream_endpoint == ENDPOINT_OPENAI:
            return OpenAIStreamTranslator(model, provider=self.name)
        return OllamaNativeTranslator(model, provider=self.name)

    def chat_stream_format(self) -> StreamFormat:
        if self.stream_endpoint == ENDPOINT_OPENAI:
            return StreamFormat.SSE
        return StreamFormat.NDJSON

    # ── request conversion ───────────────────────────────────────────

    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        if self.stream_endpoint == ENDPOINT_OPENAI:
            return self._build_openai_request(options, model)
        return self._build_native_request(options, model)

    def _build_native_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": [self.convert_message(m) for m in options.messages],
            "stream": True,
        }
        if options.tools:
            body["tools"] = to_openai_tools(options.tools)

        response_format = parse_response_format(options.response_format)
        if response_format is not None:
            body["format"] = response_format

        model_options: dict[str, Any] = {}
        if options.temperature != 0:
            model_options["temperature"] = options.temperature
        if options.max_tokens > 0:
            model_options["num_predict"] = options.max_tokens
        if options.stop:
            model_options["stop"] = list(options.stop)
        if model_options:
            body["options"] = model_options
        return body

    def _build_openai_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": [to_openai_message(m) for m in options.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
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

    def convert_message(self, message: ChatMessage) -> dict[str, Any]:
        item: dict[str, Any] = {"role": message.role, "content": message.text()}

        images = []
        for part in message.parts:
            if part.type == ContentPartType.IMAGE_BASE64:
                images.append(part.data)
            elif part.type == ContentPartType.IMAGE_URL:
                raise ValidationError(
                    "image URLs are not supported by the native Ollama endpoint; "
                    "send base64 image data",
                    provider=self.name,
                    operation="generate_chat_completion",
                )
        if images:
            item["images"] = images

        if message.tool_calls:
            item["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        if message.role == "tool" and message.tool_call_id:
            item["tool_call_id"] = message.tool_call_id
        return item

    # ── catalog ──────────────────────────────────────────────────────

    async def fetch_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        response = await self.request(
            "GET", f"{self.base_url}/api/tags", operation="get_models", signal=signal
        )
        data = from_json(response.content) if response.content else {}
        models = []
        for item in data.get("models") or []:
            model_id = item.get("name") or item.get("model")
            if not model_id:
                continue
            details = item.get("details") or {}
            models.append(
                build_model_info(
                    model_id,
                    provider=self.name,
                    parameter_size=details.get("parameter_size", ""),
                    size=item.get("size"),
                    digest=item.get("digest"),
                    modified_at=item.get("modified_at"),
                    family=details.get("family") or "",
                    format=details.get("format"),
                    quantization_level=details.get("quantization_level"),
                )
            )
        return models

    def static_models(self) -> list[ModelInfo]:
        return [
            build_model_info(model_id, provider=self.name, parameter_size=size)
            for model_id, size in STATIC_MODELS
        ]

    async def get_running_models(self, signal: AbortSignal | None = None) -> list[RunningModel]:
        response = await self.request(
            "GET", f"{self.base_url}/api/ps", operation="get_running_models", signal=signal
        )
        data = from_json(response.content) if response.content else {}
        return [
            RunningModel(
                name=item.get("name", ""),
                model=item.get("model", ""),
                size=int(item.get("size") or 0),
                size_vram=int(item.get("size_vram") or 0),
                digest=item.get("digest", ""),
                expires_at=item.get("expires_at", ""),
            )
            for item in data.get("models") or []
        ]

    async def generate_embeddings(
        self, text: str, model: str = "", signal: AbortSignal | None = None
    ) -> list[float]:
        model = model or DEFAULT_EMBEDDING_MODEL
        response = await self.request(
            "POST",
            f"{self.base_url}/api/embeddings",
            json={"model": model, "prompt": text},
            model=model,
            operation="generate_embeddings",
            signal=signal,
        )
        data = from_json(response.content) if response.content else {}
        embedding = data.get("embedding")
        if not isinstance(embedding, list):
            raise ProviderError(
                "embedding missing from response",
                provider=self.name,
                operation="generate_embeddings",
            )
        return embedding

    async def get_version(self, signal: AbortSignal | None = None) -> str:
        response = await self.request(
            "GET", f"{self.base_url}/api/version", operation="get_version", signal=signal
        )
        data = from_json(response.content) if response.content else {}
        return data.get("version", "")

    # ── errors and connectivity ──────────────────────────────────────

    def map_error(self, response: httpx.Response, body: str, operation: str) -> ProviderError:
        status = response.status_code
        details = dict(provider=self.name, operation=operation, status_code=status)
        if status == 401:
            return AuthenticationError("invalid API key", **details)
        if status == 404:
            return NotFoundError("model not found", **details)
        if status == 429:
            return RateLimitError(
                "rate limit exceeded",
                retry_after=super().map_error(response, body, operation).retry_after,
                **details,
            )
        if status >= 500:
            return ServerError(f"server error: {body.strip()}", **details)
        return InvalidRequestError(f"invalid request: {body.strip()}", **details)

    async def health_check(self, signal: AbortSignal | None = None) -> None:
        await self.test_connectivity(signal)

    async def test_connectivity(self, signal: AbortSignal | None = None) -> None:
        """
        Probe ``/api/version`` (falling back to ``/``), cached for the
        health-check TTL. 2xx and 3xx count as reachable.
        """
        if self._health_cache is not None and self._health_cache.is_fresh(self.health_check_ttl):
            logger.debug("connectivity_cache_hit", provider=self.name)
            if isinstance(self._health_cache.value, ProviderError):
                raise self._health_cache.value
            return
        try:
            await self._probe(signal)
        except ProviderError as e:
            self._health_cache = CacheEntry(e)
            raise
        self._health_cache = CacheEntry(None)

    async def _probe(self, signal: AbortSignal | None) -> None:
        headers = {}
        if self.api_keys is not None:
            headers = self.auth_headers(self.api_keys.current_key())
        elif self.requires_credentials():
            raise AuthenticationError(
                "API key required for cloud endpoint", provider=self.name, operation="health_check"
            )

        last_error: ProviderError | None = None
        for path in ("/api/version", "/"):
            try:
                response = await asyncio.wait_for(
                    self.http.request(
                        "GET",
                        f"{self.base_url}{path}",
                        headers=headers,
                        signal=signal,
                        operation="health_check",
                    ),
                    timeout=CONNECTIVITY_TIMEOUT,
                )
            except NetworkError as e:
                last_error = e
                continue
            except asyncio.TimeoutError:
                last_error = NetworkError(
                    f"connectivity probe to {path} timed out",
                    provider=self.name,
                    operation="health_check",
                )
                continue
            self._check_probe_status(response)
            return
        assert last_error is not None
        raise last_error

    def _check_probe_status(self, response: httpx.Response) -> None:
        status = response.status_code
        details = dict(provider=self.name, operation="health_check", status_code=status)
        if 200 <= status < 400:
            return
        if status == 401:
            raise AuthenticationError("invalid API key", **details)
        if status == 403:
            raise AuthenticationError("API key does not have access", **details)
        raise ServerError(f"connectivity check failed with status {status}", **details)

    # ── model management ─────────────────────────────────────────────

    def _ensure_local(self, operation: str) -> None:
        if self.is_cloud():
            raise UnsupportedOperationError(
                CLOUD_MANAGEMENT_ERROR, provider=self.name, operation=operation
            )

    async def pull_model(
        self,
        model: str,
        progress: ProgressCallback | None = None,
        signal: AbortSignal | None = None,
    ) -> None:
        """Download a model from the registry, reporting progress lines."""
        self._ensure_local("pull_model")
        await self._stream_operation(
            "pull_model", "/api/pull", {"name": model, "stream": True}, progress, signal
        )

    async def push_model(
        self,
        model: str,
        progress: ProgressCallback | None = None,
        signal: AbortSignal | None = None,
    ) -> None:
        self._ensure_local("push_model")
        await self._stream_operation(
            "push_model", "/api/push", {"name": model, "stream": True}, progress, signal
        )

    async def create_model(
        self,
        name: str,
        modelfile: str,
        progress: ProgressCallback | None = None,
        signal: AbortSignal | None = None,
    ) -> None:
        self._ensure_local("create_model")
        await self._stream_operation(
            "create_model",
            "/api/create",
            {"name": name, "modelfile": modelfile, "stream": True},
            progress,
            signal,
        )

    async def delete_model(self, model: str, signal: AbortSignal | None = None) -> None:
        self._ensure_local("delete_model")
        response = await self.request(
            "DELETE",
            f"{self.base_url}/api/delete",
            json={"name": model},
            model=model,
            operation="delete_model",
            signal=signal,
        )
        await response.aclose()
        self._models_cache = None
        logger.info("model_deleted", provider=self.name, model=model)

    async def copy_model(
        self, source: str, destination: str, signal: AbortSignal | None = None
    ) -> None:
        self._ensure_local("copy_model")
        response = await self.request(
            "POST",
            f"{self.base_url}/api/copy",
            json={"source": source, "destination": destination},
            model=source,
            operation="copy_model",
            signal=signal,
        )
        await response.aclose()
        self._models_cache = None
        logger.info("model_copied", provider=self.name, source=source, destination=destination)

    async def _stream_operation(
        self,
        operation: str,
        path: str,
        body: dict[str, Any],
        progress: ProgressCallback | None,
        signal: AbortSignal | None,
    ) -> None:
        started = time.monotonic()
        response = await self.request(
            "POST",
            f"{self.base_url}{path}",
            json=body,
            model=body.get("name", ""),
            operation=operation,
            stream=True,
            signal=signal,
        )
        decoder = NDJSONDecoder()
        reader = LineReader(response.aiter_bytes())
        last_status = ""
        try:
            async for event in decoder.events(reader):
                if signal is not None and signal.is_aborted():
                    raise RequestCancelledError(
                        signal.reason or "operation cancelled",
                        provider=self.name,
                        operation=operation,
                    )
                data = from_json(event.data)
                if not isinstance(data, dict):
                    continue
                if data.get("error"):
                    raise ProviderError(
                        str(data["error"]), provider=self.name, operation=operation
                    )
                update = ModelProgress(
                    status=data.get("status", ""),
                    digest=data.get("digest", ""),
                    total=int(data.get("total") or 0),
                    completed=int(data.get("completed") or 0),
                )
                if update.status != last_status:
                    logger.info(
                        "model_operation_progress",
                        provider=self.name,
                        operation=operation,
                        status=update.status,
                    )
                    last_status = update.status
                if progress is not None:
                    result = progress(update)
                    if asyncio.iscoroutine(result):
                        await result
        finally:
            await response.aclose()

        self._models_cache = None
        logger.info(
            "model_operation_completed",
            provider=self.name,
            operation=operation,
            name=body.get("name"),
            duration=round(time.monotonic() - started, 3),
        )


__all__ = [
    "OllamaProvider",
    "OllamaNativeTranslator",
    "ModelProgress",
    "build_model_info",
    "infer_capabilities",
    "infer_max_tokens",
    "supports_tools",
    "CLOUD_MANAGEMENT_ERROR",
]
