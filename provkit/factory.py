"""
Provider factory and facade.

The factory maps provider types to adapter classes. The facade holds the
configured adapters, forwards calls to them and keeps per-provider
request metrics.
"""

import copy
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from provkit.config.store import ConfigStore
from provkit.errors import NotFoundError, ProviderError, ValidationError
from provkit.llm.anthropic import AnthropicProvider
from provkit.llm.base import BaseProvider
from provkit.llm.cerebras import CerebrasProvider
from provkit.llm.gemini import GeminiProvider
from provkit.llm.ollama import OllamaProvider
from provkit.llm.openai import OpenAIProvider
from provkit.llm.openrouter import OpenRouterProvider
from provkit.llm.qwen import QwenProvider
from provkit.llm.stream import ChatCompletionStream
from provkit.types import (
    ChatCompletionChunk,
    GenerateOptions,
    ModelInfo,
    OAuthCredentialSet,
    ProviderConfig,
    ProviderType,
    RunningModel,
)
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.locks import ReadWriteLock
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

ProviderClass = type[BaseProvider]


class ProviderFactory:
    """
    Registry of adapter classes keyed by provider type.

    Custom adapters can be registered under new type names; ``create``
    builds a configured instance.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._registry: dict[str, ProviderClass] = {}

    def register(self, provider_type: ProviderType | str, provider_cls: ProviderClass) -> None:
        key = _type_key(provider_type)
        with self._lock.write():
            self._registry[key] = provider_cls
        logger.debug("provider_registered", provider_type=key, cls=provider_cls.__name__)

    def create(
        self,
        provider_type: ProviderType | str,
        config: ProviderConfig | None = None,
        **kwargs: Any,
    ) -> BaseProvider:
        """
        Build an adapter.

        Args:
            provider_type: Registered type name ("openai", "ollama", ...)
            config: Provider configuration; defaults to an empty config of that type
            **kwargs: Passed to the adapter (``transport``, ``on_token_refresh``)

        Returns:
            The configured adapter

        Raises:
            ValidationError: If the type is not registered
        """
        key = _type_key(provider_type)
        with self._lock.read():
            provider_cls = self._registry.get(key)
        if provider_cls is None:
            raise ValidationError(
                f"unsupported provider type: {key}", provider=key, operation="create_provider"
            )
        if config is None:
            if key not in {t.value for t in ProviderType}:
                raise ValidationError(
                    f"provider type {key} needs an explicit config",
                    provider=key,
                    operation="create_provider",
                )
            config = ProviderConfig(type=ProviderType(key), name=key)
        return provider_cls(config, **kwargs)

    def supported_types(self) -> list[str]:
        with self._lock.read():
            return sorted(self._registry)


def _type_key(provider_type: ProviderType | str) -> str:
    if isinstance(provider_type, ProviderType):
        return provider_type.value
    return str(provider_type).lower()


def default_factory() -> ProviderFactory:
    factory = ProviderFactory()
    factory.register(ProviderType.OPENAI, OpenAIProvider)
    factory.register(ProviderType.ANTHROPIC, AnthropicProvider)
    factory.register(ProviderType.GEMINI, GeminiProvider)
    factory.register(ProviderType.QWEN, QwenProvider)
    factory.register(ProviderType.CEREBRAS, CerebrasProvider)
    factory.register(ProviderType.OPENROUTER, OpenRouterProvider)
    factory.register(ProviderType.OLLAMA, OllamaProvider)
    return factory


# ═══════════════════════════════════════════════════════════════════════
# Metrics
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class ProviderMetrics:
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_latency: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    last_error: str = ""
    last_request_time: float | None = None

    @property
    def average_latency(self) -> float:
        finished = self.success_count + self.error_count
        return self.total_latency / finished if finished else 0.0


class MetricsRecorder:
    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._metrics: dict[str, ProviderMetrics] = {}

    def _entry(self, provider: str) -> ProviderMetrics:
        entry = self._metrics.get(provider)
        if entry is None:
            entry = self._metrics[provider] = ProviderMetrics()
        return entry

    def start(self, provider: str) -> None:
        with self._lock.write():
            entry = self._entry(provider)
            entry.request_count += 1
            entry.last_request_time = time.time()

    def success(self, provider: str, latency: float, chunk: ChatCompletionChunk | None = None) -> None:
        with self._lock.write():
            entry = self._entry(provider)
            entry.success_count += 1
            entry.total_latency += latency
            if chunk is not None and chunk.usage is not None:
                entry.prompt_tokens += chunk.usage.prompt_tokens
                entry.completion_tokens += chunk.usage.completion_tokens
                entry.total_tokens += chunk.usage.total_tokens

    def failure(self, provider: str, latency: float, error: BaseException) -> None:
        with self._lock.write():
            entry = self._entry(provider)
            entry.error_count += 1
            entry.total_latency += latency
            entry.last_error = str(error)

    def snapshot(self, provider: str | None = None) -> dict[str, ProviderMetrics]:
        with self._lock.read():
            if provider is not None:
                entry = self._metrics.get(provider)
                return {provider: copy.deepcopy(entry)} if entry else {}
            return copy.deepcopy(self._metrics)


class MeteredStream:
    """Wraps a chat stream and records outcome and token usage once it ends."""

    def __init__(
        self, stream: ChatCompletionStream, provider: str, recorder: MetricsRecorder, started: float
    ) -> None:
        self._stream = stream
        self._provider = provider
        self._recorder = recorder
        self._started = started
        self._recorded = False

    @property
    def model(self) -> str:
        return self._stream.model

    def __aiter__(self) -> "MeteredStream":
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        chunk = await self.next()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def next(self) -> ChatCompletionChunk | None:
        try:
            chunk = await self._stream.next()
        except ProviderError as e:
            self._record_failure(e)
            raise
        if chunk is not None and chunk.done and not self._recorded:
            self._recorded = True
            self._recorder.success(self._provider, time.monotonic() - self._started, chunk)
        return chunk

    async def collect(self) -> list[ChatCompletionChunk]:
        return [chunk async for chunk in self]

    async def close(self) -> None:
        await self._stream.close()

    async def aclose(self) -> None:
        await self.close()

    async def __aenter__(self) -> "MeteredStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _record_failure(self, error: BaseException) -> None:
        if not self._recorded:
            self._recorded = True
            self._recorder.failure(self._provider, time.monotonic() - self._started, error)


# ═══════════════════════════════════════════════════════════════════════
# Facade
# ═══════════════════════════════════════════════════════════════════════


class ProviderFacade:
    """
    One entry point over several configured adapters.

    Calls are routed by provider name; each call is counted in the
    per-provider metrics.
    """

    def __init__(self, factory: ProviderFactory | None = None) -> None:
        self.factory = factory or default_factory()
        self.metrics = MetricsRecorder()
        self._providers: dict[str, BaseProvider] = {}
        self._lock = threading.Lock()

    # ── configuration ────────────────────────────────────────────────

    def add_provider(self, config: ProviderConfig, **kwargs: Any) -> BaseProvider:
        provider = self.factory.create(config.type, config, **kwargs)
        with self._lock:
            self._providers[provider.name] = provider
        logger.info("provider_added", provider=provider.name, provider_type=config.type.value)
        return provider

    @classmethod
    def from_config_store(
        cls,
        store: ConfigStore,
        factory: ProviderFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ProviderFacade":
        """Build a facade from every provider section in ``config.yaml``.

        Refreshed OAuth tokens are written back to the same file.
        """
        facade = cls(factory)
        for name, config in store.provider_configs().items():
            kwargs: dict[str, Any] = {"on_token_refresh": _persist_refresh(store, name)}
            if transport is not None:
                kwargs["transport"] = transport
            facade.add_provider(config, **kwargs)
        return facade

    def get_provider(self, name: str) -> BaseProvider:
        with self._lock:
            provider = self._providers.get(name)
        if provider is None:
            raise NotFoundError(
                f"provider {name!r} is not configured", provider=name, operation="get_provider"
            )
        return provider

    def providers(self) -> list[str]:
        with self._lock:
            return list(self._providers)

    # ── forwarded operations ─────────────────────────────────────────

    async def generate_chat_completion(
        self, provider: str, options: GenerateOptions, signal: AbortSignal | None = None
    ) -> MeteredStream:
        adapter = self.get_provider(provider)
        started = time.monotonic()
        self.metrics.start(provider)
        try:
            stream = await adapter.generate_chat_completion(options, signal)
        except ProviderError as e:
            self.metrics.failure(provider, time.monotonic() - started, e)
            raise
        return MeteredStream(stream, provider, self.metrics, started)

    async def get_models(self, provider: str, signal: AbortSignal | None = None) -> list[ModelInfo]:
        return await self._call(provider, lambda p: p.get_models(signal))

    async def get_running_models(
        self, provider: str, signal: AbortSignal | None = None
    ) -> list[RunningModel]:
        return await self._call(provider, lambda p: p.get_running_models(signal))

    async def generate_embeddings(
        self, provider: str, text: str, model: str = "", signal: AbortSignal | None = None
    ) -> list[float]:
        return await self._call(provider, lambda p: p.generate_embeddings(text, model, signal))

    async def health_check(self, provider: str, signal: AbortSignal | None = None) -> None:
        await self._call(provider, lambda p: p.health_check(signal))

    def can_make_request(self, provider: str, model: str, estimated_tokens: int = 0) -> bool:
        return self.get_provider(provider).can_make_request(model, estimated_tokens)

    def wait_time(self, provider: str, model: str) -> float:
        return self.get_provider(provider).wait_time(model)

    def get_metrics(self, provider: str | None = None) -> dict[str, ProviderMetrics]:
        return self.metrics.snapshot(provider)

    async def close(self) -> None:
        with self._lock:
            providers = list(self._providers.values())
        for provider in providers:
            await provider.close()

    async def _call(self, provider: str, operation: Callable[[BaseProvider], Any]) -> Any:
        adapter = self.get_provider(provider)
        started = time.monotonic()
        self.metrics.start(provider)
        try:
            result = await operation(adapter)
        except ProviderError as e:
            self.metrics.failure(provider, time.monotonic() - started, e)
            raise
        self.metrics.success(provider, time.monotonic() - started)
        return result


def _persist_refresh(store: ConfigStore, provider: str):
    def persist(credential: OAuthCredentialSet) -> None:
        store.update_oauth_credential(provider, credential)
        logger.info("oauth_credential_persisted", provider=provider, credential_id=credential.id)

    return persist


__all__ = [
    "ProviderFactory",
    "ProviderFacade",
    "ProviderMetrics",
    "MetricsRecorder",
    "MeteredStream",
    "default_factory",
]
