import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from provkit.auth.apikey import APIKeyManager
from provkit.auth.oauth import OAuthCredentialManager, OAuthEndpoints
from provkit.config.settings import settings
from provkit.errors import (
    AuthenticationError,
    ProviderError,
    RateLimitError,
    UnsupportedOperationError,
    classify_http_error,
)
from provkit.http.backoff import BackoffConfig
from provkit.http.client import HTTPClient, HTTPClientConfig
from provkit.llm.stream import ChatCompletionStream, StreamTranslator
from provkit.ratelimit.parsers import PARSERS, parse_retry_after
from provkit.ratelimit.models import utcnow
from provkit.ratelimit.tracker import RateLimitTracker
from provkit.streaming.factory import default_factory, detect_format
from provkit.streaming.base import StreamFormat
from provkit.types import (
    AuthMode,
    GenerateOptions,
    ModelInfo,
    ProviderConfig,
    RunningModel,
    ToolFormat,
)
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger
from provkit.utils.nested import get_nested_value
from provkit.utils.tojson import from_json

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry:
    value: Any
    created_at: float = field(default_factory=time.monotonic)

    def is_fresh(self, ttl: float) -> bool:
        return time.monotonic() - self.created_at < ttl


def error_message(body: str) -> str:
    """The ``error.message`` field of a JSON error body, or the body itself."""
    try:
        data = from_json(body)
    except ValueError:
        return body
    message = get_nested_value(data, "error.message") if isinstance(data, dict) else None
    if isinstance(message, str) and message:
        return message
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return body


class BaseProvider(ABC):
    """
    Abstract base for all provider adapters.

    Each adapter owns one HTTP transport, one rate-limit tracker and its
    credentials (API keys or OAuth sets). Subclasses implement the request
    builder, the stream translator and the model catalog.
    """

    provider_type: str = ""
    default_base_url: str = ""
    default_model: str = ""
    stream_format: StreamFormat = StreamFormat.SSE
    tool_format: ToolFormat = ToolFormat.OPENAI
    oauth_endpoints: OAuthEndpoints | None = None

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http: HTTPClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_token_refresh: Callable[..., Any] | None = None,
    ) -> None:
        self.config = config
        self.name = config.name or self.provider_type
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.http = http or HTTPClient(
            self._http_config(), provider=self.name, transport=transport
        )
        parser_cls = PARSERS.get(self.provider_type)
        self.rate_limits = RateLimitTracker(parser_cls() if parser_cls else None)
        self.on_token_refresh = on_token_refresh

        self.api_keys: APIKeyManager | None = None
        self.oauth: OAuthCredentialManager | None = None
        self._configure_auth(config)

        self._models_cache: CacheEntry | None = None
        self._health_cache: CacheEntry | None = None
        self.model_cache_ttl = settings.model_cache_ttl
        self.health_check_ttl = settings.health_check_ttl

    def _http_config(self) -> HTTPClientConfig:
        timeout = self.config.provider_config.get("timeout", settings.http_timeout)
        return HTTPClientConfig(
            timeout=float(timeout),
            max_retries=settings.http_max_retries,
            backoff=BackoffConfig(
                base_delay=settings.http_base_delay,
                max_delay=settings.http_max_delay,
                multiplier=settings.http_backoff_multiplier,
            ),
            user_agent=settings.user_agent,
            headers=self.default_headers(),
        )

    def _configure_auth(self, config: ProviderConfig) -> None:
        mode = config.resolved_auth_mode()
        if mode == AuthMode.OAUTH and config.oauth_credentials:
            endpoints = self.oauth_endpoints or OAuthEndpoints(token_url="", client_id="")
            self.oauth = OAuthCredentialManager(
                self.name,
                endpoints,
                list(config.oauth_credentials),
                http=self.http,
                on_token_refresh=self.on_token_refresh,
                refresh_skew=settings.token_refresh_skew,
            )
            return

        api_key = config.api_key
        if not api_key and not config.api_keys and not config.api_key_env:
            api_key = settings.api_key_for(self.provider_type)
        manager = APIKeyManager.from_config(
            self.name, api_key, config.api_keys, config.api_key_env
        )
        self.api_keys = manager if manager.has_keys() else None

    # ──────────────────────────────────────────────────────────────────
    # Identity and capabilities
    # ──────────────────────────────────────────────────────────────────

    @property
    def description(self) -> str:
        return f"{self.name} provider"

    def get_default_model(self) -> str:
        return self.config.default_model or self.default_model

    def supports_tool_calling(self) -> bool:
        return True

    def supports_streaming(self) -> bool:
        return True

    def supports_responses_api(self) -> bool:
        return False

    def get_tool_format(self) -> ToolFormat:
        return self.tool_format

    def requires_credentials(self) -> bool:
        return True

    def is_authenticated(self) -> bool:
        if not self.requires_credentials():
            return True
        return self.api_keys is not None or (
            self.oauth is not None and self.oauth.has_credentials()
        )

    async def authenticate(self, config: ProviderConfig) -> None:
        """Replace credentials (and base URL / default model if given)."""
        self.config = self.config.model_copy(
            update={
                k: v
                for k, v in config.model_dump(exclude_unset=True).items()
                if k != "type"
            }
        )
        if config.base_url:
            self.base_url = config.base_url.rstrip("/")
        self._configure_auth(self.config)
        self._health_cache = None
        logger.info(
            "provider_authenticated",
            provider=self.name,
            auth_mode=self.config.resolved_auth_mode().value,
        )

    async def logout(self) -> None:
        self.api_keys = None
        self.oauth = None
        self._health_cache = None

    # ──────────────────────────────────────────────────────────────────
    # Headers and credentials
    # ──────────────────────────────────────────────────────────────────

    def default_headers(self) -> dict[str, str]:
        return {}

    def auth_headers(self, credential: str | None) -> dict[str, str]:
        if not credential:
            return {}
        return {"Authorization": f"Bearer {credential}"}

    def oauth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def with_credentials(
        self, operation: Callable[[dict[str, str]], Awaitable[T]]
    ) -> T:
        """
        Run ``operation(headers)`` with auth headers, rotating or refreshing
        credentials on authentication failures.
        """
        if self.oauth is not None and self.oauth.has_credentials():
            return await self.oauth.execute_with_failover(
                lambda token: operation(self.oauth_headers(token))
            )
        if self.api_keys is not None:
            return await self.api_keys.execute_with_failover(
                lambda key: operation(self.auth_headers(key))
            )
        if self.requires_credentials():
            raise AuthenticationError(
                "no credentials configured", provider=self.name, operation="authenticate"
            )
        return await operation({})

    # ──────────────────────────────────────────────────────────────────
    # Requests
    # ──────────────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        model: str = "",
        operation: str,
        stream: bool = False,
        signal: AbortSignal | None = None,
        authenticated: bool = True,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Send a request and raise a classified ProviderError for HTTP errors.

        Rate-limit headers are recorded before the status is checked, so a 429
        updates the tracker too.
        """

        async def send(headers: dict[str, str]) -> httpx.Response:
            response = await self.http.send(
                method,
                url,
                json=json,
                headers=headers,
                params=params,
                stream=stream,
                signal=signal,
                operation=operation,
            )
            self.rate_limits.parse_and_update(response.headers, model or self.get_default_model())
            if response.status_code >= 400:
                await self.raise_for_status(response, operation)
            return response

        if authenticated:
            return await self.with_credentials(send)
        return await send({})

    async def raise_for_status(self, response: httpx.Response, operation: str) -> None:
        body = (await response.aread()).decode("utf-8", errors="replace")
        await response.aclose()
        raise self.map_error(response, body, operation)

    def map_error(self, response: httpx.Response, body: str, operation: str) -> ProviderError:
        return classify_http_error(
            response.status_code,
            error_message(body),
            provider=self.name,
            operation=operation,
            retry_after=parse_retry_after(response.headers.get("retry-after"), utcnow()),
            request_id=response.headers.get("x-request-id") or response.headers.get("request-id"),
        )

    async def open_stream(
        self,
        url: str,
        body: dict[str, Any],
        translator: StreamTranslator,
        *,
        model: str,
        signal: AbortSignal | None = None,
        operation: str = "generate_chat_completion",
        fmt: StreamFormat | None = None,
    ) -> ChatCompletionStream:
        response = await self.request(
            "POST", url, json=body, model=model, operation=operation, stream=True, signal=signal
        )
        detected = detect_format(response.headers.get("content-type"))
        if fmt is None:
            fmt = detected if detected != StreamFormat.UNKNOWN else self.stream_format
        decoder = default_factory.create(fmt)
        return ChatCompletionStream(
            response, decoder, translator, provider=self.name, signal=signal
        )

    # ──────────────────────────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────────────────────────

    async def generate_chat_completion(
        self, options: GenerateOptions, signal: AbortSignal | None = None
    ) -> ChatCompletionStream:
        options.validate()
        model = options.model or self.get_default_model()
        self.ensure_request_allowed(model)
        body = self.build_request(options, model)
        logger.info(
            "chat_request",
            provider=self.name,
            model=model,
            messages_count=len(options.messages),
            tools_count=len(options.tools),
        )
        return await self.open_stream(
            self.chat_url(model),
            body,
            self.create_translator(model),
            model=model,
            signal=signal,
            fmt=self.chat_stream_format(),
        )

    def chat_stream_format(self) -> StreamFormat | None:
        """Wire format of the chat stream; None detects it from Content-Type."""
        return None

    @abstractmethod
    def chat_url(self, model: str) -> str: ...

    @abstractmethod
    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        """Translate uniform options into the provider's request body."""

    @abstractmethod
    def create_translator(self, model: str) -> StreamTranslator: ...

    async def get_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        """Model catalog, cached for the model-cache TTL with a static fallback."""
        if self._models_cache is not None and self._models_cache.is_fresh(self.model_cache_ttl):
            logger.debug("models_cache_hit", provider=self.name)
            return list(self._models_cache.value)
        try:
            models = await self.fetch_models(signal)
        except ProviderError as e:
            fallback = self.static_models()
            if not fallback:
                raise
            logger.warning("models_fetch_failed", provider=self.name, error=str(e))
            return fallback
        self._models_cache = CacheEntry(models)
        return list(models)

    async def fetch_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        return self.static_models()

    def static_models(self) -> list[ModelInfo]:
        return []

    async def get_running_models(self, signal: AbortSignal | None = None) -> list[RunningModel]:
        raise UnsupportedOperationError(
            "listing running models is not supported",
            provider=self.name,
            operation="get_running_models",
        )

    async def generate_embeddings(
        self, text: str, model: str = "", signal: AbortSignal | None = None
    ) -> list[float]:
        raise UnsupportedOperationError(
            "embeddings are not supported", provider=self.name, operation="generate_embeddings"
        )

    async def health_check(self, signal: AbortSignal | None = None) -> None:
        """Connectivity probe, cached for the health-check TTL."""
        if self._health_cache is not None and self._health_cache.is_fresh(self.health_check_ttl):
            logger.debug("health_check_cache_hit", provider=self.name)
            if isinstance(self._health_cache.value, ProviderError):
                raise self._health_cache.value
            return
        try:
            await self.test_connectivity(signal)
        except ProviderError as e:
            self._health_cache = CacheEntry(e)
            raise
        self._health_cache = CacheEntry(None)

    async def test_connectivity(self, signal: AbortSignal | None = None) -> None:
        response = await self.request(
            "GET", self.health_url(), operation="health_check", signal=signal
        )
        await response.aclose()

    def health_url(self) -> str:
        return f"{self.base_url}/models"

    # ──────────────────────────────────────────────────────────────────
    # Rate limits
    # ──────────────────────────────────────────────────────────────────

    def ensure_request_allowed(self, model: str, estimated_tokens: int = 0) -> None:
        """
        Refuse to dispatch while the recorded limits for ``model`` are exhausted.

        Callers that prefer to wait use ``check_and_wait`` before sending.

        Raises:
            RateLimitError: with ``retry_after`` set to the time until the
                earliest reset.
        """
        if self.rate_limits.can_make_request(model, estimated_tokens):
            return
        wait = self.rate_limits.wait_time(model)
        logger.warning("rate_limit_blocked", provider=self.name, model=model, wait_seconds=wait)
        raise RateLimitError(
            f"rate limit exhausted for {model}, retry in {wait:.1f}s",
            provider=self.name,
            operation="generate_chat_completion",
            retry_after=wait,
        )

    def can_make_request(self, model: str, estimated_tokens: int = 0) -> bool:
        return self.rate_limits.can_make_request(model, estimated_tokens)

    def should_throttle(self, model: str, threshold: float = 0.8) -> bool:
        return self.rate_limits.should_throttle(model, threshold)

    def wait_time(self, model: str) -> float:
        return self.rate_limits.wait_time(model)

    async def check_and_wait(
        self, model: str, estimated_tokens: int = 0, signal: AbortSignal | None = None
    ) -> bool:
        return await self.rate_limits.check_and_wait(model, estimated_tokens, signal)

    async def close(self) -> None:
        """Close the provider's underlying client connection."""
        await self.http.aclose()


__all__ = ["BaseProvider", "CacheEntry", "error_message"]
