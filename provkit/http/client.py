"""
Pooled async HTTP transport with retry, interceptors and metrics.

One HTTPClient is owned by each provider so default headers (for example
``anthropic-version``) never leak between providers.

Each attempt runs under an overall deadline of ``config.timeout`` (cut short
by the caller signal's deadline, if any). Without ``stream=True`` that covers
the whole body; a stream is bounded until its headers arrive.

Usage:
    client = HTTPClient(HTTPClientConfig(headers={"x-api-key": key}), provider="anthropic")
    response = await client.send("POST", url, json=body, stream=True)
"""

import asyncio
import copy
import inspect
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from provkit.errors import (
    DeadlineExceededError,
    NetworkError,
    ProviderError,
    RequestCancelledError,
)
from provkit.http.backoff import BackoffConfig, BackoffWait
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger
from provkit.utils.tojson import from_json, to_json_bytes

logger = get_logger(__name__)

DEFAULT_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
DEFAULT_USER_AGENT = "provkit/1.0"

RequestInterceptor = Callable[[httpx.Request], Awaitable[None] | None]
ResponseInterceptor = Callable[[httpx.Response], Awaitable[None] | None]


@dataclass
class HTTPClientConfig:
    timeout: float = 60.0
    max_retries: int = 3
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS

    # Pool
    max_idle_conns: int = 100
    max_idle_conns_per_host: int = 10
    max_conns_per_host: int = 0  # 0 = unlimited
    idle_conn_timeout: float = 90.0
    tls_handshake_timeout: float = 10.0
    http2: bool = True

    headers: dict[str, str] = field(default_factory=dict)
    user_agent: str = DEFAULT_USER_AGENT
    request_interceptor: RequestInterceptor | None = None
    response_interceptor: ResponseInterceptor | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def limits(self) -> httpx.Limits:
        # httpx pools per client, and a provider client talks to one host,
        # so the per-host idle bound is the effective keep-alive bound.
        keepalive = min(self.max_idle_conns, self.max_idle_conns_per_host or self.max_idle_conns)
        return httpx.Limits(
            max_connections=self.max_conns_per_host or None,
            max_keepalive_connections=keepalive or None,
            keepalive_expiry=self.idle_conn_timeout,
        )


def high_concurrency_config(**overrides: Any) -> HTTPClientConfig:
    """Preset for callers that fan out many parallel requests to one provider."""
    values: dict[str, Any] = {
        "max_idle_conns": 500,
        "max_idle_conns_per_host": 100,
        "max_conns_per_host": 0,
    }
    values.update(overrides)
    return HTTPClientConfig(**values)


@dataclass
class HTTPMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_latency: float = 0.0
    retry_count: int = 0
    status_codes: dict[int, int] = field(default_factory=dict)
    last_request_time: float | None = None

    @property
    def average_latency(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_latency / self.total_requests


class InterceptorError(ProviderError):
    """A request or response interceptor rejected the exchange."""

    pass


class _RetryableStatus(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"retryable status {status_code}")
        self.status_code = status_code


class HTTPClient:
    def __init__(
        self,
        config: HTTPClientConfig | None = None,
        *,
        provider: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or HTTPClientConfig()
        self.provider = provider
        self._metrics = HTTPMetrics()
        self._metrics_lock = threading.Lock()

        client_kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(
                self.config.timeout, connect=self.config.tls_handshake_timeout
            ),
            "limits": self.config.limits(),
            "trust_env": True,
            "follow_redirects": True,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        else:
            client_kwargs["http2"] = self.config.http2
        self._client = httpx.AsyncClient(**client_kwargs)

    # ──────────────────────────────────────────────────────────────────
    # Requests
    # ──────────────────────────────────────────────────────────────────

    def build_request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        content: bytes | str | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Request:
        merged = {"User-Agent": self.config.user_agent}
        merged.update(self.config.headers)
        if json is not None:
            content = to_json_bytes(json)
            merged["Content-Type"] = "application/json"
        if headers:
            merged.update(headers)
        return self._client.build_request(
            method, url, content=content, data=data, headers=merged, params=params
        )

    async def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        content: bytes | str | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        stream: bool = False,
        signal: AbortSignal | None = None,
        operation: str = "request",
    ) -> httpx.Response:
        """
        Send a request with retry on network failures and retryable statuses.

        A response with a retryable status is returned as-is once retries are
        exhausted so the caller can classify it. With ``stream=True`` the body
        is left unread and the caller must ``aclose()`` the response.
        """
        prototype = self.build_request(
            method, url, json=json, content=content, data=data, headers=headers, params=params
        )
        await self._intercept(self.config.request_interceptor, prototype, operation)
        # Materialize the body so every attempt gets a fresh, unconsumed copy
        prototype.read()

        start = time.monotonic()
        response: httpx.Response | None = None
        try:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.config.max_retries + 1),
                wait=BackoffWait(self.config.backoff),
                retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
                sleep=self._sleeper(signal, operation),
                before_sleep=self._before_retry,
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    response = await self._attempt(
                        prototype, stream, signal, operation, attempt.retry_state.attempt_number
                    )
        except httpx.TimeoutException as e:
            raise DeadlineExceededError(
                f"request timed out: {e}", provider=self.provider, operation=operation, cause=e
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"request failed: {e}", provider=self.provider, operation=operation, cause=e
            ) from e
        finally:
            self._record(response, time.monotonic() - start)

        return response

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send and fully read the response body."""
        kwargs["stream"] = False
        return await self.send(method, url, **kwargs)

    async def get_json(self, url: str, **kwargs: Any) -> tuple[httpx.Response, Any]:
        response = await self.request("GET", url, **kwargs)
        return response, _decode_json(response)

    async def post_json(self, url: str, body: Any, **kwargs: Any) -> tuple[httpx.Response, Any]:
        return await self.do_json("POST", url, body, **kwargs)

    async def do_json(
        self, method: str, url: str, body: Any, **kwargs: Any
    ) -> tuple[httpx.Response, Any]:
        response = await self.request(method, url, json=body, **kwargs)
        return response, _decode_json(response)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def close(self) -> None:
        await self.aclose()

    # ──────────────────────────────────────────────────────────────────
    # Metrics
    # ──────────────────────────────────────────────────────────────────

    def get_metrics(self) -> HTTPMetrics:
        """Snapshot copy of the counters."""
        with self._metrics_lock:
            return copy.deepcopy(self._metrics)

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._metrics = HTTPMetrics()

    # ──────────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────────

    async def _attempt(
        self,
        prototype: httpx.Request,
        stream: bool,
        signal: AbortSignal | None,
        operation: str,
        attempt_number: int,
    ) -> httpx.Response:
        if signal is not None and signal.is_aborted():
            raise RequestCancelledError(
                signal.reason or "request cancelled", provider=self.provider, operation=operation
            )

        request = httpx.Request(
            prototype.method,
            prototype.url,
            headers=prototype.headers,
            content=prototype.content or None,
        )
        timeout = self._attempt_timeout(signal, operation)
        try:
            response = await asyncio.wait_for(
                self._send_guarded(request, stream, signal, operation), timeout
            )
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError(
                f"request exceeded its {timeout:.3g}s deadline",
                provider=self.provider,
                operation=operation,
                cause=e,
            ) from e

        if self.config.response_interceptor is not None:
            try:
                await self._intercept(self.config.response_interceptor, response, operation)
            except InterceptorError:
                await response.aclose()
                raise

        if (
            response.status_code in self.config.retryable_status_codes
            and attempt_number <= self.config.max_retries
        ):
            await response.aclose()
            raise _RetryableStatus(response.status_code)
        return response

    def _attempt_timeout(self, signal: AbortSignal | None, operation: str) -> float:
        """Overall deadline of one attempt: the configured timeout, cut to the caller's deadline."""
        timeout = self.config.timeout
        remaining = signal.time_remaining() if signal is not None else None
        if remaining is not None:
            if remaining <= 0:
                raise DeadlineExceededError(
                    "deadline exceeded", provider=self.provider, operation=operation
                )
            timeout = min(timeout, remaining)
        return timeout

    async def _send_guarded(
        self,
        request: httpx.Request,
        stream: bool,
        signal: AbortSignal | None,
        operation: str,
    ) -> httpx.Response:
        # Without stream, httpx reads the whole body inside send, so the
        # deadline covers the body too. A stream is bounded up to its headers.
        send = self._client.send(request, stream=stream)
        if signal is None:
            return await send
        try:
            return await signal.guard(send)
        except asyncio.CancelledError as e:
            if not signal.is_aborted():
                raise
            raise RequestCancelledError(
                signal.reason or "request cancelled",
                provider=self.provider,
                operation=operation,
            ) from e

    async def _intercept(self, interceptor, target, operation: str) -> None:
        if interceptor is None:
            return
        try:
            result = interceptor(target)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            kind = "request" if isinstance(target, httpx.Request) else "response"
            raise InterceptorError(
                f"{kind} interceptor failed: {e}",
                provider=self.provider,
                operation=operation,
                cause=e,
            ) from e

    def _sleeper(self, signal: AbortSignal | None, operation: str):
        async def sleep(seconds: float) -> None:
            remaining = signal.time_remaining() if signal is not None else None
            if remaining is not None and seconds >= remaining:
                raise DeadlineExceededError(
                    f"retry in {seconds:.3g}s would pass the deadline",
                    provider=self.provider,
                    operation=operation,
                )
            if signal is None:
                await asyncio.sleep(seconds)
                return
            if not await signal.sleep(seconds):
                raise RequestCancelledError(
                    signal.reason or "retry aborted",
                    provider=self.provider,
                    operation=operation,
                )

        return sleep

    def _before_retry(self, retry_state) -> None:
        with self._metrics_lock:
            self._metrics.retry_count += 1
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "http_retry",
            provider=self.provider,
            attempt=retry_state.attempt_number,
            delay=retry_state.upcoming_sleep,
            status_code=getattr(exc, "status_code", None),
            error=None if isinstance(exc, _RetryableStatus) else str(exc),
        )

    def _record(self, response: httpx.Response | None, latency: float) -> None:
        with self._metrics_lock:
            m = self._metrics
            m.total_requests += 1
            m.total_latency += latency
            m.last_request_time = time.time()
            if response is None:
                m.failed_requests += 1
                return
            status = response.status_code
            m.status_codes[status] = m.status_codes.get(status, 0) + 1
            if status < 400:
                m.successful_requests += 1
            else:
                m.failed_requests += 1


def _decode_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    return from_json(response.content)


__all__ = [
    "HTTPClient",
    "HTTPClientConfig",
    "HTTPMetrics",
    "InterceptorError",
    "high_concurrency_config",
    "DEFAULT_RETRYABLE_STATUS",
]
