"""
API-key credentials with rotation and health tracking.

Keys come from a single value, an ordered list, or a named environment
variable. The first healthy key is used; failures put a key into backoff
(1s, 2s, 4s, ... capped at 60s) and three consecutive failures mark it
unhealthy until it succeeds again.
"""

import os
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from provkit.errors import AuthenticationError, DeadlineExceededError, ProviderError
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MAX_FAILOVER_ATTEMPTS = 3
UNHEALTHY_AFTER_FAILURES = 3
MAX_KEY_BACKOFF = 60.0


@dataclass
class KeyHealth:
    failure_count: int = 0
    last_failure: float | None = None
    last_success: float | None = None
    healthy: bool = True
    backoff_until: float = 0.0


class APIKeyManager:
    def __init__(
        self,
        provider: str,
        keys: list[str],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self._keys = [k for k in keys if k]
        self._clock = clock
        self._lock = threading.Lock()
        self._index = 0
        self._health = {key: KeyHealth() for key in self._keys}

    @classmethod
    def from_config(
        cls,
        provider: str,
        api_key: str | None = None,
        api_keys: list[str] | None = None,
        api_key_env: str | None = None,
    ) -> "APIKeyManager":
        """Collect keys: explicit list, then single key, then the environment variable."""
        keys: list[str] = list(api_keys or [])
        if api_key and api_key not in keys:
            keys.insert(0, api_key)
        if api_key_env:
            env_value = os.getenv(api_key_env)
            if env_value and env_value not in keys:
                keys.append(env_value)
        return cls(provider, keys)

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    def has_keys(self) -> bool:
        return bool(self._keys)

    def current_key(self) -> str:
        """The key at the rotation cursor, or the next one not in backoff."""
        if not self._keys:
            raise AuthenticationError(
                f"no API keys configured for {self.provider}",
                provider=self.provider,
                operation="get_key",
            )
        now = self._clock()
        with self._lock:
            for offset in range(len(self._keys)):
                key = self._keys[(self._index + offset) % len(self._keys)]
                if self._health[key].backoff_until <= now:
                    return key
        raise AuthenticationError(
            f"all {len(self._keys)} API keys for {self.provider} are in backoff",
            provider=self.provider,
            operation="get_key",
        )

    def rotate(self) -> str | None:
        """Advance the cursor, typically after a 401/403."""
        if not self._keys:
            return None
        with self._lock:
            self._index = (self._index + 1) % len(self._keys)
            key = self._keys[self._index]
        logger.info("api_key_rotated", provider=self.provider, index=self._index)
        return key

    def report_success(self, key: str) -> None:
        with self._lock:
            health = self._health.get(key)
            if health is None:
                return
            health.failure_count = 0
            health.healthy = True
            health.backoff_until = 0.0
            health.last_success = self._clock()

    def report_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            health = self._health.get(key)
            if health is None:
                return
            health.failure_count += 1
            health.last_failure = now
            exponent = min(max(health.failure_count - 1, 0), 6)
            health.backoff_until = now + min(float(1 << exponent), MAX_KEY_BACKOFF)
            if health.failure_count >= UNHEALTHY_AFTER_FAILURES:
                health.healthy = False
        logger.warning(
            "api_key_failure",
            provider=self.provider,
            failures=health.failure_count,
            healthy=health.healthy,
        )

    def health(self, key: str) -> KeyHealth | None:
        with self._lock:
            h = self._health.get(key)
            return KeyHealth(**vars(h)) if h is not None else None

    async def execute_with_failover(self, operation: Callable[[str], Awaitable[T]]) -> T:
        """
        Run ``operation(key)``, moving to the next key on failure.

        Up to three keys (or all keys, if fewer) are tried. Errors that are
        neither authentication failures nor retryable propagate immediately, as
        do deadline expiries.
        """
        attempts = min(len(self._keys), MAX_FAILOVER_ATTEMPTS) or 1
        last_error: ProviderError | None = None

        for _ in range(attempts):
            try:
                key = self.current_key()
            except AuthenticationError:
                if last_error is not None:
                    raise last_error
                raise
            try:
                result = await operation(key)
            except ProviderError as e:
                if isinstance(e, DeadlineExceededError):
                    raise
                if not isinstance(e, AuthenticationError) and not e.is_retryable:
                    raise
                last_error = e
                self.report_failure(key)
                self.rotate()
                continue
            self.report_success(key)
            return result

        assert last_error is not None
        raise last_error


__all__ = ["APIKeyManager", "KeyHealth"]
