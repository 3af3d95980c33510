"""
Per-model rate-limit bookkeeping.

The tracker keeps the most recent RateLimitInfo for each model of one
provider. Header parsing replaces a record under the write lock; queries
take the read lock.
"""

import copy
from datetime import datetime, timedelta
from typing import Callable, Mapping

from provkit.errors import RequestCancelledError
from provkit.ratelimit.models import RateLimitInfo, utcnow
from provkit.ratelimit.parsers import RateLimitParser
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.locks import ReadWriteLock
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_THROTTLE_THRESHOLD = 0.8


class RateLimitTracker:
    def __init__(
        self,
        parser: RateLimitParser | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.parser = parser
        self._clock = clock
        self._lock = ReadWriteLock()
        self._info: dict[str, RateLimitInfo] = {}

    # ── updates ──────────────────────────────────────────────────────

    def update(self, info: RateLimitInfo) -> None:
        with self._lock.write():
            self._info[info.model] = info

    def parse_and_update(self, headers: Mapping[str, str], model: str) -> RateLimitInfo | None:
        """Parse response headers with the provider parser and store the result."""
        if self.parser is None:
            return None
        info = self.parser.parse(headers, model)
        self.update(info)
        logger.debug(
            "rate_limit_updated",
            provider=info.provider,
            model=model,
            requests_remaining=info.requests_remaining,
            requests_limit=info.requests_limit,
            tokens_remaining=info.tokens_remaining,
            tokens_limit=info.tokens_limit,
            retry_after=info.retry_after,
        )
        return info

    def clear(self, model: str | None = None) -> None:
        with self._lock.write():
            if model is None:
                self._info.clear()
            else:
                self._info.pop(model, None)

    # ── queries ──────────────────────────────────────────────────────

    def get(self, model: str) -> RateLimitInfo | None:
        with self._lock.read():
            info = self._info.get(model)
            return copy.deepcopy(info) if info is not None else None

    def can_make_request(self, model: str, estimated_tokens: int = 0) -> bool:
        with self._lock.read():
            info = self._info.get(model)
            if info is None:
                return True
            return self._allows(info, self._clock(), estimated_tokens)

    def wait_time(self, model: str) -> float:
        """Seconds until the earliest future reset (or the retry-after hint)."""
        with self._lock.read():
            info = self._info.get(model)
            if info is None:
                return 0.0
            now = self._clock()

            if info.retry_after:
                remaining = _retry_after_deadline(info) - now
                if remaining > timedelta(0):
                    return remaining.total_seconds()

            future = [t for t in info.reset_instants() if t > now]
            if not future:
                return 0.0
            return (min(future) - now).total_seconds()

    async def check_and_wait(
        self,
        model: str,
        estimated_tokens: int = 0,
        signal: AbortSignal | None = None,
    ) -> bool:
        """
        Block until the model's limits allow a request.

        Returns:
            True if no wait was needed, False if the caller was held back.

        Raises:
            RequestCancelledError: ``signal`` fired while waiting.
        """
        if self.can_make_request(model, estimated_tokens):
            return True

        delay = self.wait_time(model)
        provider = self.parser.provider_name() if self.parser else ""
        logger.warning("rate_limit_wait", provider=provider, model=model, wait_seconds=delay)
        if delay > 0:
            waiter = signal or AbortSignal()
            if not await waiter.sleep(delay):
                raise RequestCancelledError(
                    waiter.reason or "rate-limit wait cancelled",
                    provider=provider,
                    operation="check_and_wait",
                )
        return False

    def should_throttle(self, model: str, threshold: float = DEFAULT_THROTTLE_THRESHOLD) -> bool:
        """True when any live counter has consumed at least ``threshold`` of its limit."""
        if not (0.0 <= threshold <= 1.0):
            threshold = DEFAULT_THROTTLE_THRESHOLD

        with self._lock.read():
            info = self._info.get(model)
            if info is None:
                return False
            now = self._clock()

            windows = (
                (info.requests_limit, info.requests_remaining, info.requests_reset),
                (info.tokens_limit, info.tokens_remaining, info.tokens_reset),
                (info.input_tokens_limit, info.input_tokens_remaining, info.input_tokens_reset),
                (info.output_tokens_limit, info.output_tokens_remaining, info.output_tokens_reset),
                (
                    info.daily_requests_limit,
                    info.daily_requests_remaining,
                    info.daily_requests_reset,
                ),
            )
            for limit, remaining, reset in windows:
                if not limit or remaining is None or reset is None or now >= reset:
                    continue
                if 1.0 - remaining / limit >= threshold:
                    return True

            if info.credits_limit and info.credits_remaining is not None:
                if 1.0 - info.credits_remaining / info.credits_limit >= threshold:
                    return True
            return False

    # ── internals ────────────────────────────────────────────────────

    def _allows(self, info: RateLimitInfo, now: datetime, estimated_tokens: int) -> bool:
        if info.retry_after and _retry_after_deadline(info) > now:
            return False

        if _exhausted(info.requests_limit, info.requests_remaining, info.requests_reset, now):
            return False

        if estimated_tokens > 0:
            for limit, remaining, reset in (
                (info.tokens_limit, info.tokens_remaining, info.tokens_reset),
                (info.input_tokens_limit, info.input_tokens_remaining, info.input_tokens_reset),
            ):
                if reset is None or now >= reset or not limit or remaining is None:
                    continue
                if remaining < estimated_tokens:
                    return False

        if _exhausted(
            info.daily_requests_limit,
            info.daily_requests_remaining,
            info.daily_requests_reset,
            now,
        ):
            return False

        if info.credits_limit and info.credits_remaining is not None:
            if info.credits_remaining <= 0:
                return False
        return True


def _exhausted(
    limit: int | None, remaining: int | None, reset: datetime | None, now: datetime
) -> bool:
    if not limit or remaining is None:
        return False
    if reset is not None and now >= reset:
        return False
    return remaining <= 0


def _retry_after_deadline(info: RateLimitInfo) -> datetime:
    return info.timestamp + timedelta(seconds=info.retry_after or 0)


__all__ = ["RateLimitTracker", "DEFAULT_THROTTLE_THRESHOLD"]
