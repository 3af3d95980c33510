"""
Provider-specific rate-limit header parsers.

Each parser turns one HTTP response's headers into a RateLimitInfo. Header
lookups are case-insensitive; headers that are absent or malformed leave the
corresponding field unset.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping

from provkit.ratelimit.models import RateLimitInfo, utcnow

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|h|m|s)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


# ═══════════════════════════════════════════════════════════════════════
# Value helpers
# ═══════════════════════════════════════════════════════════════════════


def parse_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def parse_duration(value: str | None) -> float | None:
    """Parse durations such as ``"1s"``, ``"6m0s"``, ``"20ms"``, ``"1h2m3.5s"`` to seconds."""
    if not value:
        return None
    value = value.strip()
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value) or pos == 0:
        return None
    return total


def parse_rfc3339(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_retry_after(value: str | None, now: datetime) -> float | None:
    """Retry-After as delta seconds or an HTTP date."""
    if not value:
        return None
    seconds = parse_float(value)
    if seconds is not None:
        return max(seconds, 0.0)
    try:
        when = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def _get(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None and not hasattr(headers, "get_list"):
        lowered = name.lower()
        for key, val in headers.items():
            if key.lower() == lowered:
                return val
    return value


# ═══════════════════════════════════════════════════════════════════════
# Parsers
# ═══════════════════════════════════════════════════════════════════════


class RateLimitParser(ABC):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    @abstractmethod
    def provider_name(self) -> str: ...

    @abstractmethod
    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo: ...

    def _new_info(self, model: str) -> RateLimitInfo:
        return RateLimitInfo(provider=self.provider_name(), model=model, timestamp=self._clock())


class OpenAIParser(RateLimitParser):
    """``x-ratelimit-*`` headers; resets are durations like ``6m0s``."""

    def provider_name(self) -> str:
        return "openai"

    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo:
        info = self._new_info(model)
        now = info.timestamp

        info.requests_limit = parse_int(_get(headers, "x-ratelimit-limit-requests"))
        info.requests_remaining = parse_int(_get(headers, "x-ratelimit-remaining-requests"))
        info.tokens_limit = parse_int(_get(headers, "x-ratelimit-limit-tokens"))
        info.tokens_remaining = parse_int(_get(headers, "x-ratelimit-remaining-tokens"))

        if (d := parse_duration(_get(headers, "x-ratelimit-reset-requests"))) is not None:
            info.requests_reset = now + timedelta(seconds=d)
        if (d := parse_duration(_get(headers, "x-ratelimit-reset-tokens"))) is not None:
            info.tokens_reset = now + timedelta(seconds=d)

        info.request_id = _get(headers, "x-request-id") or ""
        info.retry_after = parse_retry_after(_get(headers, "retry-after"), now)
        return info


class AnthropicParser(RateLimitParser):
    """``anthropic-ratelimit-*`` headers with RFC 3339 resets and input/output split."""

    def provider_name(self) -> str:
        return "anthropic"

    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo:
        info = self._new_info(model)
        prefix = "anthropic-ratelimit-"

        for kind, attr in (
            ("requests", "requests"),
            ("tokens", "tokens"),
            ("input-tokens", "input_tokens"),
            ("output-tokens", "output_tokens"),
        ):
            setattr(info, f"{attr}_limit", parse_int(_get(headers, f"{prefix}{kind}-limit")))
            setattr(
                info, f"{attr}_remaining", parse_int(_get(headers, f"{prefix}{kind}-remaining"))
            )
            setattr(info, f"{attr}_reset", parse_rfc3339(_get(headers, f"{prefix}{kind}-reset")))

        info.request_id = _get(headers, "request-id") or ""
        info.retry_after = parse_retry_after(_get(headers, "retry-after"), info.timestamp)
        return info


class GeminiParser(RateLimitParser):
    """Gemini reports only ``retry-after`` on 429 responses."""

    def provider_name(self) -> str:
        return "gemini"

    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo:
        info = self._new_info(model)
        info.retry_after = parse_retry_after(_get(headers, "retry-after"), info.timestamp)
        info.request_id = _get(headers, "x-request-id") or ""
        return info


class CerebrasParser(RateLimitParser):
    """
    Per-minute and per-day counters; resets are float seconds from now.

    ``requests-minute`` maps to the request window, ``tokens-minute`` to the
    token window and ``requests-day`` to the daily counters.
    """

    def provider_name(self) -> str:
        return "cerebras"

    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo:
        info = self._new_info(model)
        now = info.timestamp

        def window(suffix: str) -> tuple[int | None, int | None, datetime | None]:
            limit = parse_int(_get(headers, f"x-ratelimit-limit-{suffix}"))
            remaining = parse_int(_get(headers, f"x-ratelimit-remaining-{suffix}"))
            seconds = parse_float(_get(headers, f"x-ratelimit-reset-{suffix}"))
            reset = now + timedelta(seconds=seconds) if seconds is not None else None
            return limit, remaining, reset

        info.requests_limit, info.requests_remaining, info.requests_reset = window(
            "requests-minute"
        )
        info.tokens_limit, info.tokens_remaining, info.tokens_reset = window("tokens-minute")
        (
            info.daily_requests_limit,
            info.daily_requests_remaining,
            info.daily_requests_reset,
        ) = window("requests-day")

        info.request_id = _get(headers, "cerebras-request-id") or ""
        info.retry_after = parse_retry_after(_get(headers, "retry-after"), now)
        if (value := parse_float(_get(headers, "cerebras-processing-time"))) is not None:
            info.custom_data["processing_time"] = value
        if region := _get(headers, "cerebras-region"):
            info.custom_data["region"] = region
        return info


class OpenRouterParser(RateLimitParser):
    """
    OpenRouter reports a credit balance in ``x-ratelimit-limit/remaining``.

    Integral values double as request counters. ``x-ratelimit-reset`` is an
    epoch timestamp in milliseconds shared by requests and tokens.
    """

    FREE_TIER_CREDIT_CEILING = 10.0

    def provider_name(self) -> str:
        return "openrouter"

    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo:
        info = self._new_info(model)

        if (limit := parse_float(_get(headers, "x-ratelimit-limit"))) is not None:
            info.credits_limit = limit
            if limit.is_integer():
                info.requests_limit = int(limit)
        if (remaining := parse_float(_get(headers, "x-ratelimit-remaining"))) is not None:
            info.credits_remaining = remaining
            if remaining.is_integer():
                info.requests_remaining = int(remaining)

        if (reset_ms := parse_int(_get(headers, "x-ratelimit-reset"))) is not None:
            reset = datetime.fromtimestamp(reset_ms / 1000.0, tz=timezone.utc)
            info.requests_reset = reset
            info.tokens_reset = reset

        if (requests := parse_int(_get(headers, "x-ratelimit-requests"))) is not None:
            info.requests_limit = requests
        if (tokens := parse_int(_get(headers, "x-ratelimit-tokens"))) is not None:
            info.tokens_limit = tokens

        if info.credits_limit and 0 < info.credits_limit <= self.FREE_TIER_CREDIT_CEILING:
            info.is_free_tier = True
        free_tier = (_get(headers, "x-ratelimit-free-tier") or "").strip().lower()
        if free_tier in ("true", "1", "t"):
            info.is_free_tier = True
        elif free_tier in ("false", "0", "f"):
            info.is_free_tier = False

        info.request_id = _get(headers, "x-request-id") or ""
        info.retry_after = parse_retry_after(_get(headers, "retry-after"), info.timestamp)
        return info


class QwenParser(RateLimitParser):
    """
    Standard ``x-ratelimit-*`` headers with ``qwen-ratelimit-*`` fallbacks.

    Resets may be a duration (``1m30s``), an integer (seconds from now when
    below 1e9, otherwise an epoch timestamp) or an RFC 3339 instant.
    DashScope headers and request timing headers land in ``custom_data``.
    """

    def provider_name(self) -> str:
        return "qwen"

    def parse(self, headers: Mapping[str, str], model: str) -> RateLimitInfo:
        info = self._new_info(model)
        now = info.timestamp

        def pick(suffix: str) -> str | None:
            return _get(headers, f"x-ratelimit-{suffix}") or _get(
                headers, f"qwen-ratelimit-{suffix}"
            )

        info.requests_limit = parse_int(pick("limit-requests"))
        info.requests_remaining = parse_int(pick("remaining-requests"))
        info.requests_reset = self._parse_reset(pick("reset-requests"), now)
        info.tokens_limit = parse_int(pick("limit-tokens"))
        info.tokens_remaining = parse_int(pick("remaining-tokens"))
        info.tokens_reset = self._parse_reset(pick("reset-tokens"), now)

        info.request_id = _get(headers, "x-request-id") or _get(headers, "qwen-request-id") or ""
        info.retry_after = parse_retry_after(_get(headers, "retry-after"), now)

        for key, value in headers.items():
            lowered = key.lower()
            if lowered.startswith(("dashscope-ratelimit-", "x-dashscope-ratelimit-")):
                info.custom_data[lowered] = value
        for key in ("req-cost-time", "req-cost-time-ms", "req-arrive-time", "resp-start-time"):
            if (value := _get(headers, key)) is not None:
                info.custom_data[key] = value
        return info

    @staticmethod
    def _parse_reset(value: str | None, now: datetime) -> datetime | None:
        if not value:
            return None
        if (seconds := parse_duration(value)) is not None:
            return now + timedelta(seconds=seconds)
        if (number := parse_int(value)) is not None:
            if number < 1_000_000_000:
                return now + timedelta(seconds=number)
            return datetime.fromtimestamp(number, tz=timezone.utc)
        return parse_rfc3339(value)


PARSERS: dict[str, type[RateLimitParser]] = {
    "openai": OpenAIParser,
    "anthropic": AnthropicParser,
    "gemini": GeminiParser,
    "cerebras": CerebrasParser,
    "openrouter": OpenRouterParser,
    "qwen": QwenParser,
}


__all__ = [
    "RateLimitParser",
    "OpenAIParser",
    "AnthropicParser",
    "GeminiParser",
    "CerebrasParser",
    "OpenRouterParser",
    "QwenParser",
    "PARSERS",
    "parse_duration",
    "parse_retry_after",
    "parse_rfc3339",
]
