from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitInfo:
    """
    Rate-limit state reported by a provider for one model.

    Counters a provider does not report stay None. Reset fields are absolute
    instants; ``retry_after`` is seconds from ``timestamp``.
    """

    provider: str
    model: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    requests_limit: int | None = None
    requests_remaining: int | None = None
    requests_reset: datetime | None = None

    tokens_limit: int | None = None
    tokens_remaining: int | None = None
    tokens_reset: datetime | None = None

    # Anthropic input/output split
    input_tokens_limit: int | None = None
    input_tokens_remaining: int | None = None
    input_tokens_reset: datetime | None = None
    output_tokens_limit: int | None = None
    output_tokens_remaining: int | None = None
    output_tokens_reset: datetime | None = None

    # Cerebras daily counters
    daily_requests_limit: int | None = None
    daily_requests_remaining: int | None = None
    daily_requests_reset: datetime | None = None

    # OpenRouter credit balance
    credits_limit: float | None = None
    credits_remaining: float | None = None
    is_free_tier: bool = False

    request_id: str = ""
    retry_after: float | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)

    def reset_instants(self) -> list[datetime]:
        return [
            t
            for t in (
                self.requests_reset,
                self.tokens_reset,
                self.input_tokens_reset,
                self.output_tokens_reset,
                self.daily_requests_reset,
            )
            if t is not None
        ]


__all__ = ["RateLimitInfo", "utcnow"]
