"""
Truncated exponential backoff.

    delay(n) = base * multiplier * 2^(n - 1), capped at max_delay

Attempt 0 (and negative attempts) return the base delay.
"""

from dataclasses import dataclass

# 2^30 * any sane base already exceeds every practical max_delay
_MAX_SHIFT = 30


@dataclass(frozen=True)
class BackoffConfig:
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")


def calculate_backoff(config: BackoffConfig, attempt: int) -> float:
    """Delay in seconds before retry ``attempt``."""
    if attempt <= 0:
        return config.base_delay

    exponent = min(attempt - 1, _MAX_SHIFT)
    delay = config.base_delay * (1 << exponent) * config.multiplier
    return min(delay, config.max_delay)


class BackoffWait:
    """tenacity wait strategy computing calculate_backoff for the upcoming retry."""

    def __init__(self, config: BackoffConfig) -> None:
        self.config = config

    def __call__(self, retry_state) -> float:
        # attempt_number counts attempts already made, which is the retry index
        return calculate_backoff(self.config, retry_state.attempt_number)


__all__ = ["BackoffConfig", "calculate_backoff", "BackoffWait"]
