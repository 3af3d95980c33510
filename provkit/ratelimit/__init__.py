from provkit.ratelimit.models import RateLimitInfo
from provkit.ratelimit.parsers import (
    PARSERS,
    AnthropicParser,
    CerebrasParser,
    GeminiParser,
    OpenAIParser,
    OpenRouterParser,
    QwenParser,
    RateLimitParser,
)
from provkit.ratelimit.tracker import RateLimitTracker

__all__ = [
    "RateLimitInfo",
    "RateLimitTracker",
    "RateLimitParser",
    "PARSERS",
    "AnthropicParser",
    "CerebrasParser",
    "GeminiParser",
    "OpenAIParser",
    "OpenRouterParser",
    "QwenParser",
]
