from provkit.http.backoff import BackoffConfig, calculate_backoff
from provkit.http.client import (
    HTTPClient,
    HTTPClientConfig,
    HTTPMetrics,
    InterceptorError,
    high_concurrency_config,
)

__all__ = [
    "BackoffConfig",
    "calculate_backoff",
    "HTTPClient",
    "HTTPClientConfig",
    "HTTPMetrics",
    "InterceptorError",
    "high_concurrency_config",
]
