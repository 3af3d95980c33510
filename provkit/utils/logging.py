"""
Structured logging for provkit.

Built on structlog with:
- Human-readable console output by default, JSON output with LOG_JSON=true
- Request ID and provider context tracking
- Redaction of credentials (API keys, OAuth tokens, client secrets)

Usage:
    from provkit.utils.logging import get_logger

    logger = get_logger(__name__)
    logger.info("chat_request", provider="ollama", model="llama3.1:8b")
    logger.error("token_refresh_failed", credential_id=cred_id, error=str(e))
"""

import logging
import os
import sys
from contextvars import ContextVar

import structlog
from structlog.types import FilteringBoundLogger

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
provider_var: ContextVar[str | None] = ContextVar("provider", default=None)


SENSITIVE_KEYS = {
    "password",
    "api_key",
    "apikey",
    "secret",
    "authorization",
    "access_token",
    "refresh_token",
    "device_code",
    "code_verifier",
}

# Counters that look sensitive by substring but are plain numbers
ALLOWED_KEYS = {
    "tokens",
    "total_tokens",
    "prompt_tokens",
    "completion_tokens",
    "input_tokens",
    "output_tokens",
    "estimated_tokens",
    "tokens_remaining",
    "tokens_limit",
}


def filter_sensitive_data(
    logger: FilteringBoundLogger, method_name: str, event_dict: dict
) -> dict:
    """Replace credential-bearing values with a redaction marker."""
    for key in list(event_dict.keys()):
        if key in ALLOWED_KEYS:
            continue
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            event_dict[key] = "***REDACTED***"
    return event_dict


def add_context(
    logger: FilteringBoundLogger, method_name: str, event_dict: dict
) -> dict:
    if request_id := request_id_var.get():
        event_dict.setdefault("request_id", request_id)
    if provider := provider_var.get():
        event_dict.setdefault("provider", provider)
    return event_dict


def configure_logging(
    log_level: str = "INFO", json_logs: bool = False, log_file: str | None = None
) -> None:
    """
    Configure structlog with the provkit processor chain.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, render JSON lines instead of console output
        log_file: Optional file path to also write logs to
    """
    log_level = os.getenv("LOG_LEVEL", log_level).upper()
    json_logs = os.getenv("LOG_JSON", str(json_logs)).lower() in ("true", "1", "yes")

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level, logging.INFO),
    )

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        logging.getLogger().addHandler(file_handler)

    processors = [
        structlog.contextvars.merge_contextvars,
        add_context,
        filter_sensitive_data,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=False,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "provkit") -> FilteringBoundLogger:
    """
    Get a configured logger instance.

    Example:
        logger = get_logger(__name__)
        logger.info("models_fetched", provider="openai", count=42)
    """
    return structlog.get_logger(name)


def set_request_context(
    request_id: str | None = None, provider: str | None = None
) -> None:
    """Bind request tracking values to every log entry in the current context."""
    if request_id:
        request_id_var.set(request_id)
    if provider:
        provider_var.set(provider)


def clear_request_context() -> None:
    request_id_var.set(None)
    provider_var.set(None)


configure_logging()

logger = get_logger("provkit")


__all__ = [
    "get_logger",
    "configure_logging",
    "set_request_context",
    "clear_request_context",
    "logger",
]
