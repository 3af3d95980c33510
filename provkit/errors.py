"""
Error taxonomy shared by every provider adapter.

Every error raised across the public surface is a ProviderError carrying the
provider tag, the operation name, an optional HTTP status and an optional
underlying cause.
"""

from enum import Enum


class ErrorCode(str, Enum):
    UNKNOWN = "unknown"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CANCELLED = "cancelled"
    DECODER = "decoder"
    CONTEXT_LENGTH = "context_length"
    CONTENT_FILTER = "content_filter"


RETRYABLE_CODES = frozenset(
    {
        ErrorCode.RATE_LIMIT,
        ErrorCode.SERVER_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.NETWORK,
    }
)


class ProviderError(Exception):
    """Base exception for provider failures."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        operation: str = "",
        status_code: int | None = None,
        cause: BaseException | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
        code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.cause = cause
        self.retry_after = retry_after
        self.request_id = request_id
        if code is not None:
            self.code = code
        if cause is not None:
            self.__cause__ = cause

    @property
    def is_retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __str__(self) -> str:
        text = self.message
        if self.provider:
            text = f"[{self.provider}] {text}"
        details = []
        if self.status_code:
            details.append(f"status={self.status_code}")
        details.append(f"code={self.code.value}")
        text = f"{text} ({', '.join(details)})"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text


class AuthenticationError(ProviderError):
    """Missing or rejected credential."""

    code = ErrorCode.AUTHENTICATION


class NotFoundError(ProviderError):
    """Model or resource absent at the provider."""

    code = ErrorCode.NOT_FOUND


class InvalidRequestError(ProviderError):
    """Malformed options or schema. Never retried."""

    code = ErrorCode.INVALID_REQUEST


class ValidationError(InvalidRequestError):
    """Options rejected locally before any request is sent."""

    pass


class RateLimitError(ProviderError):
    code = ErrorCode.RATE_LIMIT


class ServerError(ProviderError):
    code = ErrorCode.SERVER_ERROR


class NetworkError(ProviderError):
    code = ErrorCode.NETWORK


class DeadlineExceededError(ProviderError):
    code = ErrorCode.TIMEOUT


class RequestCancelledError(ProviderError):
    """The caller's cancellation handle fired."""

    code = ErrorCode.CANCELLED


class DecoderError(ProviderError):
    """A stream event could not be decoded and the stream cannot continue."""

    code = ErrorCode.DECODER


class ContextLengthError(InvalidRequestError):
    code = ErrorCode.CONTEXT_LENGTH


class ContentFilterError(ProviderError):
    code = ErrorCode.CONTENT_FILTER


class UnsupportedOperationError(InvalidRequestError):
    """Operation not available for this provider or endpoint."""

    pass


class OAuthError(Exception):
    """OAuth authorization failed (denied, CSRF mismatch, bad token response)."""

    pass


class OAuthTimeoutError(OAuthError):
    """The user did not complete authorization in time."""

    pass


class CredentialPersistenceError(Exception):
    """Credentials could not be written to the config file."""

    pass


_STATUS_ERRORS: dict[int, type[ProviderError]] = {
    400: InvalidRequestError,
    401: AuthenticationError,
    403: AuthenticationError,
    404: NotFoundError,
    429: RateLimitError,
}


def classify_http_error(
    status_code: int,
    body: str = "",
    *,
    provider: str = "",
    operation: str = "",
    retry_after: float | None = None,
    request_id: str | None = None,
) -> ProviderError:
    """Build the ProviderError matching an HTTP error status."""
    error_cls = _STATUS_ERRORS.get(status_code)
    if error_cls is None:
        error_cls = ServerError if status_code >= 500 else ProviderError

    message = body.strip() or f"HTTP {status_code}"
    return error_cls(
        message,
        provider=provider,
        operation=operation,
        status_code=status_code,
        retry_after=retry_after,
        request_id=request_id,
    )


__all__ = [
    "ErrorCode",
    "ProviderError",
    "AuthenticationError",
    "NotFoundError",
    "InvalidRequestError",
    "ValidationError",
    "RateLimitError",
    "ServerError",
    "NetworkError",
    "DeadlineExceededError",
    "RequestCancelledError",
    "DecoderError",
    "ContextLengthError",
    "ContentFilterError",
    "UnsupportedOperationError",
    "OAuthError",
    "OAuthTimeoutError",
    "CredentialPersistenceError",
    "classify_http_error",
]
