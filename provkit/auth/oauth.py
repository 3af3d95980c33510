"""
OAuth token lifecycle: expiry checks, refresh with single-flight
coalescing, credential rotation and persistence callbacks.

The interactive flows that obtain the first token live in
``provkit.auth.device`` (RFC 8628) and ``provkit.auth.pkce``
(authorization code + PKCE).
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel

from provkit.errors import AuthenticationError, OAuthError, ProviderError
from provkit.http.client import HTTPClient
from provkit.types import OAuthCredentialSet
from provkit.utils.logging import get_logger
from provkit.utils.retry import retry_async
from provkit.utils.tojson import from_json

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_REFRESH_SKEW = 60.0

TokenRefreshCallback = Callable[[OAuthCredentialSet], Awaitable[None] | None]


@dataclass
class OAuthEndpoints:
    token_url: str
    client_id: str
    client_secret: str = ""
    auth_url: str = ""
    device_code_url: str = ""
    scopes: list[str] = field(default_factory=list)
    extra_headers: dict[str, str] = field(default_factory=dict)


class TokenResponse(BaseModel):
    access_token: str = ""
    token_type: str = ""
    expires_in: int | None = None
    refresh_token: str = ""
    scope: str = ""
    error: str = ""
    error_description: str = ""

    def to_credential(
        self,
        credential_id: str,
        endpoints: OAuthEndpoints,
        now: datetime | None = None,
    ) -> OAuthCredentialSet:
        now = now or utcnow()
        scopes = self.scope.split() if self.scope else list(endpoints.scopes)
        return OAuthCredentialSet(
            id=credential_id,
            client_id=endpoints.client_id,
            client_secret=endpoints.client_secret,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=format_rfc3339(now + timedelta(seconds=self.expires_in))
            if self.expires_in
            else None,
            scopes=scopes,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_expiry(credential: OAuthCredentialSet) -> datetime | None:
    if not credential.expires_at:
        return None
    text = credential.expires_at.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def needs_refresh(
    credential: OAuthCredentialSet,
    skew: float = DEFAULT_REFRESH_SKEW,
    now: datetime | None = None,
) -> bool:
    """True when the token expires within ``skew`` seconds (or has no token)."""
    if not credential.access_token:
        return True
    expiry = parse_expiry(credential)
    if expiry is None:
        return False
    now = now or utcnow()
    return (expiry - now).total_seconds() <= skew


def parse_token_response(body: bytes) -> TokenResponse:
    try:
        data = from_json(body) if body else {}
    except ValueError as e:
        raise OAuthError(f"invalid token response: {e}") from e
    if not isinstance(data, dict):
        raise OAuthError("invalid token response: expected a JSON object")
    return TokenResponse.model_validate(data)


class OAuthCredentialManager:
    """
    Holds the OAuth credential sets of one provider.

    ``access_token()`` returns a token that is valid for at least the skew
    window, refreshing first if needed. Concurrent refreshes of the same
    credential id share one token-endpoint exchange.
    """

    def __init__(
        self,
        provider: str,
        endpoints: OAuthEndpoints,
        credentials: list[OAuthCredentialSet],
        http: HTTPClient | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
        refresh_skew: float = DEFAULT_REFRESH_SKEW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.endpoints = endpoints
        self._credentials = {cred.id: cred for cred in credentials}
        self._order = [cred.id for cred in credentials]
        self._current = 0
        self._http = http or HTTPClient(provider=provider)
        self._owns_http = http is None
        self.on_token_refresh = on_token_refresh
        self.refresh_skew = refresh_skew
        self._clock = clock
        self._inflight: dict[str, asyncio.Future] = {}

    # ── credential access ────────────────────────────────────────────

    def has_credentials(self) -> bool:
        return bool(self._order)

    def credentials(self) -> list[OAuthCredentialSet]:
        return [self._credentials[cid].model_copy() for cid in self._order]

    def get(self, credential_id: str) -> OAuthCredentialSet:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise AuthenticationError(
                f"unknown OAuth credential {credential_id!r}",
                provider=self.provider,
                operation="get_credential",
            ) from None

    def current(self) -> OAuthCredentialSet:
        if not self._order:
            raise AuthenticationError(
                "no OAuth credentials configured",
                provider=self.provider,
                operation="get_credential",
            )
        return self._credentials[self._order[self._current % len(self._order)]]

    def rotate(self) -> OAuthCredentialSet:
        if self._order:
            self._current = (self._current + 1) % len(self._order)
        return self.current()

    async def access_token(self, credential_id: str | None = None) -> str:
        credential = self.get(credential_id) if credential_id else self.current()
        if needs_refresh(credential, self.refresh_skew, self._clock()):
            credential = await self.refresh(credential.id)
        return credential.access_token

    # ── refresh ──────────────────────────────────────────────────────

    async def refresh(self, credential_id: str) -> OAuthCredentialSet:
        """Refresh one credential; callers arriving mid-refresh share the result."""
        future = self._inflight.get(credential_id)
        if future is None:
            future = asyncio.ensure_future(self._refresh(credential_id))
            self._inflight[credential_id] = future
            future.add_done_callback(lambda _: self._inflight.pop(credential_id, None))
        return await asyncio.shield(future)

    async def _refresh(self, credential_id: str) -> OAuthCredentialSet:
        credential = self.get(credential_id)
        if not credential.refresh_token:
            raise AuthenticationError(
                "token expired and no refresh token is available; re-authenticate",
                provider=self.provider,
                operation="refresh_token",
            )

        logger.info("token_refresh_started", provider=self.provider, credential_id=credential_id)
        try:
            token = await self._exchange_refresh_token(credential)
        except ProviderError as e:
            logger.error(
                "token_refresh_failed",
                provider=self.provider,
                credential_id=credential_id,
                error=str(e),
            )
            raise

        refreshed = credential.model_copy(
            update={
                "access_token": token.access_token,
                "refresh_token": token.refresh_token or credential.refresh_token,
                "expires_at": format_rfc3339(
                    self._clock() + timedelta(seconds=token.expires_in)
                )
                if token.expires_in
                else credential.expires_at,
                "scopes": token.scope.split() if token.scope else credential.scopes,
            }
        )
        self._credentials[credential_id] = refreshed
        logger.info(
            "token_refresh_completed",
            provider=self.provider,
            credential_id=credential_id,
            expires_at=refreshed.expires_at,
        )

        if self.on_token_refresh is not None:
            result = self.on_token_refresh(refreshed)
            if inspect.isawaitable(result):
                await result
        return refreshed

    @retry_async(max_attempts=3, min_wait=1.0, max_wait=10.0)
    async def _exchange_refresh_token(self, credential: OAuthCredentialSet) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": credential.client_id or self.endpoints.client_id,
        }
        secret = credential.client_secret or self.endpoints.client_secret
        if secret:
            form["client_secret"] = secret

        response = await self._http.request(
            "POST",
            self.endpoints.token_url,
            data=form,
            headers={"Accept": "application/json", **self.endpoints.extra_headers},
            operation="refresh_token",
        )
        if response.status_code != 200:
            raise AuthenticationError(
                f"token refresh failed: {response.text.strip()}",
                provider=self.provider,
                operation="refresh_token",
                status_code=response.status_code,
            )
        token = parse_token_response(response.content)
        if token.error or not token.access_token:
            raise AuthenticationError(
                f"token refresh failed: {token.error_description or token.error or 'no access token'}",
                provider=self.provider,
                operation="refresh_token",
            )
        return token

    # ── failover ─────────────────────────────────────────────────────

    async def execute_with_failover(self, operation: Callable[[str], Awaitable[T]]) -> T:
        """
        Run ``operation(access_token)``.

        On an authentication error the current credential is force-refreshed
        once and the operation retried; if that also fails the next
        credential set is tried.
        """
        if not self._order:
            raise AuthenticationError(
                "no OAuth credentials configured", provider=self.provider, operation="execute"
            )

        last_error: ProviderError | None = None
        for _ in range(len(self._order)):
            credential = self.current()
            try:
                token = await self.access_token(credential.id)
                try:
                    return await operation(token)
                except AuthenticationError:
                    refreshed = await self.refresh(credential.id)
                    return await operation(refreshed.access_token)
            except AuthenticationError as e:
                last_error = e
                logger.warning(
                    "oauth_credential_failed",
                    provider=self.provider,
                    credential_id=credential.id,
                    error=str(e),
                )
                self.rotate()
        assert last_error is not None
        raise last_error

    def auth_status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            cid: {
                "expires_at": cred.expires_at,
                "needs_refresh": needs_refresh(cred, self.refresh_skew, now),
                "has_refresh_token": bool(cred.refresh_token),
            }
            for cid, cred in self._credentials.items()
        }

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()


__all__ = [
    "OAuthEndpoints",
    "OAuthCredentialManager",
    "TokenResponse",
    "needs_refresh",
    "parse_expiry",
    "parse_token_response",
    "format_rfc3339",
]
