"""
OAuth 2.0 device authorization grant (RFC 8628).

The flow requests a device code, shows the verification URL and user code,
then polls the token endpoint. ``authorization_pending`` keeps polling,
``slow_down`` doubles the interval, ``access_denied`` and
``expired_token`` end the flow.
"""

import uuid
import webbrowser
from typing import Callable

from pydantic import BaseModel

from provkit.auth.oauth import OAuthEndpoints, TokenResponse, parse_token_response
from provkit.auth.pkce import PKCEPair, generate_pkce
from provkit.errors import OAuthError, OAuthTimeoutError, RequestCancelledError
from provkit.http.client import HTTPClient
from provkit.types import OAuthCredentialSet
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLLS = 60


class DeviceAuthorization(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str = ""
    verification_uri_complete: str = ""
    expires_in: int = 0
    interval: float | None = None

    @property
    def url(self) -> str:
        return self.verification_uri_complete or self.verification_uri


class DeviceCodeFlow:
    def __init__(
        self,
        endpoints: OAuthEndpoints,
        http: HTTPClient | None = None,
        use_pkce: bool = True,
        max_polls: int = DEFAULT_MAX_POLLS,
        default_interval: float = DEFAULT_POLL_INTERVAL,
        open_browser: Callable[[str], object] | None = webbrowser.open,
        display: Callable[[str], None] = print,
        credential_id: str = "default",
    ) -> None:
        self.endpoints = endpoints
        self.http = http or HTTPClient(provider="oauth")
        self.use_pkce = use_pkce
        self.max_polls = max_polls
        self.default_interval = default_interval
        self.open_browser = open_browser
        self.display = display
        self.credential_id = credential_id

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "x-request-id": str(uuid.uuid4()),
            **self.endpoints.extra_headers,
        }

    async def request_device_code(self, pkce: PKCEPair | None = None) -> DeviceAuthorization:
        form = {
            "client_id": self.endpoints.client_id,
            "scope": " ".join(self.endpoints.scopes),
        }
        if pkce is not None:
            form["code_challenge"] = pkce.challenge
            form["code_challenge_method"] = pkce.method

        response = await self.http.request(
            "POST",
            self.endpoints.device_code_url,
            data=form,
            headers=self._headers(),
            operation="device_code",
        )
        if response.status_code != 200:
            raise OAuthError(
                f"device code request failed ({response.status_code}): {response.text.strip()}"
            )
        try:
            return DeviceAuthorization.model_validate_json(response.content)
        except ValueError as e:
            raise OAuthError(f"invalid device code response: {e}") from e

    async def poll_token(
        self,
        device: DeviceAuthorization,
        pkce: PKCEPair | None = None,
        signal: AbortSignal | None = None,
    ) -> TokenResponse:
        interval = device.interval or self.default_interval
        signal = signal or AbortSignal()

        for attempt in range(1, self.max_polls + 1):
            if not await signal.sleep(interval):
                raise RequestCancelledError(
                    signal.reason or "device authorization cancelled", operation="poll_token"
                )

            form = {
                "grant_type": DEVICE_CODE_GRANT,
                "device_code": device.device_code,
                "client_id": self.endpoints.client_id,
            }
            if pkce is not None:
                form["code_verifier"] = pkce.verifier

            response = await self.http.request(
                "POST",
                self.endpoints.token_url,
                data=form,
                headers=self._headers(),
                operation="poll_token",
            )
            token = parse_token_response(response.content)

            if response.status_code == 200 and token.access_token:
                logger.info("device_authorization_granted", attempts=attempt)
                return token

            error = token.error
            if error == "authorization_pending":
                logger.debug("device_authorization_pending", attempt=attempt)
                continue
            if error == "slow_down":
                interval *= 2
                logger.info("device_authorization_slow_down", interval=interval)
                continue
            if error == "access_denied":
                raise OAuthError("authorization denied by user")
            if error == "expired_token":
                raise OAuthTimeoutError("device code expired before authorization completed")
            raise OAuthError(
                f"token polling failed ({response.status_code}): "
                f"{token.error_description or error or response.text.strip()}"
            )

        raise OAuthTimeoutError(f"authorization not completed after {self.max_polls} polls")

    async def run(self, signal: AbortSignal | None = None) -> OAuthCredentialSet:
        pkce = generate_pkce() if self.use_pkce else None
        device = await self.request_device_code(pkce)

        self.display(
            f"To authorize, visit:\n\n  {device.url}\n\nand enter the code: {device.user_code}\n"
        )
        if self.open_browser is not None:
            try:
                self.open_browser(device.url)
            except webbrowser.Error as e:
                logger.warning("browser_open_failed", error=str(e))

        token = await self.poll_token(device, pkce, signal)
        return token.to_credential(self.credential_id, self.endpoints)


__all__ = ["DeviceCodeFlow", "DeviceAuthorization", "DEVICE_CODE_GRANT"]
