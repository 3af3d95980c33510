"""
OAuth 2.0 authorization-code flow with PKCE (RFC 7636).

The verifier is 32 random bytes, base64url without padding; the challenge is
base64url(SHA-256(verifier)) and the verifier doubles as the ``state`` value.
A loopback listener is bound to the first free port of a small range before
the authorization URL is built, so the redirect URI always names a port we
own.
"""

import asyncio
import base64
import hashlib
import secrets
import webbrowser
from dataclasses import dataclass
from typing import Callable
from urllib.parse import parse_qs, urlencode, urlsplit

from provkit.auth.oauth import OAuthEndpoints, parse_token_response
from provkit.errors import OAuthError, OAuthTimeoutError, RequestCancelledError
from provkit.http.client import HTTPClient
from provkit.types import OAuthCredentialSet
from provkit.utils.abort_signal import AbortSignal
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CALLBACK_PORTS = range(8080, 8090)
DEFAULT_CALLBACK_PATH = "/oauth2callback"
DEFAULT_CALLBACK_TIMEOUT = 300.0

_SUCCESS_PAGE = (
    "<html><head><title>Authentication successful</title></head>"
    "<body><h1>Authentication successful</h1>"
    "<p>You can close this window and return to the terminal.</p></body></html>"
)
_FAILURE_PAGE = (
    "<html><head><title>Authentication failed</title></head>"
    "<body><h1>Authentication failed</h1><p>{reason}</p></body></html>"
)


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def code_challenge_s256(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = "S256"

    @property
    def state(self) -> str:
        return self.verifier


def generate_pkce() -> PKCEPair:
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=code_challenge_s256(verifier))


def validate_callback(params: dict[str, str], expected_state: str) -> str:
    """Return the authorization code, or raise OAuthError."""
    if error := params.get("error"):
        description = params.get("error_description", "")
        raise OAuthError(f"authorization failed: {error} {description}".strip())
    if params.get("state") != expected_state:
        raise OAuthError("state mismatch in OAuth callback (possible CSRF)")
    code = params.get("code")
    if not code:
        raise OAuthError("no authorization code in OAuth callback")
    return code


class CallbackServer:
    """Minimal loopback HTTP listener that captures one OAuth redirect."""

    def __init__(
        self,
        ports: range = DEFAULT_CALLBACK_PORTS,
        path: str = DEFAULT_CALLBACK_PATH,
        host: str = "127.0.0.1",
    ) -> None:
        self.ports = ports
        self.path = path
        self.host = host
        self.port: int | None = None
        self._server: asyncio.AbstractServer | None = None
        self._result: asyncio.Future | None = None

    @property
    def redirect_uri(self) -> str:
        if self.port is None:
            raise RuntimeError("callback server is not bound")
        # Same address the listener is bound to
        return f"http://{self.host}:{self.port}{self.path}"

    async def start(self) -> int:
        self._result = asyncio.get_running_loop().create_future()
        last_error: OSError | None = None
        for port in self.ports:
            try:
                self._server = await asyncio.start_server(self._handle, self.host, port)
            except OSError as e:
                last_error = e
                continue
            self.port = port
            logger.debug("oauth_callback_listening", port=port)
            return port
        raise OAuthError(
            f"no free callback port in {self.ports.start}-{self.ports.stop - 1}: {last_error}"
        )

    async def wait(self, timeout: float = DEFAULT_CALLBACK_TIMEOUT) -> dict[str, str]:
        if self._result is None:
            raise RuntimeError("callback server is not started")
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=timeout)
        except asyncio.TimeoutError:
            raise OAuthTimeoutError("timed out waiting for OAuth callback") from None

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request_line = (await reader.readline()).decode("latin-1").strip()
            # Drain headers
            while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                pass

            parts = request_line.split(" ")
            target = parts[1] if len(parts) >= 2 else "/"
            url = urlsplit(target)
            if url.path != self.path:
                self._respond(writer, 404, "<html><body>Not found</body></html>")
                return

            params = {k: v[0] for k, v in parse_qs(url.query).items() if v}
            if params.get("error"):
                self._respond(writer, 400, _FAILURE_PAGE.format(reason=params["error"]))
            else:
                self._respond(writer, 200, _SUCCESS_PAGE)
            if self._result is not None and not self._result.done():
                self._result.set_result(params)
        finally:
            await writer.drain()
            writer.close()

    @staticmethod
    def _respond(writer: asyncio.StreamWriter, status: int, body: str) -> None:
        reason = {200: "OK", 400: "Bad Request", 404: "Not Found"}[status]
        payload = body.encode("utf-8")
        writer.write(
            f"HTTP/1.1 {status} {reason}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n\r\n".encode("latin-1")
            + payload
        )


class AuthorizationCodeFlow:
    """
    Browser-based authorization with a loopback redirect.

    Example:
        flow = AuthorizationCodeFlow(endpoints, http)
        credential = await flow.run()
    """

    def __init__(
        self,
        endpoints: OAuthEndpoints,
        http: HTTPClient | None = None,
        ports: range = DEFAULT_CALLBACK_PORTS,
        callback_path: str = DEFAULT_CALLBACK_PATH,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        open_browser: Callable[[str], object] = webbrowser.open,
        display: Callable[[str], None] = print,
        credential_id: str = "default",
    ) -> None:
        self.endpoints = endpoints
        self.http = http or HTTPClient(provider="oauth")
        self.ports = ports
        self.callback_path = callback_path
        self.timeout = timeout
        self.open_browser = open_browser
        self.display = display
        self.credential_id = credential_id

    def build_auth_url(self, redirect_uri: str, pkce: PKCEPair) -> str:
        params = {
            "client_id": self.endpoints.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.endpoints.scopes),
            "state": pkce.state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.endpoints.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, pkce: PKCEPair, redirect_uri: str) -> OAuthCredentialSet:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.endpoints.client_id,
            "code_verifier": pkce.verifier,
        }
        if self.endpoints.client_secret:
            form["client_secret"] = self.endpoints.client_secret

        response = await self.http.request(
            "POST",
            self.endpoints.token_url,
            data=form,
            headers={"Accept": "application/json"},
            operation="exchange_code",
        )
        token = parse_token_response(response.content)
        if response.status_code != 200 or token.error or not token.access_token:
            detail = token.error_description or token.error or response.text.strip()
            raise OAuthError(f"token exchange failed ({response.status_code}): {detail}")
        return token.to_credential(self.credential_id, self.endpoints)

    async def run(self, signal: AbortSignal | None = None) -> OAuthCredentialSet:
        pkce = generate_pkce()
        server = CallbackServer(self.ports, self.callback_path)
        await server.start()
        try:
            redirect_uri = server.redirect_uri
            auth_url = self.build_auth_url(redirect_uri, pkce)
            self.display(f"Open this URL to authorize:\n\n  {auth_url}\n")
            try:
                self.open_browser(auth_url)
            except webbrowser.Error as e:
                logger.warning("browser_open_failed", error=str(e))

            wait = server.wait(self.timeout)
            if signal is not None:
                try:
                    params = await signal.guard(wait)
                except asyncio.CancelledError:
                    if not signal.is_aborted():
                        raise
                    raise RequestCancelledError(
                        signal.reason or "authorization cancelled", operation="oauth_callback"
                    ) from None
            else:
                params = await wait

            code = validate_callback(params, pkce.state)
            logger.info("oauth_code_received", port=server.port)
            return await self.exchange_code(code, pkce, redirect_uri)
        finally:
            await server.close()


__all__ = [
    "PKCEPair",
    "generate_pkce",
    "generate_code_verifier",
    "code_challenge_s256",
    "validate_callback",
    "CallbackServer",
    "AuthorizationCodeFlow",
]
