import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from provkit.auth.device import DEVICE_CODE_GRANT, DeviceCodeFlow
from provkit.auth.oauth import OAuthEndpoints
from provkit.errors import OAuthError, OAuthTimeoutError, RequestCancelledError
from provkit.http.client import HTTPClient
from provkit.utils.abort_signal import AbortSignal

ENDPOINTS = OAuthEndpoints(
    token_url="https://chat.test/api/v1/oauth2/token",
    device_code_url="https://chat.test/api/v1/oauth2/device/code",
    client_id="client-1",
    scopes=["openid", "model.completion"],
)


class FakeAuthServer:
    """Device-code endpoint plus a token endpoint replaying scripted replies."""

    def __init__(self, token_replies, interval=0.001):
        self.token_replies = list(token_replies)
        self.interval = interval
        self.device_requests = []
        self.token_requests = []
        self.headers = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.headers.append(request.headers)
        if request.url.path.endswith("/device/code"):
            self.device_requests.append(form)
            return httpx.Response(
                200,
                json={
                    "device_code": "dev-123",
                    "user_code": "ABCD-EFGH",
                    "verification_uri": "https://chat.test/authorize",
                    "verification_uri_complete": "https://chat.test/authorize?user_code=ABCD-EFGH",
                    "expires_in": 600,
                    "interval": self.interval,
                },
            )
        self.token_requests.append(form)
        status, body = self.token_replies.pop(0)
        return httpx.Response(status, json=body)


def _flow(server, **kwargs) -> DeviceCodeFlow:
    kwargs.setdefault("open_browser", None)
    kwargs.setdefault("display", lambda text: None)
    return DeviceCodeFlow(
        ENDPOINTS, http=HTTPClient(transport=httpx.MockTransport(server)), **kwargs
    )


PENDING = (400, {"error": "authorization_pending"})
GRANTED = (200, {"access_token": "at", "refresh_token": "rt", "expires_in": 7200})


@pytest.mark.asyncio
async def test_polls_until_granted():
    server = FakeAuthServer([PENDING, PENDING, GRANTED])
    shown = []
    credential = await _flow(server, display=shown.append, credential_id="main").run()

    assert credential.id == "main"
    assert credential.access_token == "at"
    assert credential.client_id == "client-1"
    assert len(server.token_requests) == 3
    assert "ABCD-EFGH" in shown[0]
    assert "https://chat.test/authorize?user_code=ABCD-EFGH" in shown[0]


@pytest.mark.asyncio
async def test_pkce_challenge_and_verifier_sent():
    server = FakeAuthServer([GRANTED])
    await _flow(server).run()

    device_form = server.device_requests[0]
    token_form = server.token_requests[0]
    assert device_form["client_id"] == "client-1"
    assert device_form["scope"] == "openid model.completion"
    assert device_form["code_challenge_method"] == "S256"
    assert token_form["grant_type"] == DEVICE_CODE_GRANT
    assert token_form["device_code"] == "dev-123"
    assert len(token_form["code_verifier"]) == 43
    assert all("x-request-id" in headers for headers in server.headers)


@pytest.mark.asyncio
async def test_without_pkce():
    server = FakeAuthServer([GRANTED])
    await _flow(server, use_pkce=False).run()
    assert "code_challenge" not in server.device_requests[0]
    assert "code_verifier" not in server.token_requests[0]


@pytest.mark.asyncio
async def test_slow_down_doubles_interval(monkeypatch):
    server = FakeAuthServer([(400, {"error": "slow_down"}), GRANTED], interval=0.002)
    slept = []
    original_sleep = AbortSignal.sleep

    async def recording_sleep(self, seconds):
        slept.append(seconds)
        return await original_sleep(self, seconds)

    monkeypatch.setattr(AbortSignal, "sleep", recording_sleep)
    await _flow(server).run()
    assert slept == [0.002, 0.004]


@pytest.mark.asyncio
async def test_access_denied():
    server = FakeAuthServer([PENDING, (400, {"error": "access_denied"})])
    with pytest.raises(OAuthError, match="denied"):
        await _flow(server).run()


@pytest.mark.asyncio
async def test_expired_token_is_a_timeout():
    server = FakeAuthServer([(400, {"error": "expired_token"})])
    with pytest.raises(OAuthTimeoutError):
        await _flow(server).run()


@pytest.mark.asyncio
async def test_gives_up_after_max_polls():
    server = FakeAuthServer([PENDING] * 3)
    with pytest.raises(OAuthTimeoutError, match="3 polls"):
        await _flow(server, max_polls=3).run()


@pytest.mark.asyncio
async def test_unexpected_error():
    server = FakeAuthServer([(403, {"error": "unauthorized_client", "error_description": "boom"})])
    with pytest.raises(OAuthError, match="boom"):
        await _flow(server).run()


@pytest.mark.asyncio
async def test_device_code_request_rejected():
    def handler(request):
        return httpx.Response(401, json={"error": "invalid_client"})

    flow = DeviceCodeFlow(ENDPOINTS, http=HTTPClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(OAuthError, match="device code request failed"):
        await flow.request_device_code()


@pytest.mark.asyncio
async def test_cancellation_stops_polling():
    server = FakeAuthServer([PENDING] * 100, interval=0.01)
    signal = AbortSignal()
    task = asyncio.create_task(_flow(server).run(signal))
    await asyncio.sleep(0.05)
    signal.abort("user quit")
    with pytest.raises(RequestCancelledError, match="user quit"):
        await task
