import json

import httpx
import pytest

from provkit.types import ProviderConfig, ProviderType


def _sse(payloads, done: bool) -> bytes:
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class Recorder:
    """MockTransport handler returning scripted responses and keeping the requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(
            template.status_code, headers=template.headers, content=template.content
        )

    def body(self, index: int = -1):
        return json.loads(self.requests[index].content)


@pytest.fixture
def sse_response():
    """Event-stream response with one ``data:`` event per payload (dicts are JSON-encoded)."""

    def make(*payloads, done: bool = False, status: int = 200) -> httpx.Response:
        return httpx.Response(
            status, headers={"content-type": "text/event-stream"}, content=_sse(payloads, done)
        )

    return make


@pytest.fixture
def ndjson_response():
    def make(*payloads, status: int = 200) -> httpx.Response:
        content = "".join(json.dumps(p) + "\n" for p in payloads).encode()
        return httpx.Response(
            status, headers={"content-type": "application/x-ndjson"}, content=content
        )

    return make


@pytest.fixture
def recorder():
    return Recorder


@pytest.fixture
def make_provider():
    """Build an adapter wired to a MockTransport handler."""

    def make(provider_cls, handler, **config):
        config.setdefault("type", ProviderType(provider_cls.provider_type))
        return provider_cls(ProviderConfig(**config), transport=httpx.MockTransport(handler))

    return make
