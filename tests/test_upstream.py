"""Tests for the upstream caller and the model-run client."""

import json
from typing import List

import httpx
import pytest

from edge_relay.backends import BackendError, ModelClient
from edge_relay.config import BackendConfig, HeaderNames, UpstreamConfig
from edge_relay.errors import BackendUnavailable
from edge_relay.models import ChatMessage, RequestMeta, UpstreamPayload
from edge_relay.upstream import UpstreamCaller

PAYLOAD = UpstreamPayload(
    messages=[ChatMessage(role="user", content="Hello")],
    meta=RequestMeta(lang_iso2="en"),
)


def _caller(handler, excerpt_chars: int = 2000) -> UpstreamCaller:
    return UpstreamCaller(
        UpstreamConfig(url="https://inference.test/api/chat", hop_value="edge"),
        HeaderNames(),
        transport=httpx.MockTransport(handler),
        excerpt_chars=excerpt_chars,
    )


@pytest.mark.asyncio
async def test_forwarding_request_shape() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b'{"response":"hi"}')

    stream = await _caller(handler).open(PAYLOAD, "https://site.example", "tok-1")
    await stream.aclose()

    request = seen[0]
    assert request.method == "POST"
    assert request.headers["accept"] == "text/event-stream"
    assert request.headers["x-relay-hop"] == "edge"
    assert request.headers["origin"] == "https://site.example"
    assert request.headers["x-ops-asset-id"] == "tok-1"
    body = json.loads(request.content)
    assert body == {
        "messages": [{"role": "user", "content": "Hello"}],
        "meta": {"lang_iso2": "en"},
    }


@pytest.mark.asyncio
async def test_only_named_headers_are_forwarded() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=b"",
            headers={
                "x-relay-lang-iso2": "es",
                "x-relay-model": "tier-fast",
                "x-internal-trace": "secret",
                "set-cookie": "a=b",
            },
        )

    stream = await _caller(handler).open(PAYLOAD, "https://site.example", "tok-1")
    forwarded = stream.forwarded_headers(HeaderNames())
    await stream.aclose()

    assert forwarded == {"x-relay-lang-iso2": "es", "x-relay-model": "tier-fast"}


@pytest.mark.asyncio
async def test_body_is_streamed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'data: {"response":"a"}\n\n')

    stream = await _caller(handler).open(PAYLOAD, "https://site.example", "tok-1")
    body = b"".join([chunk async for chunk in stream.iter_bytes()])
    await stream.aclose()
    await stream.aclose()

    assert body == b'data: {"response":"a"}\n\n'


@pytest.mark.asyncio
async def test_non_success_carries_bounded_excerpt() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, content=b"x" * 10_000)

    with pytest.raises(BackendUnavailable) as info:
        await _caller(handler).open(PAYLOAD, "https://site.example", "tok-1")

    exc = info.value
    assert exc.status_code == 502
    assert exc.context["status"] == 503
    assert len(exc.context["excerpt"]) == 2000
    assert "503" in exc.detail


@pytest.mark.asyncio
async def test_unreachable_upstream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendUnavailable, match="unreachable"):
        await _caller(handler).open(PAYLOAD, "https://site.example", "tok-1")


@pytest.mark.asyncio
async def test_client_closed_when_send_fails_unexpectedly(monkeypatch: pytest.MonkeyPatch) -> None:
    closed: List[httpx.AsyncClient] = []
    original_aclose = httpx.AsyncClient.aclose

    async def tracking_aclose(self: httpx.AsyncClient) -> None:
        closed.append(self)
        await original_aclose(self)

    monkeypatch.setattr(httpx.AsyncClient, "aclose", tracking_aclose)

    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("interrupted")

    with pytest.raises(RuntimeError):
        await _caller(handler).open(PAYLOAD, "https://site.example", "tok-1")
    assert len(closed) == 1
    assert closed[0].is_closed


# --- ModelClient ---


def _model_client(handler, monkeypatch: pytest.MonkeyPatch, key: str = "") -> ModelClient:
    if key:
        monkeypatch.setenv("TEST_BACKEND_KEY", key)
    else:
        monkeypatch.delenv("TEST_BACKEND_KEY", raising=False)
    return ModelClient(
        BackendConfig(base_url="https://models.test/run/", api_key_env="TEST_BACKEND_KEY"),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_model_client_posts_to_model_url(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"response": "safe"})

    client = _model_client(handler, monkeypatch, key="sk-test")
    reply = await client.run("meta/guard", {"messages": []})

    assert reply == {"response": "safe"}
    assert str(seen[0].url) == "https://models.test/run/meta/guard"
    assert seen[0].headers["authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_model_client_without_key_sends_no_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    await _model_client(handler, monkeypatch).run("m", {})
    assert "authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_model_client_non_success(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _model_client(lambda request: httpx.Response(500, text="oops"), monkeypatch)
    with pytest.raises(BackendError) as info:
        await client.run("m", {})
    assert info.value.status == 500


@pytest.mark.asyncio
async def test_model_client_non_json(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _model_client(lambda request: httpx.Response(200, text="not json"), monkeypatch)
    with pytest.raises(BackendError, match="not JSON"):
        await client.run("m", {})


@pytest.mark.asyncio
async def test_model_client_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(BackendError, match="ReadTimeout"):
        await _model_client(handler, monkeypatch).run("m", {})
