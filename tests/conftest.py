"""Shared test fixtures for the edge relay tests."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from edge_relay import app as app_module
from edge_relay.backends import BackendError
from edge_relay.config import RelayConfig, load_config
from edge_relay.upstream import UpstreamCaller

ORIGIN = "https://site.example"
TOKEN = "tok-5f1c9a7e2b"
OTHER_ORIGIN = "https://other.example"
OTHER_TOKEN = "tok-88aa11bb22"


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "upstream": {"url": "https://inference.test/api/chat"},
        "backend": {
            "base_url": "https://models.test/run",
            "api_key_env": "TEST_BACKEND_KEY",
        },
        "identities": {ORIGIN: TOKEN, OTHER_ORIGIN: OTHER_TOKEN},
        "models": {
            "guard": "guard-model",
            "stt_primary": "stt-turbo",
            "stt_fallback": "stt-small",
            "tts_voices": {"en": "voice-en", "es": "voice-es"},
            "tts_fallback": "tts-multi",
            "language": "lang-model",
        },
        "limits": {"max_audio_bytes": 4096, "stt_fallback_max_bytes": 1024},
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


class FakeModelClient:
    """In-process stand-in for ModelClient that records every call.

    ``replies`` maps a model id to its JSON reply, or to an exception to
    raise. ``raw`` does the same for ``run_raw``.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, Any]] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.replies = replies if replies is not None else {}
        self.raw = raw if raw is not None else {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    @property
    def models_called(self) -> List[str]:
        return [model for model, _ in self.calls]

    async def run(self, model: str, payload: Dict[str, Any]) -> Any:
        self.calls.append((model, payload))
        reply = self.replies.get(model, {})
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def run_raw(self, model: str, payload: Dict[str, Any]) -> httpx.Response:
        self.calls.append(("raw:" + model, payload))
        reply = self.raw.get(model)
        if reply is None:
            raise BackendError(model, "HTTP 400", status=400)
        if isinstance(reply, Exception):
            raise reply
        return reply


def sse_response(body: bytes, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    return httpx.Response(
        200,
        content=body,
        headers={"content-type": "text/event-stream", **(headers or {})},
    )


@dataclass
class RelayHarness:
    """The app wired to fake backends."""

    config: RelayConfig
    models: FakeModelClient
    upstream_reply: Callable[[httpx.Request], httpx.Response]
    upstream_requests: List[httpx.Request] = field(default_factory=list)

    def upstream_bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.upstream_requests]


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> RelayConfig:
    """Return a loaded test RelayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def relay(
    test_config_path: str, test_config: RelayConfig, monkeypatch: pytest.MonkeyPatch
) -> RelayHarness:
    """Point the app at the test config with fake model and upstream backends."""
    models = FakeModelClient(
        replies={
            "guard-model": {"result": {"response": "safe"}},
            "lang-model": {"result": {"response": "en"}},
        }
    )
    harness = RelayHarness(
        config=test_config,
        models=models,
        upstream_reply=lambda request: sse_response(
            b'data: {"response":"hello"}\n\ndata: [DONE]\n\n'
        ),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        harness.upstream_requests.append(request)
        return harness.upstream_reply(request)

    monkeypatch.delenv("TEST_BACKEND_KEY", raising=False)
    monkeypatch.setattr(app_module, "CONFIG_PATH", test_config_path)
    monkeypatch.setattr(app_module, "_config", None)
    monkeypatch.setattr(app_module, "_model_client", models)
    monkeypatch.setattr(
        app_module,
        "_upstream",
        UpstreamCaller(
            test_config.upstream,
            test_config.headers,
            transport=httpx.MockTransport(handler),
        ),
    )
    return harness
