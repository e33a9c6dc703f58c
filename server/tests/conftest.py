# server/tests/conftest.py
# Shared fixtures: a controllable clock, in-memory stores, a scripted upstream
# (httpx.MockTransport) and a gateway app wired to all three.

import json
from importlib import import_module

import httpx
import pytest


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_760_000_000.0):  # 2025-10-09T08:53:20Z
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Records every upstream call; `reply` decides what comes back."""

    def __init__(self):
        self.requests = []
        self.reply = lambda request: httpx.Response(200, json={"reply": "hello"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.reply(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last_body(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def platform(clock):
    kv = import_module("server.services.kv_store")
    return kv.Platform.in_memory(clock)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def seed(platform):
    """Store an instance config the way the admin side writes it."""

    def _seed(instance_id="seo-assistant", prefix="instance:", **fields):
        doc = {
            "id": instance_id,
            "name": "SEO Assistant",
            "upstreamAgentId": "character-abc",
            "apiKey": "tm-key",
            "allowedDomains": ["example.com"],
            "rateLimit": {"perHour": 100, "perSession": 20},
        }
        doc.update(fields)
        platform.config_store.put_json(f"{prefix}{instance_id}", doc)
        return doc

    return _seed


@pytest.fixture
def settings():
    config = import_module("server.config")
    return config.Settings(
        default_api_key="default-key",
        api_host="https://upstream.test",
        upstream_timeout=5.0,
    )


@pytest.fixture
def app(settings, platform, upstream, clock):
    app_mod = import_module("server.app")
    flask_app = app_mod.create_app(
        settings=settings,
        platform=platform,
        transport=upstream.transport,
        clock=clock,
    )
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def post_chat(client):
    """POST /chat with sane defaults; keyword overrides go into the body."""

    def _post(headers=None, path="/chat", **body):
        payload = {
            "instanceId": "seo-assistant",
            "messages": [{"role": "user", "content": "hi"}],
        }
        payload.update(body)
        hdrs = {"Origin": "https://example.com", "CF-Connecting-IP": "203.0.113.7"}
        hdrs.update(headers or {})
        hdrs = {k: v for k, v in hdrs.items() if v is not None}  # None drops a default header
        return client.post(path, data=json.dumps(payload), content_type="application/json", headers=hdrs)

    return _post
