# server/tests/test_chat_api.py
# Purpose: End-to-end tests for POST /chat through the Flask test client:
# happy path, validation, lookup/authorization refusals, upstream failures,
# SSE passthrough, CORS and body limits. The upstream is an httpx.MockTransport.

import json
from datetime import datetime, timezone

import httpx
import pytest


def test_health_ok(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok"}


def test_chat_happy_path(seed, post_chat, upstream, platform, clock):
    seed()
    res = post_chat(sessionId="s1")

    assert res.status_code == 200
    assert res.get_json() == {"reply": "hello"}
    assert res.headers["Access-Control-Allow-Origin"] == "https://example.com"

    sent = upstream.requests[-1]
    assert str(sent.url) == "https://upstream.test/api/v2/agents/character-abc/chat"
    assert sent.headers["X-API-KEY"] == "tm-key"
    assert upstream.last_body() == {"messages": [{"role": "user", "content": "hi"}]}

    ip_record = platform.counter_store.get_json("ratelimit:ip:seo-assistant:203.0.113.7")
    assert ip_record == {"messages": [int(clock() * 1000)]}
    assert platform.counter_store.ttl("ratelimit:ip:seo-assistant:203.0.113.7") == 3600
    session_record = platform.counter_store.get_json("ratelimit:session:seo-assistant:s1")
    assert len(session_record["messages"]) == 1


def test_api_chat_alias(seed, post_chat):
    seed()
    res = post_chat(path="/api/chat")
    assert res.status_code == 200
    assert res.get_json() == {"reply": "hello"}


def test_default_api_key_used_when_instance_has_none(seed, post_chat, upstream):
    seed(apiKey=None)
    res = post_chat()
    assert res.status_code == 200
    assert upstream.requests[-1].headers["X-API-KEY"] == "default-key"


def test_legacy_agent_record_posts_to_instance_id(seed, post_chat, upstream):
    seed(
        instance_id="old-bot",
        prefix="agent:",
        upstreamAgentId=None,
        rateLimit={"messagesPerHour": 5, "messagesPerSession": 2},
    )
    res = post_chat(instanceId="old-bot")
    assert res.status_code == 200
    assert upstream.requests[-1].url.path == "/api/v2/agents/old-bot/chat"


@pytest.mark.parametrize(
    "overrides",
    [
        {"instanceId": None},
        {"instanceId": ""},
        {"messages": None},
        {"messages": []},
        {"messages": "hi"},
    ],
)
def test_missing_required_fields(seed, post_chat, upstream, overrides):
    seed()
    res = post_chat(**overrides)
    assert res.status_code == 400
    assert res.get_json()["error"] == "Missing required fields"
    assert upstream.requests == []


def test_invalid_json_body(client):
    res = client.post("/chat", data="{not json", content_type="application/json")
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid JSON in request body"


def test_non_json_content_type_rejected(client):
    res = client.post("/chat", data="instanceId=seo-assistant", content_type="application/x-www-form-urlencoded")
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid JSON in request body"


def test_too_many_messages(seed, post_chat):
    seed()
    res = post_chat(messages=[{"role": "user", "content": str(i)} for i in range(101)])
    assert res.status_code == 400
    assert res.get_json()["error"] == "Too many messages"


def test_invalid_instance_id_format(post_chat):
    res = post_chat(instanceId="Not_Valid!")
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid instance ID format"


def test_unknown_instance_is_404_and_writes_nothing(post_chat, platform, upstream):
    res = post_chat(instanceId="ghost")
    assert res.status_code == 404
    assert res.get_json()["error"] == "Agent not found"
    assert res.headers["Access-Control-Allow-Origin"] == "https://example.com"
    assert platform.counter_store.keys("ratelimit:") == []
    assert upstream.requests == []


def test_unauthorized_domain_is_403(seed, post_chat, platform, upstream):
    seed()
    res = post_chat(headers={"Origin": "https://evil.com"})
    assert res.status_code == 403
    assert res.get_json()["error"] == "Domain not authorized"
    assert platform.counter_store.keys("ratelimit:") == []
    assert upstream.requests == []


def test_missing_origin_and_referer_is_403_with_wildcard_cors(seed, post_chat):
    seed()
    res = post_chat(headers={"Origin": None})
    assert res.status_code == 403
    assert res.headers["Access-Control-Allow-Origin"] == "*"


def test_referer_used_when_origin_absent(seed, post_chat):
    seed(allowedPaths=["/blog/*"])
    ok = post_chat(headers={"Origin": None, "Referer": "https://example.com/blog/post-1"})
    assert ok.status_code == 200
    denied = post_chat(headers={"Origin": None, "Referer": "https://example.com/admin"})
    assert denied.status_code == 403


def test_wildcard_subdomains_through_api(seed, post_chat):
    seed(allowedDomains=["*.test.com", "localhost"])
    assert post_chat(headers={"Origin": "https://api.test.com"}).status_code == 200
    assert post_chat(headers={"Origin": "https://test.com"}).status_code == 200
    assert post_chat(headers={"Origin": "http://localhost:3000"}).status_code == 200
    assert post_chat(headers={"Origin": "https://evil.com"}).status_code == 403


def test_upstream_error_status_is_not_leaked(seed, post_chat, upstream):
    seed()
    upstream.reply = lambda request: httpx.Response(502, text="secret upstream detail")
    res = post_chat()
    assert res.status_code == 500
    assert res.get_json()["error"] == "Failed to get response from AI"
    assert b"secret" not in res.get_data()


def test_upstream_invalid_json_is_failure(seed, post_chat, upstream):
    seed()
    upstream.reply = lambda request: httpx.Response(200, text="<html>oops</html>")
    res = post_chat()
    assert res.status_code == 500
    assert res.get_json()["error"] == "Failed to get response from AI"


def test_upstream_transport_error_is_internal(seed, post_chat, upstream):
    seed()

    def _boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.reply = _boom
    res = post_chat()
    assert res.status_code == 500
    assert res.get_json()["error"] == "Internal server error"


def test_upstream_timeout_is_504(seed, post_chat, upstream):
    seed()

    def _slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    upstream.reply = _slow
    res = post_chat()
    assert res.status_code == 504
    assert res.get_json()["error"] == "Upstream timeout"


def test_sse_passthrough_preserves_chunks(seed, post_chat, upstream):
    seed()

    def _events():
        yield b"data: a\n\n"
        yield b"data: b\n\n"

    upstream.reply = lambda request: httpx.Response(
        200, headers={"Content-Type": "text/event-stream"}, content=_events()
    )
    res = post_chat()
    try:
        assert res.status_code == 200
        assert res.headers["Content-Type"].startswith("text/event-stream")
        assert res.headers["Cache-Control"] == "no-cache"
        assert res.headers["Access-Control-Allow-Origin"] == "https://example.com"
        chunks = [chunk for chunk in res.response if chunk]
        assert chunks == [b"data: a\n\n", b"data: b\n\n"]
    finally:
        res.close()


def test_preflight_returns_204_with_cors_headers(client):
    res = client.options("/chat", headers={"Origin": "https://example.com"})
    assert res.status_code == 204
    assert res.headers["Access-Control-Allow-Origin"] == "https://example.com"
    assert res.headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"
    assert res.headers["Access-Control-Allow-Headers"] == "Content-Type, Accept, Origin"
    assert res.headers["Access-Control-Max-Age"] == "86400"


def test_preflight_on_any_path(client):
    res = client.options("/no/such/route")
    assert res.status_code == 204
    assert res.headers["Access-Control-Allow-Origin"] == "*"


def test_oversized_body_is_413(seed, client):
    seed()
    body = json.dumps({
        "instanceId": "seo-assistant",
        "messages": [{"role": "user", "content": "x" * (1024 * 1024)}],
    })
    res = client.post("/chat", data=body, content_type="application/json")
    assert res.status_code == 413
    assert res.get_json()["error"] == "Request too large"


def test_analytics_recorded_after_response_closes(seed, post_chat, platform, clock):
    seed()
    res = post_chat(sessionId="s1")
    assert res.status_code == 200
    day = datetime.fromtimestamp(clock(), tz=timezone.utc).date().isoformat()
    key = f"analytics:daily:{day}:seo-assistant"
    res.close()
    stats = platform.analytics_store.get_json(key)
    assert stats["messages"] == 1
    assert stats["domains"] == {"example.com": 1}
    assert stats["uniqueSessions"] == 1


def test_analytics_failure_does_not_change_response(seed, post_chat, platform, monkeypatch):
    seed()

    def _broken(*args, **kwargs):
        raise RuntimeError("analytics store down")

    monkeypatch.setattr(platform.analytics_store, "put_json", _broken)
    res = post_chat()
    body = res.get_data()
    res.close()
    assert res.status_code == 200
    assert json.loads(body) == {"reply": "hello"}


def test_security_headers_present(client):
    res = client.get("/health")
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"
    assert "X-Request-ID" in res.headers
