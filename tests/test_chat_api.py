"""HTTP surface: envelopes, rate-limit headers, SSE framing and cancellation."""
import json

import pytest
from fastapi.testclient import TestClient

from chatcore import app as app_module
from chatcore.service.errors import ProviderError
from chatcore.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def auth_headers(runtime):
    user = runtime.store.create_user("chat-api@example.com", tenant_id="acme")
    session = runtime.store.create_session(user.id)
    return {"Authorization": f"Bearer {session.id}"}


def _parse_sse(body: str):
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class TestChatJson:
    def test_success_envelope(self, client, auth_headers):
        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hello there"})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["answer"] == "[scripted] hello there"
        assert body["output"] == body["answer"]
        assert body["error"] is None
        assert body["request_id"] == response.headers["X-Request-ID"]
        assert body["data"]["conversation_id"]
        assert response.headers["X-Model-Used"] == "scripted/scripted-1"
        assert response.headers["X-RateLimit-Limit"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "59"

    def test_client_request_id_is_echoed(self, client, auth_headers):
        headers = {**auth_headers, "X-Request-ID": "req-from-client"}
        response = client.post("/v1/chat", headers=headers, json={"message": "hi"})

        assert response.headers["X-Request-ID"] == "req-from-client"
        assert response.json()["request_id"] == "req-from-client"

    def test_continues_conversation(self, client, auth_headers, runtime):
        first = client.post("/v1/chat", headers=auth_headers, json={"message": "one"}).json()
        conversation_id = first["data"]["conversation_id"]

        second = client.post(
            "/v1/chat", headers=auth_headers, json={"message": "two", "conversation_id": conversation_id}
        )

        assert second.json()["data"]["conversation_id"] == conversation_id
        assert len(runtime.store.list_messages(conversation_id)) == 4

    def test_session_cookie_auth(self, client, runtime):
        user = runtime.store.create_user("cookie@example.com")
        session = runtime.store.create_session(user.id)
        client.cookies.set("session_id", session.id)

        response = client.post("/v1/chat", json={"message": "via cookie"})

        assert response.status_code == 200

    def test_tool_turn(self, client, auth_headers, runtime):
        runtime.providers.primary.responses = [
            [{"tool": "calculator", "arguments": {"expression": "6 * 7"}}],
            ["It is 42."],
        ]

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "what is 6 * 7?"})

        body = response.json()
        assert body["answer"] == "It is 42."
        assert body["data"]["tool_calls"] == 1
        assert body["data"]["rounds"] == 2

    def test_failure_after_partial_output(self, client, auth_headers, runtime):
        runtime.providers.primary.responses = [
            ["Partial ", ProviderError("boom", kind="server_error", retryable=True)]
        ]

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hi"})

        assert response.status_code == 502
        body = response.json()
        assert body["ok"] is False
        assert body["code"] == "provider_error"
        assert body["answer"] == "Partial "
        assert body["error"].startswith("Sorry, an error occurred")


class TestChatErrors:
    def test_unauthenticated(self, client):
        response = client.post("/v1/chat", json={"message": "hello"})

        assert response.status_code == 401
        body = response.json()
        assert body == {
            "ok": False,
            "answer": None,
            "output": None,
            "error": "authentication required",
            "code": "unauthorized",
            "details": None,
            "request_id": response.headers["X-Request-ID"],
            "data": None,
        }

    def test_tenant_mismatch(self, client, auth_headers):
        headers = {**auth_headers, "X-Tenant-ID": "other-tenant"}
        response = client.post("/v1/chat", headers=headers, json={"message": "hello"})

        assert response.status_code == 401

    def test_rate_limited(self, client, auth_headers, runtime, monkeypatch):
        monkeypatch.setattr(runtime.settings, "chat_rate_limit", 1)
        assert client.post("/v1/chat", headers=auth_headers, json={"message": "one"}).status_code == 200

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "two"})

        assert response.status_code == 429
        assert response.json()["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Limit"] == "1"

    def test_blank_message(self, client, auth_headers):
        response = client.post("/v1/chat", headers=auth_headers, json={"message": "\u200b  "})

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_unknown_field(self, client, auth_headers):
        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hi", "temperature": 2})

        assert response.status_code == 400

    def test_message_too_large(self, client, auth_headers, runtime, monkeypatch):
        monkeypatch.setattr(runtime.settings, "max_message_chars", 5)
        response = client.post("/v1/chat", headers=auth_headers, json={"message": "far too long"})

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_unknown_conversation(self, client, auth_headers):
        response = client.post(
            "/v1/chat", headers=auth_headers, json={"message": "hi", "conversation_id": "missing"}
        )

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestChatStreaming:
    def test_sse_events(self, client, auth_headers, runtime):
        runtime.providers.primary.responses = [["Hel", "lo"]]

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hi", "stream": True})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["X-RateLimit-Limit"] == "60"
        events = _parse_sse(response.text)
        assert [name for name, _ in events] == ["token", "token", "done"]
        assert events[0][1] == {"text": "Hel"}
        assert events[-1][1]["model"] == "scripted/scripted-1"

    def test_sse_error_is_last_event(self, client, auth_headers, runtime):
        runtime.providers.primary.responses = [
            ["abc", ProviderError("reset", kind="network", retryable=True)]
        ]

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hi", "stream": True})

        events = _parse_sse(response.text)
        assert [name for name, _ in events] == ["token", "error"]
        assert events[-1][1]["code"] == "provider_error"
        assert events[-1][1]["request_id"] == response.headers["X-Request-ID"]

    def test_sse_tool_events(self, client, auth_headers, runtime):
        runtime.providers.primary.responses = [
            [{"tool": "calculator", "arguments": {"expression": "2 + 2"}, "id": "call_x"}],
            ["4"],
        ]

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "2+2", "stream": True})

        events = _parse_sse(response.text)
        assert [name for name, _ in events] == ["tool_call", "tool_result", "token", "done"]
        assert events[1][1]["result"] == {"expression": "2 + 2", "result": 4}

    def test_pre_stream_failure_is_plain_json(self, client):
        response = client.post("/v1/chat", json={"message": "hi", "stream": True})

        assert response.status_code == 401
        assert response.headers["content-type"].startswith("application/json")


class TestCancelAndTools:
    def test_cancel_unknown_request(self, client, auth_headers):
        response = client.post("/v1/chat/cancel", headers=auth_headers, json={"request_id": "nope"})

        assert response.status_code == 200
        assert response.json()["data"] == {"request_id": "nope", "cancelled": False}

    def test_cancel_requires_auth(self, client):
        response = client.post("/v1/chat/cancel", json={"request_id": "nope"})
        assert response.status_code == 401

    def test_list_tools(self, client, auth_headers):
        response = client.get("/v1/tools", headers=auth_headers)

        assert response.status_code == 200
        tools = {tool["name"]: tool for tool in response.json()["data"]["tools"]}
        assert set(tools) == {"calculator", "run_code"}
        assert tools["run_code"]["requires_sandbox"] is True
        assert tools["run_code"]["rate_limit"] == {"limit": 100, "window_seconds": 3600}


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["cache"]["status"] == "healthy"
        assert body["active_turns"] == 0

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
