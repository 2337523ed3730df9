"""Tests for the ``ok: false`` error envelope and exception mapping."""
import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from chatcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from chatcore.api.schemas import ChatRequest, Envelope
from chatcore.logging import sanitize_error_message, set_correlation_id
from chatcore.service.errors import (
    ContextBudgetExceededError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    ServiceError,
    ToolLoopExceededError,
    TurnCancelledError,
    TurnTimeoutError,
)
from chatcore.service.rate_limit import RateLimitDecision
from chatcore.storage.errors import ConstraintViolation


class TestStatusCodes:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert 418 not in _STATUS_TO_CODE

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (NotFoundError("x"), 404, "not_found"),
            (RateLimitedError(), 429, "rate_limited"),
            (ContextBudgetExceededError("x"), 500, "context_budget_exceeded"),
            (ToolLoopExceededError("x"), 500, "tool_loop_exceeded"),
            (TurnTimeoutError("x"), 504, "turn_timeout"),
            (TurnCancelledError("x"), 499, "cancelled"),
            (ProviderError("x"), 502, "provider_error"),
        ],
    )
    def test_service_error_codes(self, exc, status, code):
        assert (exc.status_code, exc.error_code) == (status, code)


class TestErrorResponse:
    def test_envelope_shape(self):
        set_correlation_id("req-123")
        response = error_response(404, "conversation not found", {"id": "c1"})

        body = json.loads(response.body)
        assert response.status_code == 404
        assert body == Envelope(
            ok=False,
            error="conversation not found",
            code="not_found",
            details={"id": "c1"},
            request_id="req-123",
        ).model_dump()

    def test_message_is_sanitized(self):
        response = error_response(500, "failed with api_key=sk-abcdef1234567890 at /home/app/x.py")

        message = json.loads(response.body)["error"]
        assert "sk-abcdef" not in message
        assert "/home/app" not in message

    def test_empty_details_become_null(self):
        body = json.loads(error_response(400, "bad", {}).body)
        assert body["details"] is None


class TestHandlers:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/service")
        async def service():
            raise ServiceError("bad input", detail={"field": "x"})

        @app.get("/limited")
        async def limited():
            raise RateLimitedError(decision=RateLimitDecision(False, 5, 0, 42, "limit_exceeded"))

        @app.get("/conflict")
        async def conflict():
            raise ConstraintViolation("email already exists", {"field": "email"})

        @app.get("/http")
        async def http():
            raise HTTPException(status_code=403, detail="nope")

        @app.get("/boom")
        async def boom():
            raise RuntimeError("secret connection string postgres://u:p@db/x")

        @app.post("/chat")
        async def chat(body: ChatRequest):
            return {"ok": True}

        return TestClient(app, raise_server_exceptions=False)

    def test_service_error(self, client):
        response = client.get("/service")

        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert body["code"] == "validation_error"
        assert body["details"] == {"field": "x"}

    def test_rate_limited_headers(self, client):
        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.json()["details"] == {"retry_after": 42}

    def test_constraint_violation(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    def test_http_exception(self, client):
        response = client.get("/http")

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"
        assert response.json()["error"] == "nope"

    def test_unhandled_exception_hides_details(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "internal server error"
        assert "postgres" not in response.text

    def test_request_validation(self, client):
        response = client.post("/chat", json={"message": ""})

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert body["details"][0]["loc"] == ["body", "message"]


class TestProviderMessages:
    def test_user_message_never_echoes_upstream_text(self):
        err = ProviderError("Incorrect API key provided: sk-live-xxxx", kind="auth_failed")
        assert "sk-live" not in err.user_message()

    def test_unknown_kind_falls_back(self):
        assert ProviderError("?", kind="weird").user_message() == ProviderError("?").user_message()


def test_sanitize_handles_non_strings():
    assert sanitize_error_message(None) == "An error occurred"
