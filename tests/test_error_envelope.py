"""Tests for the error envelope format and error handling.

These tests verify that error responses conform to the stable API envelope format:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from connectkit.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from connectkit.api.routes import _http_error
from connectkit.api.schemas import Envelope, ErrorBody
from connectkit.service.errors import (
    AccountLockedError,
    EmailNotVerifiedError,
    InvalidTokenError,
    NotFoundError,
)
from connectkit.storage.errors import DuplicateUsernameError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Validation failed",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="locked", message="Locked", details={"retryAfter": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "locked"
        assert dumped["error"]["details"]["retryAfter"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(423) == "locked"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        body = json.loads(response.body)
        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "Invalid credentials",
            "details": None,
        }

    def test_error_response_headers(self):
        response = _error_response(423, "Locked", headers={"Retry-After": "30"})
        assert response.headers["Retry-After"] == "30"

    def test_http_error_adds_bearer_challenge(self):
        exc = _http_error("unauthorized", "Access token required", status_code=401)
        assert exc.headers == {"WWW-Authenticate": "Bearer"}
        assert exc.detail["error"]["code"] == "unauthorized"
        assert _http_error("not_found", "missing", status_code=404).headers is None


@pytest.fixture
def error_client():
    """Minimal app raising each domain error through the shared handlers."""
    app = FastAPI()
    register_exception_handlers(app)
    locked_until = datetime(2030, 1, 1, tzinfo=timezone.utc)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(locked_until=locked_until, retry_after=0)

    @app.get("/unverified")
    async def unverified():
        raise EmailNotVerifiedError()

    @app.get("/token")
    async def token():
        raise InvalidTokenError("Invalid refresh token")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("User not found")

    @app.get("/duplicate")
    async def duplicate():
        raise DuplicateUsernameError()

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database exploded")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_account_locked(self, error_client):
        response = error_client.get("/locked")
        body = response.json()
        assert response.status_code == 423
        assert body["error"]["code"] == "locked"
        assert body["error"]["details"]["lockedUntil"].startswith("2030-01-01")
        # Retry-After never advertises zero seconds
        assert response.headers["Retry-After"] == "1"

    def test_email_not_verified(self, error_client):
        response = error_client.get("/unverified")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_invalid_token(self, error_client):
        response = error_client.get("/token")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid refresh token"

    def test_not_found(self, error_client):
        response = error_client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_duplicate_username(self, error_client):
        response = error_client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_unhandled_error_hides_internals(self, error_client):
        response = error_client.get("/boom")
        body = response.json()
        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert "exploded" not in response.text
