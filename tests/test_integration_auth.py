"""Integration tests for the /v1/auth HTTP surface.

Tests the complete auth flow including:
- Registration and duplicate detection
- Login, lockout and the error envelope
- Token refresh and logout
- Email verification and password reset via queued tickets
- Availability checks and health reporting
"""

import pytest
from fastapi.testclient import TestClient

from connectkit import app as app_module
from connectkit.service.runtime import get_runtime
from connectkit.storage.redis_cache import EMAIL_VERIFICATION, PASSWORD_RESET

PASSWORD = "Aa123456"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="a@x.io", username="alice", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "username": username,
            "password": password,
            "firstName": "Alice",
            "lastName": "Smith",
        },
    )


def _login(client, email="a@x.io", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_user(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "a@x.io"
        assert body["data"]["user"]["firstName"] == "Alice"
        assert "verificationToken" not in body["data"]

    def test_duplicate_email_conflict(self, client):
        _register(client)
        response = _register(client, username="bob")

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["details"] == {"field": "email"}

    def test_weak_password_rejected(self, client):
        response = _register(client, password="alllowercase1")
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert any(item["field"] == "password" for item in body["error"]["details"])

    def test_bad_username_rejected(self, client):
        response = _register(client, username="a b")
        assert response.status_code == 400


class TestLoginFlow:
    def test_login_returns_tokens(self, client):
        _register(client)
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["accessToken"]
        assert data["refreshToken"]
        assert data["expiresIn"] == 900
        assert data["user"]["username"] == "alice"

    def test_invalid_credentials(self, client):
        _register(client)
        response = _login(client, password="Wrong1234")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_lockout_returns_423(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Wrong1234").status_code == 401

        response = _login(client)

        assert response.status_code == 423
        body = response.json()
        assert body["error"]["code"] == "locked"
        assert body["error"]["details"]["retryAfter"] > 0
        assert int(response.headers["Retry-After"]) > 0

    def test_request_id_propagates(self, client):
        response = client.get(
            "/v1/auth/password-requirements", headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["data"]["minLength"] == 8


class TestTokenLifecycle:
    def test_profile_requires_token(self, client):
        response = client.get("/v1/auth/profile")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_profile_with_token(self, client):
        _register(client)
        tokens = _login(client).json()["data"]

        response = client.get("/v1/auth/profile", headers=_bearer(tokens["accessToken"]))

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "a@x.io"

    def test_refresh_rotates(self, client):
        _register(client)
        tokens = _login(client).json()["data"]

        rotated = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        replay = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert rotated.status_code == 200
        assert rotated.json()["data"]["refreshToken"] != tokens["refreshToken"]
        assert replay.status_code == 401

    def test_logout_revokes_access_token(self, client):
        _register(client)
        tokens = _login(client).json()["data"]
        headers = _bearer(tokens["accessToken"])

        response = client.post(
            "/v1/auth/logout", json={"refreshToken": tokens["refreshToken"]}, headers=headers
        )

        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=headers).status_code == 401
        validated = client.post("/v1/auth/validate", json={"token": tokens["accessToken"]})
        assert validated.json()["data"] == {"valid": False, "user": None}

    def test_logout_all(self, client):
        _register(client)
        first = _login(client).json()["data"]
        second = _login(client).json()["data"]

        response = client.post("/v1/auth/logout-all", headers=_bearer(second["accessToken"]))

        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_bearer(first["accessToken"])).status_code == 401

    def test_status_endpoint(self, client):
        anonymous = client.get("/v1/auth/status").json()["data"]
        assert anonymous == {"authenticated": False, "user": None}

        _register(client)
        tokens = _login(client).json()["data"]
        status = client.get("/v1/auth/status", headers=_bearer(tokens["accessToken"])).json()["data"]
        assert status["authenticated"] is True
        assert status["user"]["username"] == "alice"


class TestEmailAndPasswordTickets:
    def test_verify_email_with_queued_ticket(self, client):
        _register(client)
        ticket = get_runtime().outbox.latest(EMAIL_VERIFICATION, "a@x.io")

        response = client.post("/v1/auth/verify-email", json={"token": ticket.token})
        again = client.post("/v1/auth/verify-email", json={"token": ticket.token})

        assert response.status_code == 200
        assert again.status_code == 401
        assert _login(client).json()["data"]["user"]["isVerified"] is True

    def test_resend_verification_hides_token(self, client):
        _register(client)
        response = client.post("/v1/auth/resend-verification", json={"email": "a@x.io"})
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Verification email sent."}

    def test_forgot_password_same_response_for_unknown(self, client):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "a@x.io"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@x.io"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password_flow(self, client):
        _register(client)
        old_tokens = _login(client).json()["data"]
        client.post("/v1/auth/forgot-password", json={"email": "a@x.io"})
        ticket = get_runtime().outbox.latest(PASSWORD_RESET, "a@x.io")

        mismatch = client.post(
            "/v1/auth/reset-password",
            json={"token": ticket.token, "password": "Bb654321", "confirmPassword": "Bb000000"},
        )
        response = client.post(
            "/v1/auth/reset-password",
            json={"token": ticket.token, "password": "Bb654321", "confirmPassword": "Bb654321"},
        )

        assert mismatch.status_code == 401
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_bearer(old_tokens["accessToken"])).status_code == 401
        assert _login(client, password="Bb654321").status_code == 200

    def test_change_password(self, client):
        _register(client)
        tokens = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/change-password",
            json={
                "currentPassword": PASSWORD,
                "newPassword": "Cc123456",
                "confirmPassword": "Cc123456",
            },
            headers=_bearer(tokens["accessToken"]),
        )

        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_bearer(tokens["accessToken"])).status_code == 401
        assert _login(client, password="Cc123456").status_code == 200


class TestAvailability:
    def test_check_email(self, client):
        _register(client)
        taken = client.get("/v1/auth/check-email/A@x.io").json()["data"]
        free = client.get("/v1/auth/check-email/new@x.io").json()["data"]
        assert taken["available"] is False
        assert free["available"] is True

    def test_check_username(self, client):
        _register(client)
        assert client.get("/v1/auth/check-username/alice").json()["data"]["available"] is False
        assert client.get("/v1/auth/check-username/carol").json()["data"]["available"] is True
        assert client.get("/v1/auth/check-username/ab").status_code == 400


class TestHealth:
    def test_healthz_reports_components(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["type"] == "memory"
        assert response.headers["Cache-Control"].startswith("no-store")
