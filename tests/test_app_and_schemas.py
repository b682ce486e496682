import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from connectkit import app as app_module
from connectkit.api import schemas


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS and HSTS tests."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    monkeypatch.setenv("ENABLE_HSTS", "true")
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        monkeypatch.delenv("ENABLE_HSTS", raising=False)
        importlib.reload(app_module)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app, base_url="https://testserver")
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_no_hsts_over_plain_http():
    client = TestClient(app_module.app)
    response = client.get("/healthz")
    assert "Strict-Transport-Security" not in response.headers


def test_allowed_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    try:
        origins = reloaded._allowed_origins()
        assert "http://localhost" in origins
        assert "http://127.0.0.1:5173" in origins
    finally:
        importlib.reload(app_module)


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reloaded = importlib.reload(app_module)
    try:
        assert reloaded._allowed_origins() == ["https://example.com", "https://demo.local"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        importlib.reload(app_module)


def test_register_request_validates_fields():
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(email="invalid", username="alice", password="Password1")
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(email="a@x.io", username="al", password="Password1")
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(email="a@x.io", username="alice", password="password1")

    req = schemas.RegisterRequest(
        email=" User@Example.com ", username="alice", password="Password1", firstName=" Al "
    )
    assert req.email == "user@example.com"
    assert req.first_name == "Al"
    assert req.last_name == ""


def test_password_special_characters_optional():
    assert schemas._validate_password_strength("Aa123456") == "Aa123456"
    with pytest.raises(ValueError):
        schemas._validate_password_strength("Aa1" + "x" * 130)


def test_camel_case_aliases():
    change = schemas.ChangePasswordRequest(
        currentPassword="old", newPassword="Password1", confirmPassword="Password1"
    )
    assert change.current_password == "old"
    assert change.confirm_password == "Password1"

    logout = schemas.LogoutRequest()
    assert logout.refresh_token is None
    assert schemas.RefreshRequest(refreshToken="abc").refresh_token == "abc"
