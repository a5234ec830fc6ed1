from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tenantauth import app as app_module
from tenantauth.api import schemas
from tenantauth.config import reset_settings_cache
from tenantauth.service.tokens import TokenPair
from tenantauth.storage.models import Account


def test_security_headers_and_health(runtime):
    client = TestClient(app_module.app, base_url="https://localhost")
    response = client.get("/health", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json()["data"]["version"] == app_module.__version__
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "X-Request-ID" in response.headers


def test_tenant_failure_carries_cors_headers(runtime):
    client = TestClient(app_module.app, base_url="http://ghost.localhost")
    response = client.post(
        "/auth/login",
        json={"username": "alice", "password": "whatever"},
        headers={"Origin": "http://localhost:3000"},
    )

    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "TENANT_NOT_FOUND"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "X-Request-ID" in response.headers


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reset_settings_cache()
    assert app_module._allowed_origins() == ["https://example.com", "https://demo.local"]


def test_login_request_accepts_username_or_identifier():
    assert schemas.LoginRequest(username="alice", password="pw").identifier == "alice"
    req = schemas.LoginRequest.model_validate(
        {"identifier": " bob@demo.test ", "password": "pw", "rememberMe": True, "deviceName": "phone"}
    )
    assert req.identifier == "bob@demo.test"
    assert req.remember_me is True
    assert req.device_name == "phone"


def test_login_request_requires_fields():
    with pytest.raises(ValidationError, match="Username is required"):
        schemas.LoginRequest(password="pw")
    with pytest.raises(ValidationError, match="Password is required"):
        schemas.LoginRequest(username="alice")


def test_identifier_strips_invisible_characters():
    req = schemas.LoginRequest(username="al\u200bice", password="pw")
    assert req.identifier == "alice"


def test_reset_request_merges_code_alias():
    req = schemas.ResetPasswordRequest.model_validate(
        {"identifier": "alice", "code": " 123456 ", "newPassword": "Another-Pass-1"}
    )
    assert req.otp == "123456"
    with pytest.raises(ValidationError, match="OTP is required"):
        schemas.ResetPasswordRequest.model_validate(
            {"identifier": "alice", "newPassword": "Another-Pass-1"}
        )


def test_profile_validation():
    req = schemas.UpdateProfileRequest.model_validate(
        {"email": " Alice@Demo.TEST ", "gender": "Other", "phone": "+91 98765 43210"}
    )
    assert req.changes() == {"email": "alice@demo.test", "gender": "other", "phone": "+91 98765 43210"}
    for bad in ({"email": "not-an-email"}, {"dateOfBirth": "05/04/2001"}, {"gender": "x"}, {"phone": "12"}):
        with pytest.raises(ValidationError):
            schemas.UpdateProfileRequest.model_validate(bad)


def test_complete_profile_requires_names_and_phone():
    with pytest.raises(ValidationError):
        schemas.CompleteProfileRequest.model_validate({"firstName": "Alice"})


def test_payload_helpers_use_camel_case():
    account = Account(
        id="acct-1",
        institution_id="inst-1",
        username="alice",
        first_name="Alice",
        last_login_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )
    tokens = TokenPair(
        access_token="a", refresh_token="r", expires_in=900, refresh_expires_at=datetime.now(timezone.utc)
    )
    payload = schemas.login_payload(account, tokens)
    assert payload["accessToken"] == "a"
    assert payload["expiresIn"] == 900
    assert payload["user"]["firstName"] == "Alice"
    assert payload["user"]["institutionId"] == "inst-1"
    assert payload["user"]["lastLoginAt"] == "2024-01-02T00:00:00+00:00"
    assert "password" not in str(payload["user"]).lower()
