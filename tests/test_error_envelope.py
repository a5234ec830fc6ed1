"""Tests for the response envelope and error mapping.

Every response body has the shape:
{
    "success": <bool>,
    "message": "<human readable>",
    "data": <object|null>,
    "errors": [{"code": "<STABLE_CODE>", "message": "...", "field": "..."}]
}
"""

import json

import pytest
from pydantic import ValidationError

from tenantauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
)
from tenantauth.api.schemas import Envelope, ErrorDetail
from tenantauth.service.errors import (
    AccountLockedError,
    AuthResult,
    ErrorKind,
    ServiceError,
    TokenReusedError,
    TooManyOTPAttemptsError,
)


class TestErrorDetail:
    """Tests for the ErrorDetail model."""

    def test_required_fields(self):
        """ErrorDetail requires code and message."""
        detail = ErrorDetail(code="TOKEN_INVALID", message="Invalid token")
        assert detail.field is None
        with pytest.raises(ValidationError):
            ErrorDetail(message="missing code")

    def test_envelope_defaults(self):
        """data and errors are optional."""
        env = Envelope(success=True, message="ok")
        assert env.data is None
        assert env.errors is None


class TestStatusCodes:
    """Fallback code table for bare HTTP errors."""

    def test_known_statuses(self):
        """Mapped statuses have stable upper-case codes."""
        assert _error_code_for_status(404) == "NOT_FOUND"
        assert _error_code_for_status(429) == "RATE_LIMITED"
        assert all(code.isupper() for code in _STATUS_TO_CODE.values())

    def test_unknown_status_defaults(self):
        """Unmapped statuses fall back to INTERNAL_ERROR."""
        assert _error_code_for_status(418) == "INTERNAL_ERROR"


class TestErrorResponse:
    """Rendering of failure envelopes."""

    def test_shape(self):
        """A failure carries success=false and its code first."""
        response = error_response(401, "Invalid token", code="TOKEN_INVALID")
        body = json.loads(response.body)
        assert response.status_code == 401
        assert body == {
            "success": False,
            "message": "Invalid token",
            "errors": [{"code": "TOKEN_INVALID", "message": "Invalid token"}],
        }

    def test_retry_after_header(self):
        """A retryAfterSeconds hint becomes a Retry-After header."""
        response = error_response(
            423, "Account locked", code="ACCOUNT_LOCKED", data={"retryAfterSeconds": 120}
        )
        assert response.headers["Retry-After"] == "120"
        assert json.loads(response.body)["data"] == {"retryAfterSeconds": 120}

    def test_field_and_extra_errors(self):
        """A field hint and extra details follow the headline."""
        extra = [ErrorDetail(code="VALIDATION_ERROR", message="Too short", field="newPassword")]
        body = json.loads(
            error_response(400, "Validation failed", field="otp", errors=extra).body
        )
        assert body["errors"][0] == {
            "code": "VALIDATION_ERROR",
            "message": "Validation failed",
            "field": "otp",
        }
        assert body["errors"][1]["field"] == "newPassword"


class TestKindMapping:
    """AuthResult failures map onto HTTP errors."""

    @pytest.mark.parametrize(
        "kind,status,code",
        [
            (ErrorKind.TENANT_NOT_FOUND, 404, "TENANT_NOT_FOUND"),
            (ErrorKind.TENANT_REQUIRED, 400, "TENANT_REQUIRED"),
            (ErrorKind.INVALID_CREDENTIALS, 401, "INVALID_CREDENTIALS"),
            (ErrorKind.ACCOUNT_LOCKED, 423, "ACCOUNT_LOCKED"),
            (ErrorKind.ACCOUNT_INACTIVE, 403, "ACCOUNT_INACTIVE"),
            (ErrorKind.TOKEN_REUSED, 401, "TOKEN_REUSED"),
            (ErrorKind.INSTITUTION_ACCESS_DENIED, 403, "INSTITUTION_ACCESS_DENIED"),
            (ErrorKind.OTP_EXPIRED, 400, "OTP_EXPIRED"),
            (ErrorKind.TOO_MANY_OTP_ATTEMPTS, 429, "TOO_MANY_OTP_ATTEMPTS"),
            (ErrorKind.PASSWORD_CHANGE_REQUIRED, 428, "PASSWORD_CHANGE_REQUIRED"),
            (ErrorKind.PROFILE_COMPLETION_REQUIRED, 428, "PROFILE_COMPLETION_REQUIRED"),
            (ErrorKind.INTERNAL_FAILURE, 500, "INTERNAL_ERROR"),
        ],
    )
    def test_every_kind_maps(self, kind, status, code):
        """Each failure kind has a status and a stable code."""
        error = AuthResult.failure(kind).to_error()
        assert isinstance(error, ServiceError)
        assert error.status_code == status
        assert error.error_code == code

    def test_message_override_and_detail(self):
        """A specific message and detail survive the mapping."""
        error = AuthResult.failure(
            ErrorKind.ACCOUNT_LOCKED, "Account locked. Try again in 3 minutes", retryAfterSeconds=170
        ).to_error()
        assert isinstance(error, AccountLockedError)
        assert error.message == "Account locked. Try again in 3 minutes"
        assert error.detail == {"retryAfterSeconds": 170}

    def test_unwrap(self):
        """unwrap returns values and raises mapped errors."""
        assert AuthResult.success(7).unwrap() == 7
        with pytest.raises(TokenReusedError):
            AuthResult.failure(ErrorKind.TOKEN_REUSED).unwrap()
        with pytest.raises(TooManyOTPAttemptsError) as excinfo:
            AuthResult.failure(ErrorKind.TOO_MANY_OTP_ATTEMPTS).unwrap()
        assert excinfo.value.message == "Too many OTP attempts. Please request a new code"

    def test_success_has_no_error(self):
        """Successful results cannot be turned into errors."""
        with pytest.raises(ValueError):
            AuthResult.success().to_error()


class TestUnhandledErrors:
    """Unexpected exceptions still produce the envelope."""

    def test_internal_error_envelope(self, runtime):
        """A crashing route yields 500 INTERNAL_ERROR without internals."""
        from fastapi import FastAPI
        from fastapi.testclient import TestClient

        from tenantauth.api.error_handling import register_exception_handlers

        crashing = FastAPI()
        register_exception_handlers(crashing)

        @crashing.get("/boom")
        async def boom():
            raise RuntimeError("secret internals")

        response = TestClient(crashing, raise_server_exceptions=False).get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Internal server error"
        assert body["errors"][0]["code"] == "INTERNAL_ERROR"
        assert "secret" not in response.text
