from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable upper-case
    ``error_code`` that clients switch on. ``detail`` carries structured,
    non-sensitive context (e.g. ``retryAfterSeconds``) rendered as the
    envelope's ``data``.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class TenantNotFoundError(ServiceError):
    """Host names an institution that does not exist or is inactive (404)."""
    status_code = 404
    error_code = "TENANT_NOT_FOUND"


class TenantRequiredError(ServiceError):
    """Route needs an institution but none could be resolved (400)."""
    status_code = 400
    error_code = "TENANT_REQUIRED"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "INVALID_CREDENTIALS"


class TokenRequiredError(AuthenticationError):
    error_code = "TOKEN_REQUIRED"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"


class TokenInvalidError(AuthenticationError):
    error_code = "TOKEN_INVALID"


class TokenReusedError(AuthenticationError):
    """A rotated refresh token was presented again."""
    error_code = "TOKEN_REUSED"


class AccountLockedError(ServiceError):
    """Too many failed logins; carries the remaining lock time (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class AccountInactiveError(ForbiddenError):
    error_code = "ACCOUNT_INACTIVE"


class InstitutionAccessDeniedError(ForbiddenError):
    error_code = "INSTITUTION_ACCESS_DENIED"


class OTPInvalidError(ServiceError):
    status_code = 400
    error_code = "OTP_INVALID"


class OTPExpiredError(OTPInvalidError):
    error_code = "OTP_EXPIRED"


class TooManyOTPAttemptsError(ServiceError):
    status_code = 429
    error_code = "TOO_MANY_OTP_ATTEMPTS"


class PasswordChangeRequiredError(ServiceError):
    """Account must set a new password before using other routes (428)."""
    status_code = 428
    error_code = "PASSWORD_CHANGE_REQUIRED"


class ProfileCompletionRequiredError(ServiceError):
    """Account must complete its profile before using other routes (428)."""
    status_code = 428
    error_code = "PROFILE_COMPLETION_REQUIRED"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class ErrorKind(str, Enum):
    """Failure kinds returned by component operations."""

    TENANT_NOT_FOUND = "TenantNotFound"
    TENANT_REQUIRED = "TenantRequired"
    INVALID_CREDENTIALS = "InvalidCredentials"
    ACCOUNT_LOCKED = "AccountLocked"
    ACCOUNT_INACTIVE = "AccountInactive"
    TOKEN_REQUIRED = "TokenRequired"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_INVALID = "TokenInvalid"
    TOKEN_REUSED = "TokenReused"
    INSTITUTION_ACCESS_DENIED = "InstitutionAccessDenied"
    FORBIDDEN = "Forbidden"
    OTP_INVALID = "OTPInvalid"
    OTP_EXPIRED = "OTPExpired"
    TOO_MANY_OTP_ATTEMPTS = "TooManyOTPAttempts"
    PASSWORD_CHANGE_REQUIRED = "PasswordChangeRequired"
    PROFILE_COMPLETION_REQUIRED = "ProfileCompletionRequired"
    VALIDATION_FAILED = "ValidationFailed"
    INTERNAL_FAILURE = "InternalFailure"


# kind -> (exception class, wire message)
_KIND_TO_ERROR: dict[ErrorKind, tuple[type[ServiceError], str]] = {
    ErrorKind.TENANT_NOT_FOUND: (TenantNotFoundError, "Institution not found"),
    ErrorKind.TENANT_REQUIRED: (TenantRequiredError, "Institution context required"),
    ErrorKind.INVALID_CREDENTIALS: (AuthenticationError, "Invalid credentials"),
    ErrorKind.ACCOUNT_LOCKED: (AccountLockedError, "Account locked"),
    ErrorKind.ACCOUNT_INACTIVE: (AccountInactiveError, "Account is deactivated"),
    ErrorKind.TOKEN_REQUIRED: (TokenRequiredError, "Access token required"),
    ErrorKind.TOKEN_EXPIRED: (TokenExpiredError, "Token expired"),
    ErrorKind.TOKEN_INVALID: (TokenInvalidError, "Invalid token"),
    ErrorKind.TOKEN_REUSED: (TokenReusedError, "Refresh token already used"),
    ErrorKind.INSTITUTION_ACCESS_DENIED: (
        InstitutionAccessDeniedError,
        "Access denied to this institution",
    ),
    ErrorKind.FORBIDDEN: (ForbiddenError, "Insufficient permissions"),
    ErrorKind.OTP_INVALID: (OTPInvalidError, "Invalid or expired OTP"),
    ErrorKind.OTP_EXPIRED: (OTPExpiredError, "Invalid or expired OTP"),
    ErrorKind.TOO_MANY_OTP_ATTEMPTS: (
        TooManyOTPAttemptsError,
        "Too many OTP attempts. Please request a new code",
    ),
    ErrorKind.PASSWORD_CHANGE_REQUIRED: (
        PasswordChangeRequiredError,
        "Password change required",
    ),
    ErrorKind.PROFILE_COMPLETION_REQUIRED: (
        ProfileCompletionRequiredError,
        "Profile completion required",
    ),
    ErrorKind.VALIDATION_FAILED: (ValidationError, "Validation failed"),
    ErrorKind.INTERNAL_FAILURE: (ServerError, "Internal server error"),
}


@dataclass
class AuthResult(Generic[T]):
    """Outcome of a component operation: a value or a failure kind."""

    ok: bool
    value: Optional[T] = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: T = None) -> "AuthResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: Optional[str] = None,
        **detail: Any,
    ) -> "AuthResult[T]":
        return cls(ok=False, kind=kind, message=message, detail=detail)

    def to_error(self) -> ServiceError:
        if self.ok or self.kind is None:
            raise ValueError("successful result has no error")
        error_cls, default_message = _KIND_TO_ERROR[self.kind]
        return error_cls(self.message or default_message, detail=self.detail)

    def unwrap(self) -> T:
        """Return the value or raise the mapped ServiceError."""
        if not self.ok:
            raise self.to_error()
        return self.value  # type: ignore[return-value]


__all__ = [
    "ServiceError",
    "ValidationError",
    "TenantNotFoundError",
    "TenantRequiredError",
    "AuthenticationError",
    "TokenRequiredError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenReusedError",
    "AccountLockedError",
    "ForbiddenError",
    "AccountInactiveError",
    "InstitutionAccessDeniedError",
    "OTPInvalidError",
    "OTPExpiredError",
    "TooManyOTPAttemptsError",
    "PasswordChangeRequiredError",
    "ProfileCompletionRequiredError",
    "RateLimitedError",
    "ServerError",
    "ErrorKind",
    "AuthResult",
]
