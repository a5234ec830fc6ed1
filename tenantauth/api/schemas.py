from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tenantauth.storage.models import GENDERS, Account, Session
from tenantauth.service.tokens import TokenPair


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class Envelope(BaseModel):
    """Uniform response body: ``{success, message, data?, errors?}``."""

    success: bool
    message: str
    data: Optional[Any] = None
    errors: Optional[List[ErrorDetail]] = None


class CamelModel(BaseModel):
    """Request model accepting camelCase keys as well as snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 \-]{6,18}[0-9]$")
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email address")
    return normalized


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("Invalid phone number")
    return cleaned


def _require_text(value: Optional[str], message: str) -> str:
    if value is None or not value.strip():
        raise ValueError(message)
    return value


class LoginRequest(CamelModel):
    identifier: Optional[str] = Field(default=None, max_length=254)
    username: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(default="", max_length=128)
    remember_me: bool = False
    device_name: Optional[str] = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _require_credentials(self):
        login_id = (self.identifier or self.username or "").strip()
        if not login_id:
            raise ValueError("Username is required")
        if not self.password:
            raise ValueError("Password is required")
        self.identifier = _normalize_unicode(login_id)
        return self


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ForgotPasswordRequest(CamelModel):
    identifier: str = Field(..., max_length=254)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _normalize_unicode(_require_text(value, "Identifier is required").strip())


class ResetPasswordRequest(CamelModel):
    identifier: str = Field(..., max_length=254)
    otp: Optional[str] = Field(default=None, max_length=16)
    code: Optional[str] = Field(default=None, max_length=16)
    new_password: str = Field(..., max_length=256)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _normalize_unicode(_require_text(value, "Identifier is required").strip())

    @model_validator(mode="after")
    def _merge_code(self):
        code = (self.otp or self.code or "").strip()
        if not code:
            raise ValueError("OTP is required")
        self.otp = code
        return self


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=256)


class UpdateProfileRequest(CamelModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("date_of_birth")
    @classmethod
    def _validate_date_of_birth(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _DATE_PATTERN.match(value):
            raise ValueError("dateOfBirth must be YYYY-MM-DD")
        return value

    @field_validator("gender")
    @classmethod
    def _validate_gender(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in GENDERS:
            raise ValueError(f"gender must be one of: {', '.join(GENDERS)}")
        return normalized

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CompleteProfileRequest(UpdateProfileRequest):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: str


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_payload(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "institutionId": account.institution_id,
        "username": account.username,
        "email": account.email,
        "phone": account.phone,
        "role": account.role,
        "permissions": list(account.permissions),
        "firstName": account.first_name,
        "lastName": account.last_name,
        "dateOfBirth": account.date_of_birth,
        "gender": account.gender,
        "bio": account.bio,
        "forcePasswordChange": account.force_password_change,
        "profileCompleted": account.profile_completed,
        "twoFactorEnabled": account.two_factor_enabled,
        "lastLoginAt": _iso(account.last_login_at),
    }


def token_payload(tokens: TokenPair) -> dict[str, Any]:
    return {
        "accessToken": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "expiresIn": tokens.expires_in,
        "tokenType": "Bearer",
    }


def login_payload(account: Account, tokens: TokenPair) -> dict[str, Any]:
    return {**token_payload(tokens), "user": user_payload(account)}


def session_payload(session: Session, *, current_family_id: Optional[str]) -> dict[str, Any]:
    return {
        "id": session.id,
        "issuedAt": _iso(session.issued_at),
        "expiresAt": _iso(session.expires_at),
        "deviceName": session.device_name,
        "userAgent": session.user_agent,
        "ipAddress": session.ip_addr,
        "current": session.family_id == current_family_id,
    }
