from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

ROLES = (
    "super_admin",
    "institution_admin",
    "faculty",
    "student",
    "librarian",
    "parent",
    "guest",
)

GENDERS = ("male", "female", "other")

# Reasons recorded on a revoked session
REVOKE_LOGOUT = "user_logout"
REVOKE_LOGOUT_ALL = "logout_all"
REVOKE_ROTATED = "rotated"
REVOKE_NEW_DEVICE = "new_device"
REVOKE_REUSE = "security"
REVOKE_PASSWORD_CHANGE = "password_change"
REVOKE_PASSWORD_RESET = "password_reset"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Institution:
    id: str
    name: str
    subdomain: str
    custom_domain: Optional[str] = None
    is_active: bool = True
    settings: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    institution_id: Optional[str]
    username: str
    role: str = "student"
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    bio: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    failed_attempt_count: int = 0
    locked_until: Optional[datetime] = None
    force_password_change: bool = True
    profile_completed: bool = False
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin" and self.institution_id is None

    @property
    def usable(self) -> bool:
        return self.is_active and self.deleted_at is None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class PasswordRecord:
    account_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Server-side record of one refresh-token chain link."""

    id: str
    account_id: str
    institution_id: Optional[str]
    family_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    replaced_by: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        institution_id: Optional[str],
        token_hash: str,
        ttl_minutes: int,
        *,
        family_id: str | None = None,
        device_name: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        issued = now or utcnow()
        session_id = str(uuid.uuid4())
        return cls(
            id=session_id,
            account_id=account_id,
            institution_id=institution_id,
            family_id=family_id or session_id,
            token_hash=token_hash,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            device_name=device_name,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class RotationOutcome:
    """Result of an atomic rotate-and-revoke attempt."""

    status: str  # rotated | reused | revoked | expired | not_found
    previous: Optional[Session] = None
    session: Optional[Session] = None


@dataclass
class PasswordResetChallenge:
    account_id: str
    otp_hash: str
    expires_at: datetime
    attempt_count: int = 0
    max_attempts: int = 3
    channel: str = "Email"
    created_at: datetime = field(default_factory=utcnow)

    def is_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuditEvent:
    id: str
    event: str
    severity: str = "info"
    institution_id: Optional[str] = None
    account_id: Optional[str] = None
    ip_addr: Optional[str] = None
    detail: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
