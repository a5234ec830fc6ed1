from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind
from tenantauth.service.tokens import TokenPair, TokenService
from tenantauth.storage.models import (
    REVOKE_LOGOUT,
    REVOKE_LOGOUT_ALL,
    REVOKE_NEW_DEVICE,
    REVOKE_REUSE,
    REVOKE_ROTATED,
    Account,
    Institution,
    RotationOutcome,
    Session,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self, session: Session, *, revoke_existing: bool = False, revoke_reason: str = ...
    ) -> Session: ...

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]: ...

    def rotate_session(
        self, token_hash: str, replacement: Session, *, reason: str = ...
    ) -> RotationOutcome: ...

    def revoke_session_family(self, family_id: str, reason: str = ...) -> int: ...

    def revoke_account_sessions(
        self, account_id: str, reason: str = ..., *, except_family_id: Optional[str] = None
    ) -> int: ...

    def list_account_sessions(
        self, account_id: str, *, active_only: bool = True
    ) -> List[Session]: ...


@dataclass(frozen=True)
class IssuedSession:
    session: Session
    tokens: TokenPair


@dataclass(frozen=True)
class ClientInfo:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None


class SessionRegistry:
    """Refresh-token chains: open on login, rotate on use, revoke on logout.

    Sessions descending from one login share a ``family_id``. Exactly one
    link of a family is live at a time; presenting an already rotated link
    revokes the whole family.
    """

    def __init__(self, store: SessionStore, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def single_device_enabled(self, institution: Optional[Institution]) -> bool:
        if institution is not None:
            override = institution.settings.get("single_device_login")
            if isinstance(override, bool):
                return override
        return self.settings.single_device_sessions

    def _new_session(
        self,
        account: Account,
        client: ClientInfo,
        now: datetime,
    ) -> tuple[Session, str]:
        raw = self.tokens.generate_refresh_token()
        session = Session.new(
            account_id=account.id,
            institution_id=account.institution_id,
            token_hash=self.tokens.hash_refresh_token(raw),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            device_name=client.device_name,
            user_agent=client.user_agent,
            ip_addr=client.ip_addr,
            now=now,
        )
        return session, raw

    def _issue(self, account: Account, session: Session, raw_refresh: str, now: datetime) -> IssuedSession:
        access = self.tokens.issue_access_token(
            account_id=account.id,
            institution_id=account.institution_id,
            role=account.role,
            session_id=session.id,
            family_id=session.family_id,
            now=now,
        )
        return IssuedSession(
            session=session,
            tokens=TokenPair(
                access_token=access,
                refresh_token=raw_refresh,
                expires_in=self.tokens.access_ttl_seconds,
                refresh_expires_at=session.expires_at,
            ),
        )

    def open(
        self,
        account: Account,
        institution: Optional[Institution],
        client: ClientInfo,
    ) -> AuthResult[IssuedSession]:
        now = self._now()
        session, raw = self._new_session(account, client, now)
        single_device = self.single_device_enabled(institution)
        stored = self.store.create_session(
            session, revoke_existing=single_device, revoke_reason=REVOKE_NEW_DEVICE
        )
        logger.info(
            "session_opened",
            account_id=account.id,
            institution_id=account.institution_id,
            session_id=stored.id,
            single_device=single_device,
        )
        return AuthResult.success(self._issue(account, stored, raw, now))

    def lookup(self, refresh_token: Optional[str]) -> AuthResult[Session]:
        """Find the session a refresh token belongs to, live or not."""
        if not self.tokens.is_well_formed_refresh_token(refresh_token):
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)
        session = self.store.get_session_by_hash(self.tokens.hash_refresh_token(refresh_token))
        if session is None:
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)
        return AuthResult.success(session)

    def rotate(
        self,
        refresh_token: str,
        account: Account,
        client: ClientInfo,
    ) -> AuthResult[IssuedSession]:
        now = self._now()
        replacement, raw = self._new_session(account, client, now)
        token_hash = self.tokens.hash_refresh_token(refresh_token)
        outcome = self.store.rotate_session(token_hash, replacement, reason=REVOKE_ROTATED)

        if outcome.status == "rotated" and outcome.session is not None:
            return AuthResult.success(self._issue(account, outcome.session, raw, now))
        if outcome.status == "reused" and outcome.previous is not None:
            revoked = self.store.revoke_session_family(
                outcome.previous.family_id, reason=REVOKE_REUSE
            )
            logger.warning(
                "refresh_family_revoked",
                account_id=account.id,
                institution_id=account.institution_id,
                family_id=outcome.previous.family_id,
                revoked_sessions=revoked,
                ip=client.ip_addr,
            )
            return AuthResult.failure(
                ErrorKind.TOKEN_REUSED, family_id=outcome.previous.family_id
            )
        if outcome.status == "expired":
            return AuthResult.failure(ErrorKind.TOKEN_EXPIRED)
        return AuthResult.failure(ErrorKind.TOKEN_INVALID)

    def revoke_current(self, family_id: Optional[str]) -> int:
        """Revoke the live link of the caller's own chain."""
        if not family_id:
            return 0
        return self.store.revoke_session_family(family_id, reason=REVOKE_LOGOUT)

    def revoke_all(self, account_id: str, *, reason: str = REVOKE_LOGOUT_ALL) -> int:
        return self.store.revoke_account_sessions(account_id, reason)

    def list_active(self, account_id: str) -> List[Session]:
        return self.store.list_account_sessions(account_id, active_only=True)
