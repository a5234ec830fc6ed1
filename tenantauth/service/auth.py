from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind
from tenantauth.service.gate import DEFAULT_RULES, AccessGate, GateRules, Principal
from tenantauth.service.lockout import LockoutPolicy
from tenantauth.service.notifier import OTPNotifier
from tenantauth.service.otp import OTPResetFlow, delivery_method_for
from tenantauth.service.passwords import CredentialVerifier, check_password_policy
from tenantauth.service.sessions import ClientInfo, IssuedSession, SessionRegistry
from tenantauth.service.tenants import TenantContext, TenantResolver
from tenantauth.service.tokens import TokenService
from tenantauth.storage.models import (
    REVOKE_PASSWORD_CHANGE,
    Account,
    AuditEvent,
    Institution,
    Session,
)

logger = get_logger(__name__)

_WARNING_SEVERITIES = {"warning", "critical"}


class AuthStore(Protocol):
    def get_institution(self, institution_id: str) -> Optional[Institution]: ...

    def create_account(self, institution_id: Optional[str], username: str, **kwargs: Any) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def find_account(self, institution_id: Optional[str], identifier: str) -> Optional[Account]: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def change_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        keep_family_id: Optional[str] = None,
        reason: str = ...,
    ) -> Optional[Account]: ...

    def update_profile(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def record_audit_event(self, event: str, **kwargs: Any) -> AuditEvent: ...


@dataclass(frozen=True)
class LoginResult:
    account: Account
    issued: IssuedSession


class AuthService:
    """Login, refresh, logout and password lifecycle for tenant accounts.

    Component operations return ``AuthResult``; callers at the HTTP edge
    turn failures into ``ServiceError`` with ``unwrap()``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        notifier: Optional[OTPNotifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tenants = TenantResolver(store, settings)
        self.verifier = CredentialVerifier(store)
        self.lockout = LockoutPolicy(store, settings)
        self.tokens = TokenService(settings)
        self.sessions = SessionRegistry(store, self.tokens, settings)
        self.otp = OTPResetFlow(
            store,
            self.verifier,
            notifier or OTPNotifier.from_settings(settings),
            settings,
        )
        self.gate = AccessGate(store, self.tokens)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _audit(
        self,
        event: str,
        *,
        severity: str = "info",
        account: Optional[Account] = None,
        institution_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        **detail: Any,
    ) -> None:
        inst_id = institution_id if institution_id is not None else (
            account.institution_id if account else None
        )
        log_fn = self.logger.warning if severity in _WARNING_SEVERITIES else self.logger.info
        log_fn(
            event,
            account_id=account.id if account else None,
            institution_id=inst_id,
            ip=ip_addr,
            **detail,
        )
        self.store.record_audit_event(
            event,
            severity=severity,
            institution_id=inst_id,
            account_id=account.id if account else None,
            ip_addr=ip_addr,
            detail=detail,
        )

    # -- provisioning -------------------------------------------------------

    def provision_account(
        self,
        institution_id: Optional[str],
        username: str,
        password: str,
        **fields: Any,
    ) -> Account:
        """Create an account with an initial secret (used by admin tooling)."""
        account = self.store.create_account(institution_id, username, **fields)
        password_hash, algo = self.verifier.hash_password(password)
        self.store.save_password(account.id, password_hash, algo)
        return account

    # -- login ----------------------------------------------------------------

    def _credential_login(
        self,
        account: Optional[Account],
        institution: Optional[Institution],
        password: str,
        client: ClientInfo,
    ) -> AuthResult[LoginResult]:
        if account is None or not account.usable:
            self.verifier.burn_verification(password)
            self.logger.info(
                "login_unknown_or_disabled",
                institution_id=institution.id if institution else None,
                ip=client.ip_addr,
            )
            return AuthResult.failure(ErrorKind.INVALID_CREDENTIALS)

        locked = self.lockout.check(account, self._now())
        if not locked.ok:
            self._audit(
                "login_blocked_locked",
                severity="warning",
                account=account,
                ip_addr=client.ip_addr,
                retry_after_seconds=locked.detail.get("retryAfterSeconds"),
            )
            return AuthResult.failure(
                ErrorKind.ACCOUNT_LOCKED, locked.message, **locked.detail
            )

        if not self.verifier.verify(account.id, password):
            updated = self.lockout.register_failure(account, institution)
            if self.lockout.just_locked(account, updated):
                self._audit(
                    "account_locked",
                    severity="warning",
                    account=account,
                    ip_addr=client.ip_addr,
                    locked_until=updated.locked_until.isoformat(),
                )
            else:
                self.logger.warning(
                    "login_failed",
                    account_id=account.id,
                    institution_id=account.institution_id,
                    ip=client.ip_addr,
                    failed_attempt_count=updated.failed_attempt_count if updated else None,
                )
            return AuthResult.failure(ErrorKind.INVALID_CREDENTIALS)

        refreshed = self.lockout.register_success(account, client.ip_addr) or account
        if self.verifier.needs_rehash(account.id):
            password_hash, algo = self.verifier.hash_password(password)
            self.store.save_password(account.id, password_hash, algo)
        issued = self.sessions.open(refreshed, institution, client).unwrap()
        self.logger.info(
            "login_succeeded",
            account_id=account.id,
            institution_id=account.institution_id,
            session_id=issued.session.id,
            ip=client.ip_addr,
        )
        return AuthResult.success(LoginResult(account=refreshed, issued=issued))

    def login(
        self,
        tenant: TenantContext,
        identifier: str,
        password: str,
        client: ClientInfo,
    ) -> AuthResult[LoginResult]:
        if tenant.is_tenantless:
            return AuthResult.failure(ErrorKind.TENANT_REQUIRED)
        account = self.store.find_account(tenant.institution_id, identifier)
        return self._credential_login(account, tenant.institution, password, client)

    def super_admin_login(
        self,
        tenant: TenantContext,
        identifier: str,
        password: str,
        client: ClientInfo,
    ) -> AuthResult[LoginResult]:
        """Platform-level login; only valid on tenant-less hosts."""
        if not tenant.is_tenantless:
            return AuthResult.failure(ErrorKind.INVALID_CREDENTIALS)
        account = self.store.find_account(None, identifier)
        if account is not None and not account.is_super_admin:
            account = None
        return self._credential_login(account, None, password, client)

    # -- refresh / logout -------------------------------------------------------

    def refresh(
        self,
        tenant: TenantContext,
        refresh_token: Optional[str],
        client: ClientInfo,
    ) -> AuthResult[LoginResult]:
        found = self.sessions.lookup(refresh_token)
        if not found.ok:
            return AuthResult.failure(found.kind)
        session = found.value
        if session.institution_id != tenant.institution_id:
            self.logger.warning(
                "tenant_mismatch",
                account_id=session.account_id,
                claimed_institution_id=session.institution_id,
                request_institution_id=tenant.institution_id,
                ip=client.ip_addr,
            )
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)

        account = self.store.get_account(session.account_id)
        if account is None:
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)
        if not account.usable:
            self.sessions.revoke_all(account.id)
            return AuthResult.failure(ErrorKind.ACCOUNT_INACTIVE)

        rotated = self.sessions.rotate(refresh_token, account, client)
        if not rotated.ok:
            if rotated.kind == ErrorKind.TOKEN_REUSED:
                self._audit(
                    "refresh_token_reuse_detected",
                    severity="critical",
                    account=account,
                    ip_addr=client.ip_addr,
                    family_id=rotated.detail.get("family_id"),
                )
            return AuthResult.failure(rotated.kind)
        return AuthResult.success(LoginResult(account=account, issued=rotated.value))

    def logout(self, principal: Principal, refresh_token: Optional[str] = None) -> int:
        revoked = self.sessions.revoke_current(principal.family_id)
        if refresh_token:
            found = self.sessions.lookup(refresh_token)
            if (
                found.ok
                and found.value.account_id == principal.account_id
                and found.value.family_id != principal.family_id
            ):
                revoked += self.sessions.revoke_current(found.value.family_id)
        self.logger.info(
            "logout",
            account_id=principal.account_id,
            institution_id=principal.institution_id,
            revoked_sessions=revoked,
        )
        return revoked

    def logout_all(self, principal: Principal, *, ip_addr: Optional[str] = None) -> int:
        revoked = self.sessions.revoke_all(principal.account_id)
        self._audit(
            "logout_all",
            severity="warning",
            account=principal.account,
            ip_addr=ip_addr,
            revoked_sessions=revoked,
        )
        return revoked

    def list_sessions(self, principal: Principal) -> List[Session]:
        return self.sessions.list_active(principal.account_id)

    # -- access gate ----------------------------------------------------------

    def authenticate(
        self,
        token: Optional[str],
        tenant: TenantContext,
        rules: GateRules = DEFAULT_RULES,
        *,
        ip_addr: Optional[str] = None,
    ) -> AuthResult[Principal]:
        return self.gate.evaluate(token, tenant, rules, ip_addr=ip_addr)

    # -- password reset ---------------------------------------------------------

    async def forgot_password(self, tenant: TenantContext, identifier: str) -> AuthResult[str]:
        """Start a reset; the reply never depends on whether the account exists."""
        if tenant.is_tenantless:
            return AuthResult.failure(ErrorKind.TENANT_REQUIRED)
        method = delivery_method_for(identifier)
        account = self.store.find_account(tenant.institution_id, identifier)
        if account is None or not account.usable:
            self.logger.info(
                "password_reset_unknown_identifier",
                institution_id=tenant.institution_id,
            )
            return AuthResult.success(method)
        await self.otp.request(account)
        return AuthResult.success(method)

    def reset_password(
        self,
        tenant: TenantContext,
        identifier: str,
        code: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> AuthResult[Account]:
        if tenant.is_tenantless:
            return AuthResult.failure(ErrorKind.TENANT_REQUIRED)
        length = self.settings.otp_length
        if not (code.isdigit() and len(code) == length):
            return AuthResult.failure(
                ErrorKind.VALIDATION_FAILED, f"OTP must be {length} digits", field="otp"
            )
        policy = check_password_policy(new_password)
        if not policy.ok:
            return AuthResult.failure(policy.kind, policy.message, **policy.detail)

        account = self.store.find_account(tenant.institution_id, identifier)
        if account is not None and not account.usable:
            account = None
        result = self.otp.verify_and_reset(account, code, new_password)
        if result.ok:
            self._audit(
                "password_reset_completed",
                severity="warning",
                account=result.value,
                ip_addr=ip_addr,
            )
        elif result.kind == ErrorKind.TOO_MANY_OTP_ATTEMPTS:
            self._audit(
                "otp_attempts_exhausted",
                severity="warning",
                account=account,
                ip_addr=ip_addr,
            )
        return result

    def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> AuthResult[Account]:
        policy = check_password_policy(new_password)
        if not policy.ok:
            return AuthResult.failure(policy.kind, policy.message, **policy.detail)
        if not self.verifier.verify(principal.account_id, current_password):
            return AuthResult.failure(
                ErrorKind.VALIDATION_FAILED,
                "Current password is incorrect",
                field="currentPassword",
            )
        if current_password == new_password:
            return AuthResult.failure(
                ErrorKind.VALIDATION_FAILED,
                "New password must be different from the current password",
                field="newPassword",
            )
        password_hash, algo = self.verifier.hash_password(new_password)
        updated = self.store.change_password(
            principal.account_id,
            password_hash,
            algo,
            keep_family_id=principal.family_id,
            reason=REVOKE_PASSWORD_CHANGE,
        )
        if updated is None:
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)
        self._audit("password_changed", severity="warning", account=updated, ip_addr=ip_addr)
        return AuthResult.success(updated)

    # -- profile ----------------------------------------------------------------

    def update_profile(self, principal: Principal, **fields: Any) -> AuthResult[Account]:
        changes = {k: v for k, v in fields.items() if v is not None}
        updated = self.store.update_profile(principal.account_id, **changes)
        if updated is None:
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)
        self.logger.info(
            "profile_updated", account_id=principal.account_id, fields=sorted(changes)
        )
        return AuthResult.success(updated)

    def complete_profile(self, principal: Principal, **fields: Any) -> AuthResult[Account]:
        missing = [
            name for name in ("first_name", "last_name", "phone") if not fields.get(name)
        ]
        if missing:
            return AuthResult.failure(
                ErrorKind.VALIDATION_FAILED,
                "First name, last name and phone are required",
                fields=missing,
            )
        return self.update_profile(principal, profile_completed=True, **fields)
