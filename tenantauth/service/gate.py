from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Protocol, Union

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind
from tenantauth.service.tenants import TenantContext
from tenantauth.service.tokens import AccessClaims, TokenService
from tenantauth.storage.models import Account

logger = get_logger(__name__)

SUPER_ADMIN = "super_admin"
CHANGE_PASSWORD_PATH = "/change-password"
COMPLETE_PROFILE_PATH = "/complete-profile"


class AccountLookup(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...


@dataclass(frozen=True)
class Capabilities:
    """Role and explicit permissions of an authenticated account."""

    role: str
    permissions: FrozenSet[str] = frozenset()

    @property
    def is_super_admin(self) -> bool:
        return self.role == SUPER_ADMIN

    def has_role(self, roles: Union[str, Iterable[str]]) -> bool:
        wanted = {roles} if isinstance(roles, str) else set(roles)
        return self.role in wanted

    def has_permission(self, permission: str) -> bool:
        if self.is_super_admin:
            return True
        return permission in self.permissions or "*" in self.permissions


@dataclass(frozen=True)
class Principal:
    account: Account
    claims: AccessClaims
    capabilities: Capabilities

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def institution_id(self) -> Optional[str]:
        return self.account.institution_id

    @property
    def family_id(self) -> Optional[str]:
        return self.claims.family_id


@dataclass(frozen=True)
class GateRules:
    """Which mandatory-state gates a route lets through."""

    allow_password_change_pending: bool = False
    allow_profile_pending: bool = False


DEFAULT_RULES = GateRules()
# The change-password route is reachable by every provisional account
CHANGE_PASSWORD_RULES = GateRules(
    allow_password_change_pending=True, allow_profile_pending=True
)
COMPLETE_PROFILE_RULES = GateRules(allow_profile_pending=True)
ANY_STATE_RULES = GateRules(allow_password_change_pending=True, allow_profile_pending=True)


class AccessGate:
    """Runs on every bearer request before business logic.

    Checks, each short-circuiting: token verifies; token tenant equals the
    request tenant; account exists in that tenant; account active; forced
    password change; profile completion.
    """

    def __init__(self, store: AccountLookup, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def evaluate(
        self,
        token: Optional[str],
        tenant: TenantContext,
        rules: GateRules = DEFAULT_RULES,
        *,
        ip_addr: Optional[str] = None,
    ) -> AuthResult[Principal]:
        verified = self.tokens.verify_access_token(token)
        if not verified.ok:
            return AuthResult.failure(verified.kind)
        claims = verified.value

        if claims.institution_id != tenant.institution_id:
            logger.warning(
                "tenant_mismatch",
                account_id=claims.account_id,
                claimed_institution_id=claims.institution_id,
                request_institution_id=tenant.institution_id,
                ip=ip_addr,
            )
            return AuthResult.failure(ErrorKind.INSTITUTION_ACCESS_DENIED)

        account = self.store.get_account(claims.account_id)
        if account is None or account.institution_id != claims.institution_id:
            return AuthResult.failure(ErrorKind.TOKEN_INVALID)

        if not account.usable:
            return AuthResult.failure(ErrorKind.ACCOUNT_INACTIVE)

        if account.force_password_change and not rules.allow_password_change_pending:
            return AuthResult.failure(
                ErrorKind.PASSWORD_CHANGE_REQUIRED, redirectTo=CHANGE_PASSWORD_PATH
            )

        if not account.profile_completed and not rules.allow_profile_pending:
            return AuthResult.failure(
                ErrorKind.PROFILE_COMPLETION_REQUIRED, redirectTo=COMPLETE_PROFILE_PATH
            )

        return AuthResult.success(
            Principal(
                account=account,
                claims=claims,
                capabilities=Capabilities(
                    role=account.role, permissions=frozenset(account.permissions)
                ),
            )
        )
