from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind
from tenantauth.storage.models import Account, Institution

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def record_failed_login(
        self, account_id: str, threshold: int, lockout_seconds: int
    ) -> Optional[Account]: ...

    def record_login_success(
        self, account_id: str, ip_addr: Optional[str] = None
    ) -> Optional[Account]: ...


@dataclass(frozen=True)
class LockoutPolicyValues:
    threshold: int
    duration_seconds: int


def _positive_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


class LockoutPolicy:
    """Unlocked -> Locked(until) -> Unlocked, evaluated lazily at login.

    Counting and locking are delegated to a single atomic store update so
    concurrent failures on one account cannot under-count.
    """

    def __init__(self, store: LockoutStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def values_for(self, institution: Optional[Institution]) -> LockoutPolicyValues:
        threshold = self.settings.max_login_attempts
        minutes = self.settings.lockout_duration_minutes
        if institution is not None:
            threshold = _positive_int(institution.settings.get("max_login_attempts")) or threshold
            minutes = (
                _positive_int(institution.settings.get("lockout_duration_minutes"))
                or minutes
            )
        return LockoutPolicyValues(threshold=threshold, duration_seconds=minutes * 60)

    @staticmethod
    def remaining_seconds(account: Account, now: datetime) -> int:
        if account.locked_until is None:
            return 0
        return max(0, math.ceil((account.locked_until - now).total_seconds()))

    def check(self, account: Account, now: datetime) -> AuthResult[None]:
        """Short-circuit before any hashing while the lock is in force."""
        if not account.is_locked(now):
            return AuthResult.success()
        remaining = self.remaining_seconds(account, now)
        minutes = max(1, math.ceil(remaining / 60))
        return AuthResult.failure(
            ErrorKind.ACCOUNT_LOCKED,
            f"Account locked. Try again in {minutes} minutes",
            retryAfterSeconds=remaining,
        )

    def register_failure(
        self, account: Account, institution: Optional[Institution]
    ) -> Optional[Account]:
        values = self.values_for(institution)
        updated = self.store.record_failed_login(
            account.id, values.threshold, values.duration_seconds
        )
        if self.just_locked(account, updated):
            logger.warning(
                "account_locked",
                account_id=account.id,
                institution_id=account.institution_id,
                locked_until=updated.locked_until.isoformat(),
                threshold=values.threshold,
            )
        return updated

    @staticmethod
    def just_locked(before: Account, after: Optional[Account]) -> bool:
        return (
            after is not None
            and after.locked_until is not None
            and after.locked_until != before.locked_until
        )

    def register_success(
        self, account: Account, ip_addr: Optional[str] = None
    ) -> Optional[Account]:
        return self.store.record_login_success(account.id, ip_addr)
