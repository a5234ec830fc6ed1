from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind
from tenantauth.service.notifier import CHANNEL_EMAIL, CHANNEL_SMS, OTPNotifier
from tenantauth.service.passwords import CredentialVerifier
from tenantauth.storage.models import Account, PasswordResetChallenge

logger = get_logger(__name__)


class ChallengeStore(Protocol):
    def upsert_reset_challenge(
        self, challenge: PasswordResetChallenge
    ) -> PasswordResetChallenge: ...

    def register_reset_attempt(
        self, account_id: str
    ) -> Optional[PasswordResetChallenge]: ...

    def delete_reset_challenge(self, account_id: str) -> None: ...

    def apply_password_reset(
        self, account_id: str, otp_hash: str, password_hash: str, password_algo: str
    ) -> Optional[Account]: ...


def delivery_method_for(identifier: str) -> str:
    """Channel reported to the caller, derived from the identifier alone.

    The reply must look the same whether or not the account exists, so the
    method cannot depend on what is stored for the account.
    """
    return CHANNEL_EMAIL if "@" in identifier else CHANNEL_SMS


class OTPResetFlow:
    """Two-phase password reset authorized by a short-lived numeric code.

    Each verification attempt is counted before the code is compared. The
    attempt that brings the counter to ``max_attempts`` is refused and
    destroys the challenge, whatever code it carried.
    """

    def __init__(
        self,
        store: ChallengeStore,
        verifier: CredentialVerifier,
        notifier: OTPNotifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.notifier = notifier
        self.settings = settings
        self._pending_dispatches: set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def hash_code(self, account_id: str, code: str) -> str:
        key = (self.settings.refresh_token_pepper or self.settings.jwt_secret).encode()
        return hmac.new(key, f"{account_id}:{code}".encode(), hashlib.sha256).hexdigest()

    def issue_challenge(self, account: Account) -> tuple[PasswordResetChallenge, str]:
        code = self.generate_code()
        challenge = PasswordResetChallenge(
            account_id=account.id,
            otp_hash=self.hash_code(account.id, code),
            expires_at=self._now() + timedelta(minutes=self.settings.otp_ttl_minutes),
            attempt_count=0,
            max_attempts=self.settings.otp_max_attempts,
            channel=self.notifier.channel_for(account),
        )
        stored = self.store.upsert_reset_challenge(challenge)
        logger.info(
            "otp_challenge_issued",
            account_id=account.id,
            institution_id=account.institution_id,
            channel=stored.channel,
        )
        return stored, code

    async def dispatch(self, account: Account, code: str) -> Optional[bool]:
        """Hand the code to the notifier, waiting at most the configured bound.

        Returns the delivery result, or None when delivery is still running in
        the background after the wait elapsed.
        """
        task = asyncio.ensure_future(asyncio.to_thread(self.notifier.deliver, account, code))
        self._pending_dispatches.add(task)
        task.add_done_callback(self._dispatch_finished)
        try:
            return await asyncio.wait_for(
                asyncio.shield(task), timeout=self.settings.otp_dispatch_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "otp_dispatch_pending",
                account_id=account.id,
                timeout_seconds=self.settings.otp_dispatch_timeout_seconds,
            )
            return None
        except Exception:
            # Already logged by _dispatch_finished; delivery never fails the request
            return False

    def _dispatch_finished(self, task: asyncio.Task) -> None:
        self._pending_dispatches.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "otp_dispatch_failed", error_type=type(exc).__name__, error=str(exc)
            )
        elif task.result() is False:
            logger.error("otp_dispatch_undelivered")

    async def request(self, account: Account) -> None:
        _, code = self.issue_challenge(account)
        await self.dispatch(account, code)

    def verify_and_reset(
        self, account: Optional[Account], code: str, new_password: str
    ) -> AuthResult[Account]:
        if account is None:
            return AuthResult.failure(ErrorKind.OTP_INVALID)

        challenge = self.store.register_reset_attempt(account.id)
        if challenge is None:
            return AuthResult.failure(ErrorKind.OTP_INVALID)

        if challenge.is_expired(self._now()):
            self.store.delete_reset_challenge(account.id)
            return AuthResult.failure(ErrorKind.OTP_EXPIRED)

        if challenge.is_exhausted():
            self.store.delete_reset_challenge(account.id)
            return AuthResult.failure(ErrorKind.TOO_MANY_OTP_ATTEMPTS)

        expected = challenge.otp_hash
        if not hmac.compare_digest(expected, self.hash_code(account.id, code)):
            logger.info(
                "otp_mismatch",
                account_id=account.id,
                attempts=challenge.attempt_count,
                max_attempts=challenge.max_attempts,
            )
            return AuthResult.failure(ErrorKind.OTP_INVALID)

        password_hash, algo = self.verifier.hash_password(new_password)
        updated = self.store.apply_password_reset(account.id, expected, password_hash, algo)
        if updated is None:
            return AuthResult.failure(ErrorKind.OTP_INVALID)
        return AuthResult.success(updated)
