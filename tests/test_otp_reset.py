"""Tests for the two-phase one-time-code password reset."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.errors import ErrorKind
from tenantauth.service.notifier import CHANNEL_EMAIL, CHANNEL_SMS
from tenantauth.service.otp import delivery_method_for
from tenantauth.storage.models import REVOKE_PASSWORD_RESET

NEW_PASSWORD = "Brand-New-Pass-77"


def _wrong(code: str) -> str:
    return str((int(code) + 1) % 10**len(code)).zfill(len(code))


class TestForgotPassword:
    """Phase one: request a code."""

    async def test_known_account_gets_challenge(self, auth_service, make_account, tenant, notifier, memory_store):
        """A known identifier stores a hashed challenge and sends the code."""
        account = make_account()
        result = await auth_service.forgot_password(tenant, "alice@demo.test")
        assert result.ok
        assert result.value == CHANNEL_EMAIL
        code = notifier.last_code(account.id)
        assert len(code) == 6 and code.isdigit()
        challenge = memory_store.get_reset_challenge(account.id)
        assert challenge.attempt_count == 0
        assert challenge.otp_hash != code

    async def test_unknown_account_looks_identical(self, auth_service, tenant, notifier):
        """Unknown identifiers answer the same success without dispatching."""
        result = await auth_service.forgot_password(tenant, "nobody@demo.test")
        assert result.ok
        assert result.value == CHANNEL_EMAIL
        assert notifier.sent == []

    async def test_method_follows_identifier(self, auth_service, make_account, tenant):
        """Phone-like identifiers report SMS regardless of storage."""
        make_account(phone="+919876543210")
        result = await auth_service.forgot_password(tenant, "+919876543210")
        assert result.value == CHANNEL_SMS
        assert delivery_method_for("someone") == CHANNEL_SMS

    async def test_inactive_account_not_dispatched(self, auth_service, make_account, tenant, notifier, memory_store):
        """Deactivated accounts get the generic reply and no code."""
        account = make_account()
        memory_store.set_account_active(account.id, False)
        assert (await auth_service.forgot_password(tenant, "alice")).ok
        assert notifier.sent == []

    async def test_new_request_replaces_challenge(self, auth_service, make_account, tenant, notifier, memory_store):
        """Requesting again resets attempts and invalidates the older code."""
        account = make_account()
        await auth_service.forgot_password(tenant, "alice")
        first = notifier.last_code(account.id)
        auth_service.reset_password(tenant, "alice", _wrong(first), NEW_PASSWORD)
        await auth_service.forgot_password(tenant, "alice")
        assert memory_store.get_reset_challenge(account.id).attempt_count == 0
        second = notifier.last_code(account.id)
        if first != second:
            result = auth_service.reset_password(tenant, "alice", first, NEW_PASSWORD)
            assert result.kind == ErrorKind.OTP_INVALID

    async def test_tenantless_request_rejected(self, auth_service):
        """Resets always need an institution."""
        from tenantauth.service.tenants import TenantContext

        result = await auth_service.forgot_password(TenantContext(host="localhost"), "alice")
        assert result.kind == ErrorKind.TENANT_REQUIRED


class TestDispatch:
    """Bounded hand-off to the notifier."""

    async def test_slow_delivery_does_not_block(self, auth_service, make_account, settings):
        """A notifier slower than the bound leaves delivery in the background."""
        account = make_account()
        release = threading.Event()

        class SlowNotifier:
            def deliver(self, acct, code):
                release.wait(timeout=5)
                return True

        settings.otp_dispatch_timeout_seconds = 0.05
        auth_service.otp.notifier = SlowNotifier()
        try:
            assert await auth_service.otp.dispatch(account, "123456") is None
        finally:
            release.set()
        await asyncio.sleep(0.05)

    async def test_delivery_failure_is_contained(self, auth_service, make_account, tenant):
        """A notifier error never reaches the caller."""
        make_account()

        class BrokenNotifier:
            def channel_for(self, acct):
                return CHANNEL_EMAIL

            def deliver(self, acct, code):
                raise OSError("smtp down")

        auth_service.otp.notifier = BrokenNotifier()
        result = await auth_service.forgot_password(tenant, "alice")
        assert result.ok


class TestResetPassword:
    """Phase two: verify the code and set a new password."""

    @pytest.fixture
    def issued_code(self, auth_service, make_account, tenant, notifier):
        account = make_account()
        asyncio.run(auth_service.forgot_password(tenant, "alice"))
        return account, notifier.last_code(account.id)

    def test_correct_code_resets(self, auth_service, tenant, client_info, issued_code, memory_store):
        """The right code sets the new password and clears the challenge."""
        account, code = issued_code
        result = auth_service.reset_password(tenant, "alice", code, NEW_PASSWORD, ip_addr="198.51.100.4")
        assert result.ok
        assert memory_store.get_reset_challenge(account.id) is None
        assert auth_service.login(tenant, "alice", NEW_PASSWORD, client_info).ok
        events = [e.event for e in memory_store.list_audit_events(account_id=account.id)]
        assert "password_reset_completed" in events

    def test_reset_revokes_sessions_and_clears_lock(self, auth_service, tenant, client_info, password, issued_code, memory_store):
        """A reset logs out every session and lifts any lockout."""
        account, code = issued_code
        issued = auth_service.login(tenant, "alice", password, client_info).unwrap().issued
        memory_store.accounts[account.id].locked_until = datetime.now(timezone.utc) + timedelta(minutes=5)
        memory_store.accounts[account.id].force_password_change = True
        assert auth_service.reset_password(tenant, "alice", code, NEW_PASSWORD).ok
        session = memory_store.get_session(issued.session.id)
        assert session.revoked
        assert session.revoke_reason == REVOKE_PASSWORD_RESET
        stored = memory_store.get_account(account.id)
        assert stored.locked_until is None
        assert not stored.force_password_change

    def test_wrong_code_counts_attempt(self, auth_service, tenant, issued_code, memory_store):
        """A mismatch is OTPInvalid and increments the counter."""
        account, code = issued_code
        result = auth_service.reset_password(tenant, "alice", _wrong(code), NEW_PASSWORD)
        assert result.kind == ErrorKind.OTP_INVALID
        assert memory_store.get_reset_challenge(account.id).attempt_count == 1

    def test_correct_code_after_one_miss(self, auth_service, tenant, issued_code):
        """One wrong guess still leaves room for the right code."""
        _, code = issued_code
        auth_service.reset_password(tenant, "alice", _wrong(code), NEW_PASSWORD)
        assert auth_service.reset_password(tenant, "alice", code, NEW_PASSWORD).ok

    def test_final_attempt_refused_even_when_correct(self, auth_service, tenant, issued_code, memory_store):
        """The attempt reaching the limit is refused and destroys the challenge."""
        account, code = issued_code
        for _ in range(2):
            auth_service.reset_password(tenant, "alice", _wrong(code), NEW_PASSWORD)
        result = auth_service.reset_password(tenant, "alice", code, NEW_PASSWORD)
        assert result.kind == ErrorKind.TOO_MANY_OTP_ATTEMPTS
        assert memory_store.get_reset_challenge(account.id) is None
        follow_up = auth_service.reset_password(tenant, "alice", code, NEW_PASSWORD)
        assert follow_up.kind == ErrorKind.OTP_INVALID

    def test_expired_code(self, auth_service, tenant, issued_code, memory_store):
        """Codes past their TTL are rejected without a compare."""
        account, code = issued_code
        memory_store.challenges[account.id].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        result = auth_service.reset_password(tenant, "alice", code, NEW_PASSWORD)
        assert result.kind == ErrorKind.OTP_EXPIRED
        assert result.to_error().message == "Invalid or expired OTP"

    def test_unknown_identifier_is_generic(self, auth_service, tenant):
        """Unknown accounts fail exactly like a bad code."""
        result = auth_service.reset_password(tenant, "ghost", "123456", NEW_PASSWORD)
        assert result.kind == ErrorKind.OTP_INVALID

    def test_code_shape_validated(self, auth_service, tenant, issued_code):
        """Non-numeric or wrong-length codes fail validation before lookup."""
        result = auth_service.reset_password(tenant, "alice", "12ab56", NEW_PASSWORD)
        assert result.kind == ErrorKind.VALIDATION_FAILED
        assert result.detail["field"] == "otp"

    def test_weak_password_rejected(self, auth_service, tenant, issued_code, memory_store):
        """Policy failures do not consume an attempt."""
        account, code = issued_code
        result = auth_service.reset_password(tenant, "alice", code, "short")
        assert result.kind == ErrorKind.VALIDATION_FAILED
        assert memory_store.get_reset_challenge(account.id).attempt_count == 0

    def test_code_spent_once_under_contention(self, auth_service, tenant, client_info, issued_code):
        """Two concurrent resets with the same correct code: only one sets a password."""
        _, code = issued_code
        passwords = ["Racing-Pass-One-1", "Racing-Pass-Two-2"]
        results = {}
        barrier = threading.Barrier(len(passwords))

        def worker(new_password):
            barrier.wait()
            results[new_password] = auth_service.reset_password(tenant, "alice", code, new_password)

        threads = [threading.Thread(target=worker, args=(pw,)) for pw in passwords]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [pw for pw, result in results.items() if result.ok]
        assert len(winners) == 1
        loser = next(pw for pw in passwords if pw not in winners)
        assert results[loser].kind == ErrorKind.OTP_INVALID
        assert auth_service.login(tenant, "alice", winners[0], client_info).ok
        assert not auth_service.login(tenant, "alice", loser, client_info).ok
