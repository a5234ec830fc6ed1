"""Tests for failed-login counting and account lockout."""

import threading
from datetime import datetime, timedelta, timezone

from tenantauth.service.errors import ErrorKind
from tenantauth.service.lockout import LockoutPolicy


def _fail_concurrently(auth_service, tenant, client_info, workers, identifier="alice"):
    results = []
    barrier = threading.Barrier(workers)

    def attempt():
        barrier.wait()
        results.append(auth_service.login(tenant, identifier, "wrong-password", client_info))

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def _fail(auth_service, tenant, client_info, identifier="alice", times=1):
    results = []
    for _ in range(times):
        results.append(auth_service.login(tenant, identifier, "wrong-password", client_info))
    return results


class TestLockoutPolicy:
    """Counting, locking and unlocking through login."""

    def test_failures_below_threshold_are_generic(self, auth_service, make_account, tenant, client_info, memory_store):
        """Each failure answers InvalidCredentials and increments the counter."""
        account = make_account()
        results = _fail(auth_service, tenant, client_info, times=4)
        assert all(r.kind == ErrorKind.INVALID_CREDENTIALS for r in results)
        stored = memory_store.get_account(account.id)
        assert stored.failed_attempt_count == 4
        assert stored.locked_until is None

    def test_threshold_locks_and_resets_counter(self, auth_service, make_account, tenant, client_info, memory_store):
        """The fifth failure sets locked_until and zeroes the counter."""
        account = make_account()
        _fail(auth_service, tenant, client_info, times=5)
        stored = memory_store.get_account(account.id)
        assert stored.failed_attempt_count == 0
        assert stored.locked_until is not None
        expected = datetime.now(timezone.utc) + timedelta(minutes=15)
        assert abs((stored.locked_until - expected).total_seconds()) < 5

    def test_locked_account_rejects_correct_password(self, auth_service, make_account, tenant, client_info, password):
        """While locked, even the right secret answers AccountLocked with a wait."""
        make_account()
        _fail(auth_service, tenant, client_info, times=5)
        result = auth_service.login(tenant, "alice", password, client_info)
        assert result.kind == ErrorKind.ACCOUNT_LOCKED
        assert result.message.startswith("Account locked. Try again in")
        assert 0 < result.detail["retryAfterSeconds"] <= 15 * 60

    def test_locked_login_does_not_touch_counter(self, auth_service, make_account, tenant, client_info, memory_store):
        """Attempts during a lock are not counted."""
        account = make_account()
        _fail(auth_service, tenant, client_info, times=5)
        _fail(auth_service, tenant, client_info, times=3)
        assert memory_store.get_account(account.id).failed_attempt_count == 0

    def test_expired_lock_allows_login(self, auth_service, make_account, tenant, client_info, memory_store, password):
        """Once locked_until passes, a correct login succeeds and clears state."""
        account = make_account()
        _fail(auth_service, tenant, client_info, times=5)
        memory_store.accounts[account.id].locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        result = auth_service.login(tenant, "alice", password, client_info)
        assert result.ok
        stored = memory_store.get_account(account.id)
        assert stored.locked_until is None
        assert stored.failed_attempt_count == 0

    def test_success_resets_counter(self, auth_service, make_account, tenant, client_info, memory_store, password):
        """A successful login zeroes earlier failures."""
        account = make_account()
        _fail(auth_service, tenant, client_info, times=3)
        assert auth_service.login(tenant, "alice", password, client_info).ok
        assert memory_store.get_account(account.id).failed_attempt_count == 0

    def test_lock_is_audited(self, auth_service, make_account, tenant, client_info, memory_store):
        """Locking writes an account_locked audit row with the client IP."""
        account = make_account()
        _fail(auth_service, tenant, client_info, times=5)
        events = [e for e in memory_store.list_audit_events(account_id=account.id) if e.event == "account_locked"]
        assert len(events) == 1
        assert events[0].ip_addr == client_info.ip_addr
        assert events[0].institution_id == account.institution_id


class TestConcurrentFailures:
    """Parallel wrong-password logins against one account."""

    def test_parallel_failures_are_all_counted(self, auth_service, make_account, tenant, client_info, memory_store):
        """Four simultaneous failures leave a count of exactly four."""
        account = make_account()
        results = _fail_concurrently(auth_service, tenant, client_info, workers=4)
        assert [r.kind for r in results] == [ErrorKind.INVALID_CREDENTIALS] * 4
        stored = memory_store.get_account(account.id)
        assert stored.failed_attempt_count == 4
        assert stored.locked_until is None

    def test_parallel_failures_reach_the_lock(self, auth_service, make_account, tenant, client_info, memory_store):
        """Threshold-many simultaneous failures lock the account exactly once."""
        account = make_account()
        _fail_concurrently(auth_service, tenant, client_info, workers=5)
        stored = memory_store.get_account(account.id)
        assert stored.locked_until is not None
        assert stored.failed_attempt_count == 0
        locks = [e for e in memory_store.list_audit_events(account_id=account.id) if e.event == "account_locked"]
        assert len(locks) == 1


class TestInstitutionOverrides:
    """Per-institution lockout settings."""

    def test_override_wins(self, memory_store, settings):
        """Valid overrides replace the process-wide values."""
        inst = memory_store.create_institution(
            "Strict", "strict", settings={"max_login_attempts": 2, "lockout_duration_minutes": 60}
        )
        values = LockoutPolicy(memory_store, settings).values_for(inst)
        assert values.threshold == 2
        assert values.duration_seconds == 3600

    def test_malformed_override_ignored(self, memory_store, settings):
        """Non-positive or non-numeric overrides fall back to defaults."""
        inst = memory_store.create_institution(
            "Odd", "odd", settings={"max_login_attempts": 0, "lockout_duration_minutes": "soon"}
        )
        values = LockoutPolicy(memory_store, settings).values_for(inst)
        assert values.threshold == 5
        assert values.duration_seconds == 15 * 60

    def test_override_applies_at_login(self, auth_service, memory_store, client_info):
        """An institution threshold of 2 locks on the second failure."""
        from tenantauth.service.tenants import TenantContext

        inst = memory_store.create_institution("Strict", "strict", settings={"max_login_attempts": 2})
        account = auth_service.provision_account(inst.id, "bob", "Initial-Pass-42", force_password_change=False)
        tenant = TenantContext(host="strict.localhost", institution=inst)
        _fail(auth_service, tenant, client_info, identifier="bob", times=2)
        assert memory_store.get_account(account.id).locked_until is not None
