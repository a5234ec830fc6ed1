import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Per-process token buckets; the Redis path is covered with a stubbed cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.auth import AuthService  # noqa: E402
from tenantauth.service.notifier import EmailService, OTPNotifier, SMSService  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.service.sessions import ClientInfo  # noqa: E402
from tenantauth.service.tenants import TenantContext  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Initial-Pass-42"
TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingNotifier(OTPNotifier):
    """Captures reset codes instead of sending them."""

    def __init__(self, ttl_minutes: int = 5) -> None:
        super().__init__(EmailService(), SMSService(), ttl_minutes=ttl_minutes)
        self.sent: list[tuple[str, str]] = []

    def deliver(self, account, code: str) -> bool:
        self.sent.append((account.id, code))
        return True

    def last_code(self, account_id: str) -> str:
        return [code for acc, code in self.sent if acc == account_id][-1]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh snapshot directory so the runtime store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        max_login_attempts=5,
        lockout_duration_minutes=15,
        otp_max_attempts=3,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, settings, notifier):
    return AuthService(memory_store, settings, notifier=notifier)


@pytest.fixture
def institution(memory_store):
    return memory_store.create_institution("Demo College", "demo")


@pytest.fixture
def tenant(institution):
    return TenantContext(host="demo.scholarbridgelms.com", institution=institution)


@pytest.fixture
def client_info():
    return ClientInfo(ip_addr="203.0.113.7", user_agent="pytest", device_name="laptop")


@pytest.fixture
def make_account(auth_service, institution):
    """Provision an account in the demo institution with a known password."""

    def _make(username: str = "alice", **fields):
        defaults = {
            "email": f"{username}@demo.test",
            "phone": None,
            "force_password_change": False,
            "profile_completed": True,
        }
        defaults.update(fields)
        institution_id = defaults.pop("institution_id", institution.id)
        password = defaults.pop("password", TEST_PASSWORD)
        return auth_service.provision_account(institution_id, username, password, **defaults)

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def runtime():
    from tenantauth.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def http_notifier(runtime):
    recording = RecordingNotifier(ttl_minutes=runtime.settings.otp_ttl_minutes)
    runtime.auth.otp.notifier = recording
    return recording


@pytest.fixture
def http_institution(runtime):
    return runtime.store.create_institution("Demo College", "demo")


@pytest.fixture
def http_account(runtime, http_institution):
    """Provision accounts in the runtime store behind the HTTP app."""

    def _make(username: str = "alice", **fields):
        defaults = {
            "email": f"{username}@demo.test",
            "force_password_change": False,
            "profile_completed": True,
        }
        defaults.update(fields)
        password = defaults.pop("password", TEST_PASSWORD)
        return runtime.auth.provision_account(
            http_institution.id, username, password, **defaults
        )

    return _make


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from tenantauth.app import app

    return TestClient(app, base_url="http://demo.localhost")
