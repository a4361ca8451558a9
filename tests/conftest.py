import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from datetime import timedelta
from pathlib import Path

# Environment must be prepared before any import that reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="playerdash_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
# In-process fallbacks for rate limits, leases and replay marks
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from playerdash.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from playerdash.storage.models import ActiveState, Principal, Role, utcnow  # noqa: E402

DEFAULT_PASSWORD = "Sterk#Wachtw00rd"

_CLOCKED_SERVICES = (
    "codec",
    "auth",
    "refresh_tokens",
    "revocations",
    "totp",
    "login",
    "invitations",
    "signer",
    "push",
)


class FakeClock:
    """Settable UTC clock shared by every service of a runtime."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own persisted memory store
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    # Tests may leave invalid settings in the environment
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def clock(runtime):
    fake = FakeClock()
    for name in _CLOCKED_SERVICES:
        setattr(getattr(runtime, name), "_clock", fake)
    return fake


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from playerdash import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def make_principal(runtime):
    """Create an active principal with a password credential."""

    def _make(
        email=None,
        role=Role.MEMBER,
        tenant_id="tenant-a",
        password=DEFAULT_PASSWORD,
    ):
        now = utcnow()
        if role is Role.PLATFORM_ADMIN:
            tenant_id = None
        principal = runtime.store.create_principal(
            Principal(
                id=str(uuid.uuid4()),
                email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
                role=role,
                tenant_id=tenant_id,
                state=ActiveState(activated_at=now),
                created_at=now,
            )
        )
        password_hash, algo = runtime.hasher.hash(password)
        runtime.store.save_password(principal.id, password_hash, algo)
        return principal

    return _make


@pytest.fixture
def context_for(runtime):
    """Authenticated context for a principal, via a freshly issued access token."""

    async def _context(principal):
        issued = runtime.codec.issue(runtime.store.get_principal(principal.id))
        return await runtime.auth.authenticate(issued.token)

    return _context


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
