import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="prodauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "ACCESS_TOKEN_SECRET", "access-secret-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault(
    "REFRESH_TOKEN_SECRET", "refresh-secret-for-testing-only-do-not-use-in-production"
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from prodauth.config import Settings  # noqa: E402
from prodauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from prodauth.service.sessions import SessionManager  # noqa: E402
from prodauth.service.tokens import TokenCodec  # noqa: E402
from prodauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Deterministic clock that tests advance by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret",
        refresh_token_secret="unit-refresh-secret",
        access_token_ttl_minutes=30,
        refresh_token_ttl_days=14,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


@pytest.fixture
def sessions(memory_store, codec, clock):
    return SessionManager(memory_store, codec, clock=clock)


@pytest.fixture
def make_user(memory_store, sessions):
    """Create a user with a stored argon2 password."""

    def _make(login: str = "jkowalski", password: str = "Secret123!", **kwargs):
        user = memory_store.create_user(login, **kwargs)
        sessions.save_password(user.id, password)
        return user

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
