import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SESSIONGUARD_SECRETS_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("REDIS_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionguard.config import Settings, reset_settings_cache  # noqa: E402
from sessionguard.service.activity import ActivityAnalyzer  # noqa: E402
from sessionguard.service.alerts import AlertNotifier  # noqa: E402
from sessionguard.service.lifecycle import TokenLifecycleService  # noqa: E402
from sessionguard.service.revocation import RevocationStore  # noqa: E402
from sessionguard.service.throttle import LoginThrottle  # noqa: E402
from sessionguard.service.tokens import TokenCodec  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "test-access-secret-for-automation-only-0123456789"
REFRESH_SECRET = "test-refresh-secret-for-automation-only-9876543210"


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeCache:
    """In-memory stand-in for RedisCache with switchable failures."""

    def __init__(self):
        self.entries: dict[str, int] = {}
        self.fail = False
        self.hang = False
        self.delay = 0.0
        self.closed = False
        self.calls: list[str] = []

    async def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        # Yield like a real network call would
        await asyncio.sleep(self.delay)
        if self.hang:
            await asyncio.sleep(10)
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def ping(self) -> bool:
        await self._maybe_fail("ping")
        return True

    async def mark_revoked(self, token_key: str, ttl_seconds: int) -> None:
        await self._maybe_fail("mark_revoked")
        self.entries[token_key] = ttl_seconds

    async def is_revoked(self, token_key: str) -> bool:
        await self._maybe_fail("is_revoked")
        return token_key in self.entries

    async def close(self) -> None:
        self.closed = True


class RecordingDispatcher:
    def __init__(self):
        self.alerts = []

    async def dispatch(self, alert) -> None:
        self.alerts.append(alert)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secrets_dir=str(tmp_path),
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        test_mode=True,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fast_hasher():
    """Cheap argon2id parameters; production defaults are deliberately slow."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def memory_store(fast_hasher):
    return MemoryStore(password_hasher=fast_hasher)


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher):
    return AlertNotifier(dispatcher)


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


@pytest.fixture
def revocations(clock):
    return RevocationStore(None, clock=clock)


@pytest.fixture
def auth_service(settings, memory_store, revocations, clock, notifier):
    throttle = LoginThrottle(clock=clock, notifier=notifier)
    analyzer = ActivityAnalyzer(clock=clock, notifier=notifier)
    return TokenLifecycleService(
        settings,
        memory_store,
        revocations,
        throttle=throttle,
        analyzer=analyzer,
        clock=clock,
    )


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
