import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from apigate.app import create_app  # noqa: E402
from apigate.config import Settings, reset_settings_cache  # noqa: E402
from apigate.service.auth import (  # noqa: E402
    ApiKeyRecord,
    IdentityVerificationError,
    Principal,
    hash_api_key,
)
from apigate.service.lifecycle import LifecycleController  # noqa: E402
from apigate.service.runtime import Runtime  # noqa: E402
from apigate.storage.memory import MemoryCounterStore  # noqa: E402

ALLOWED_ORIGIN = "https://app.example"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityProvider:
    """Maps bearer tokens to principals; anything else fails verification."""

    def __init__(self, tokens=None):
        self.tokens = dict(tokens or {})
        self.calls = 0
        self.healthy = True
        self.closed = False

    async def verify(self, token: str) -> Principal:
        self.calls += 1
        if token not in self.tokens:
            raise IdentityVerificationError("invalid or expired token")
        return self.tokens[token]

    async def ping(self) -> None:
        if not self.healthy:
            raise ConnectionError("identity provider unreachable")

    async def close(self) -> None:
        self.closed = True


class FakeApiKeyStore:
    """API keys held by hash, with owner profiles; records touches and closes."""

    def __init__(self, keys=None, profiles=None):
        self.keys = {hash_api_key(plain): record for plain, record in (keys or {}).items()}
        self.profiles = dict(profiles or {})
        self.lookups = []
        self.touched = []
        self.closed = False

    async def find(self, key_hash):
        self.lookups.append(key_hash)
        return self.keys.get(key_hash)

    async def profile(self, user_id):
        return self.profiles.get(user_id)

    async def touch(self, key_id):
        self.touched.append(key_id)

    async def close(self):
        self.closed = True


class FakeReporter:
    def __init__(self):
        self.captured = []
        self.flushed = 0

    def capture(self, exc, context=None):
        self.captured.append((exc, dict(context or {})))

    def flush(self, timeout):
        self.flushed += 1
        return True


USER = Principal(id="user-1", role="user", email="user@example.com")
ADMIN = Principal(id="admin-1", role="admin", email="admin@example.com")
PRO = Principal(id="pro-1", role="user", email="pro@example.com", tier="pro")
ROOT = Principal(id="root-1", role="super_admin", email="root@example.com", tier="agency")

READ_KEY = "bmn_live_readkey"
REVOKED_KEY = "bmn_live_revokedkey"


def make_settings(**overrides) -> Settings:
    values = dict(
        app_env="test",
        redis_url="redis://localhost:6379/1",
        identity_provider_url="https://id.example",
        identity_provider_key="service-key",
        cors_origins=[ALLOWED_ORIGIN],
        rate_limit_backend="memory",
        max_body_bytes=1024,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def user():
    return USER


@pytest.fixture
def admin():
    return ADMIN


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider(
        {"user-token": USER, "admin-token": ADMIN, "pro-token": PRO, "root-token": ROOT}
    )


@pytest.fixture
def api_key_store():
    return FakeApiKeyStore(
        keys={
            READ_KEY: ApiKeyRecord(id="key-1", user_id="owner-1", scopes=("brands:read",)),
            REVOKED_KEY: ApiKeyRecord(id="key-2", user_id="owner-1", scopes=("brands:read",), revoked=True),
        },
        profiles={"owner-1": {"id": "owner-1", "role": "user", "subscription_tier": "pro"}},
    )


@pytest.fixture
def reporter():
    return FakeReporter()


@pytest.fixture
def exits():
    return []


@pytest.fixture
def runtime(identity_provider, api_key_store, reporter, clock, exits):
    settings = make_settings()
    lifecycle = LifecycleController(
        drain_timeout=5.0,
        step_timeout=1.0,
        reporter=reporter,
        force_exit=exits.append,
    )
    rt = Runtime(
        settings,
        store=MemoryCounterStore(clock=clock),
        identity_provider=identity_provider,
        api_key_store=api_key_store,
        reporter=reporter,
        lifecycle=lifecycle,
        clock=clock,
    )
    return rt


@pytest.fixture
def app(runtime):
    return create_app(runtime)


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


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
