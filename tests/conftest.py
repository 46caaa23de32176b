import asyncio
import inspect
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("AUTHCORE_ENV", "test")
os.environ.setdefault("AUTHCORE_STORE", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "AUTHCORE_CLIENTS",
    json.dumps(
        {
            "app1": {
                "redirect_uris": ["https://app.test/cb", "http://localhost:8080/cb"],
                "scopes": ["read", "write"],
            }
        }
    ),
)
os.environ.setdefault("TRUST_SUBJECT_HEADER", "true")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.authorization import AuthorizationFlowCoordinator  # noqa: E402
from authcore.service.lockout import LockoutGuard  # noqa: E402
from authcore.service.login import PasswordLoginService  # noqa: E402
from authcore.service.primitives import SecretPrimitives  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.tokens import TokenLifecycleManager  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Injectable ``now`` callable that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Test settings with one registered client and plain PKCE enabled."""
    return Settings(
        environment="test",
        jwt_secret=TEST_JWT_SECRET,
        allow_plain_pkce=True,
        clients={
            "app1": {
                "redirect_uris": ["https://app.test/cb"],
                "scopes": ["read", "write"],
            },
            "app2": {"redirect_uris": ["https://other.test/cb"]},
        },
        sweep_interval_seconds=0,
    )


@pytest.fixture
def primitives():
    # cheap argon2 parameters; the algorithm is unchanged
    return SecretPrimitives(
        password_hasher=PasswordHasher(
            time_cost=1, memory_cost=8, parallelism=1, type=Type.ID
        )
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def tokens(memory_store, settings, primitives, clock):
    return TokenLifecycleManager(memory_store, settings, primitives=primitives, now=clock)


@pytest.fixture
def coordinator(memory_store, settings, tokens, clock):
    return AuthorizationFlowCoordinator(memory_store, settings, tokens, now=clock)


@pytest.fixture
def guard(memory_store, settings, clock):
    return LockoutGuard(memory_store, settings, now=clock)


@pytest.fixture
def login_service(memory_store, settings, guard, tokens):
    return PasswordLoginService(memory_store, settings, guard, tokens)


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
    config.addinivalue_line("markers", "redis: runs against Redis, or fakeredis when no server answers")
