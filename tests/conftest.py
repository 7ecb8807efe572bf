import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything imports the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps the claim cache in-process for deterministic tests
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portalauth.config import Settings  # noqa: E402
from portalauth.service.auth import AuthService  # noqa: E402
from portalauth.service.gate import AuthorizationGate  # noqa: E402
from portalauth.service.passwords import PasswordPolicy  # noqa: E402
from portalauth.service.roles import RoleService  # noqa: E402
from portalauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from portalauth.service.sessions import SessionIssuer  # noqa: E402
from portalauth.storage.claim_cache import MemoryClaimCache  # noqa: E402
from portalauth.storage.memory import MemoryStore  # noqa: E402
from portalauth.storage.models import Credential, Role  # noqa: E402

TEST_PASSWORD = "CorrectHorse42!"


class FakeClock:
    """Manually advanced UTC clock shared by the issuer and the claim cache."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

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


@pytest.fixture(scope="session")
def password_policy():
    return PasswordPolicy()


@pytest.fixture(scope="session")
def hashed_password(password_policy):
    """One argon2 digest of TEST_PASSWORD, reused to keep the suite fast."""
    return password_policy.hash(TEST_PASSWORD)


@pytest.fixture
def settings():
    return Settings(session_ttl_days=7, claim_ttl_seconds=300, store_timeout_seconds=5.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def claim_cache(clock):
    return MemoryClaimCache(clock=clock)


@pytest.fixture
def issuer(memory_store, claim_cache, settings, clock):
    return SessionIssuer(memory_store, claim_cache, settings, clock=clock)


@pytest.fixture
def gate(memory_store, issuer, settings):
    return AuthorizationGate(memory_store, issuer, settings)


@pytest.fixture
def role_service(memory_store, issuer, gate, settings):
    return RoleService(memory_store, issuer, gate, settings)


@pytest.fixture
def auth_service(memory_store, issuer, password_policy, settings):
    return AuthService(memory_store, issuer, password_policy, settings)


@pytest.fixture
def make_user(memory_store, hashed_password):
    """Create a user with a password credential directly in the store."""

    def _make(email: str, role: Role = Role.USER, **kwargs):
        user = memory_store.create_user(email, role=role, **kwargs)
        memory_store.replace_credential(
            Credential.new(
                user.id,
                "credential",
                password_hash=hashed_password.digest,
                password_algo=hashed_password.algo,
            )
        )
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
