import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Environment must be in place before any import that builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ENCRYPTION_SECRET", "test-encryption-secret-for-testing-only")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
# The runtime reads users from the store only; cache tests inject fakeredis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

from constructor_auth.config import Settings  # noqa: E402
from constructor_auth.service.audit import AuditLogService  # noqa: E402
from constructor_auth.service.auth import AuthService  # noqa: E402
from constructor_auth.service.codes import CodeService  # noqa: E402
from constructor_auth.service.crypto import CryptoService  # noqa: E402
from constructor_auth.service.email import EmailService  # noqa: E402
from constructor_auth.service.notifications import NotificationDispatcher  # noqa: E402
from constructor_auth.service.oauth import (  # noqa: E402
    GoogleStrategy,
    OAuthService,
    OAuthStrategyRegistry,
)
from constructor_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from constructor_auth.service.tokens import TokenService  # noqa: E402
from constructor_auth.storage.memory import MemoryStore  # noqa: E402
from constructor_auth.storage.users import UserRepository  # noqa: E402

GOOGLE_CLIENT_ID = "test-client-id.apps.googleusercontent.com"


class FakeClock:
    """Settable UTC clock handed to services in place of datetime.now."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        jwt_secret="unit-test-jwt-secret",
        encryption_secret="unit-test-encryption-secret",
        google_client_id=GOOGLE_CLIENT_ID,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_stack(settings, store):
    """Factory wiring the full service graph over the memory store.

    Pass ``cache`` to put a RedisCache in front of user lookups and ``clock``
    to drive code and token expiry.
    """

    def _build(cache=None, clock=None):
        users = UserRepository(store, cache)
        crypto = CryptoService(settings)
        codes = CodeService(store, settings, clock=clock)
        tokens = TokenService(store, users, settings, clock=clock)
        audit = AuditLogService(store)
        email = EmailService.from_settings(settings)
        notifications = NotificationDispatcher(email)
        google = GoogleStrategy(
            users,
            tokens,
            audit,
            notifications,
            crypto=crypto,
            settings=settings,
        )
        registry = OAuthStrategyRegistry([google])
        oauth = OAuthService(registry)
        auth = AuthService(
            store=store,
            users=users,
            crypto=crypto,
            codes=codes,
            tokens=tokens,
            audit=audit,
            notifications=notifications,
            oauth=oauth,
        )
        return SimpleNamespace(
            store=store,
            users=users,
            crypto=crypto,
            codes=codes,
            tokens=tokens,
            audit=audit,
            email=email,
            notifications=notifications,
            google=google,
            registry=registry,
            oauth=oauth,
            auth=auth,
            settings=settings,
        )

    return _build


@pytest.fixture
def latest_code(store):
    """Newest one-time code the store holds for a username, as the email would carry it."""

    def _read(username: str) -> str:
        records = [c for c in store.codes.values() if c.username == username]
        return max(records, key=lambda c: c.id).code

    return _read


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
