"""Pytest configuration and fixtures for backend tests.

Tests run against an in-memory SQLite database (aiosqlite) and the
in-process rate limit backend, so no PostgreSQL or Redis is needed.
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app modules
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-signing-tokens-0123456789"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_BACKEND"] = "memory"

from dcu_api.core.config import Settings  # noqa: E402
from dcu_api.core.database import build_engine, build_session_maker, init_models  # noqa: E402
from dcu_api.main import create_app  # noqa: E402
from dcu_api.services.auth import AuthService  # noqa: E402
from dcu_api.services.token_codec import TokenCodec  # noqa: E402
from dcu_api.services.token_service import TokenService  # noqa: E402
from dcu_api.services.token_store import TokenStore  # noqa: E402
from dcu_api.services.users import SqlUserDirectory  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET_KEY"]
TEST_EMAIL = "alice@example.com"
TEST_PASSWORD = "correct-horse-battery"

# ASGITransport reports this client address
TEST_CLIENT_IP = "127.0.0.1"
TEST_USER_AGENT = "dcu-tests/1.0"


class FakeClock:
    """Controllable clock shared by the codec, the services and the rate limiter."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for tests, independent of the process environment."""
    return Settings(
        jwt_secret_key=TEST_SECRET,
        database_url="sqlite+aiosqlite://",
        rate_limit_backend="memory",
        rate_limit_data_dir=tmp_path / "rate-limits",
        rate_limit_authenticated_limit=1000,
        rate_limit_unauthenticated_limit=1000,
        rate_limit_login_limit=1000,
        debug=True,
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Fresh in-memory database with all tables created."""
    engine = build_engine("sqlite+aiosqlite://")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest.fixture
def users(session_maker) -> SqlUserDirectory:
    return SqlUserDirectory(session_maker)


@pytest.fixture
def token_store(session_maker) -> TokenStore:
    return TokenStore(session_maker)


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def token_service(token_store, users, codec, clock) -> TokenService:
    return TokenService(token_store, users, codec, clock=clock)


@pytest.fixture
def auth_service(token_service, users, clock) -> AuthService:
    return AuthService(token_service, users, clock)


@pytest_asyncio.fixture
async def user(auth_service):
    """Active, verified user with a known password."""
    return await auth_service.create_user(
        TEST_EMAIL,
        TEST_PASSWORD,
        full_name="Alice Example",
        is_email_verified=True,
    )


@pytest.fixture
def app(settings, db_engine, clock):
    return create_app(settings, db_engine=db_engine, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the test application."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"User-Agent": TEST_USER_AGENT},
    ) as client:
        yield client


@pytest_asyncio.fixture
async def app_user(app):
    """Active, verified user created through the application's own services."""
    return await app.state.auth_service.create_user(
        TEST_EMAIL,
        TEST_PASSWORD,
        full_name="Alice Example",
        is_email_verified=True,
    )
