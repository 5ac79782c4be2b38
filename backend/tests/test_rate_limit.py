"""Tests for the rate limiting gate, route groups and middleware."""

import asyncio
import math
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from dcu_api.core.redis import RedisConnection
from dcu_api.middleware.rate_limit import (
    RateLimitGate,
    RateLimitMiddleware,
    RateLimitOutcome,
    RateLimiter,
    build_rate_limiter,
    namespace_for,
)
from dcu_api.middleware.rate_limit_cleanup import rate_limit_cleanup_loop
from dcu_api.services.rate_limit_store import (
    LocalCounterBackend,
    LocalRateLimitStore,
    RateLimitConfig,
    RateLimitStorageError,
)
from dcu_api.services.redis_rate_limit_store import RedisRateLimitStore

IP = "192.168.1.1"


def make_gate(backend, config, namespace, clock) -> RateLimitGate:
    return RateLimitGate(LocalRateLimitStore(backend, config, namespace, clock), clock)


@pytest.fixture
def backend() -> LocalCounterBackend:
    return LocalCounterBackend()


@pytest.fixture
def gate(backend, clock) -> RateLimitGate:
    return make_gate(backend, RateLimitConfig(3, 2, 60, 30), "default", clock)


class TestRateLimitGate:
    """Tests for RateLimitGate.check."""

    @pytest.mark.asyncio
    async def test_allows_first_request(self, gate, clock):
        """Test that the first request is allowed and counted."""
        decision = await gate.check(IP, False)

        assert decision.allowed
        assert decision.limit == 2
        assert decision.remaining == 1
        assert decision.headers["X-RateLimit-Limit"] == "2"
        assert decision.headers["X-RateLimit-Remaining"] == "1"
        reset = math.ceil(clock().timestamp() + 30)
        assert decision.headers["X-RateLimit-Reset"] == str(reset)

    @pytest.mark.asyncio
    async def test_blocks_when_limit_reached(self, gate, clock):
        """Test that the request after the limit is rejected with Retry-After."""
        await gate.check(IP, False)
        await gate.check(IP, False)
        clock.advance(seconds=10)

        decision = await gate.check(IP, False)

        assert decision.outcome is RateLimitOutcome.LIMIT_EXCEEDED
        assert decision.retry_after == 20
        assert decision.headers["Retry-After"] == "20"
        assert decision.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_rejected_requests_not_counted(self, gate):
        """Test that requests over quota do not grow the counter."""
        for _ in range(5):
            await gate.check(IP, False)

        record = await gate.store.get_record(IP)
        assert record.requests == 2
        assert record.violations == 0

    @pytest.mark.asyncio
    async def test_allowed_again_after_window(self, gate, clock):
        """Test that the quota is restored once the window elapses."""
        await gate.check(IP, False)
        await gate.check(IP, False)
        assert not (await gate.check(IP, False)).allowed

        clock.advance(seconds=31)

        assert (await gate.check(IP, False)).allowed

    @pytest.mark.asyncio
    async def test_authenticated_limit(self, gate):
        """Test that authenticated requests get the authenticated limit."""
        outcomes = [(await gate.check(IP, True)).allowed for _ in range(4)]

        assert outcomes == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_blacklisted(self, gate):
        """Test that a blacklisted IP gets a blacklist decision."""
        await gate.store.add_to_blacklist(IP)

        decision = await gate.check(IP, False)

        assert decision.outcome is RateLimitOutcome.BLACKLISTED
        assert decision.headers == {
            "X-RateLimit-Blocked": "true",
            "X-RateLimit-Block-Reason": "blacklisted",
        }

    @pytest.mark.asyncio
    async def test_storage_unavailable(self, clock):
        """Test that store failures produce a storage decision instead of raising."""
        store = MagicMock()
        store.config = RateLimitConfig(3, 2, 60, 30)
        store.namespace = "default"
        store.get_record = AsyncMock(side_effect=RateLimitStorageError("down"))

        decision = await RateLimitGate(store, clock).check(IP, False)

        assert decision.outcome is RateLimitOutcome.STORAGE_UNAVAILABLE
        assert decision.headers == {"X-RateLimit-Error": "true"}


class TestRateLimiter:
    """Tests for route group selection and limiter construction."""

    def test_longest_prefix_wins(self, backend, clock):
        """Test that the most specific route group is selected."""
        config = RateLimitConfig(10, 10, 60, 60)
        remember = make_gate(backend, config, "auth:remember-me", clock)
        revoke = make_gate(backend, config, "auth:remember-me:revoke", clock)
        login = make_gate(backend, config, "auth:login", clock)
        default = make_gate(backend, config, "default", clock)
        limiter = RateLimiter(
            [
                ("/auth/remember-me", remember),
                ("/auth/remember-me/revoke", revoke),
                ("/auth/login", login),
            ],
            default,
        )

        assert limiter.gate_for("/auth/remember-me") is remember
        assert limiter.gate_for("/auth/remember-me/revoke") is revoke
        assert limiter.gate_for("/auth/login") is login
        assert limiter.gate_for("/auth/login/extra") is login
        assert limiter.gate_for("/auth/loginx") is default
        assert limiter.gate_for("/") is default

    def test_namespace_for(self):
        """Test namespace derivation from route prefixes."""
        assert namespace_for("/auth/login") == "auth:login"
        assert namespace_for("/auth/remember-me/revoke-all") == "auth:remember-me:revoke-all"
        assert namespace_for("/") == "root"

    def test_build_memory_backend(self, settings):
        """Test that every route group gets its own namespace on one shared backend."""
        limiter = build_rate_limiter(settings)

        login = limiter.gate_for("/auth/login")
        refresh = limiter.gate_for("/auth/refresh")
        assert login.store.namespace == "auth:login"
        assert login.config.unauthenticated_limit == settings.rate_limit_login_limit
        assert refresh.config == RateLimitConfig(10, 10, 60, 60)
        assert limiter.gate_for("/auth/validate").config == RateLimitConfig(50, 50, 30, 30)
        assert limiter.gate_for("/auth/logout").config == RateLimitConfig(5, 5, 60, 60)
        assert login.store.backend is refresh.store.backend
        assert login.store.backend.data_dir is None
        assert limiter.default.store.namespace == "default"

    def test_build_file_backend(self, settings):
        """Test that the file backend persists under the configured directory."""
        settings = settings.model_copy(update={"rate_limit_backend": "file"})

        limiter = build_rate_limiter(settings)

        assert limiter.default.store.backend.data_dir == settings.rate_limit_data_dir

    def test_build_redis_backend(self, settings):
        """Test that the redis backend uses the shared connection."""
        settings = settings.model_copy(update={"rate_limit_backend": "redis"})
        connection = MagicMock(spec=RedisConnection)

        limiter = build_rate_limiter(settings, connection)

        store = limiter.gate_for("/auth/login").store
        assert isinstance(store, RedisRateLimitStore)
        assert store.connection is connection

    def test_build_redis_backend_requires_connection(self, settings):
        """Test that the redis backend cannot be built without a connection."""
        settings = settings.model_copy(update={"rate_limit_backend": "redis"})

        with pytest.raises(ValueError, match="requires a Redis connection"):
            build_rate_limiter(settings)

    @pytest.mark.asyncio
    async def test_cleanup_runs_every_group(self, backend, clock):
        """Test that cleanup covers every route group and the default group."""
        config = RateLimitConfig(10, 10, 60, 60)
        login = make_gate(backend, config, "auth:login", clock)
        default = make_gate(backend, config, "default", clock)
        limiter = RateLimiter([("/auth/login", login)], default)
        await login.check(IP, False)
        await default.check(IP, False)
        clock.advance(days=2)

        assert await limiter.cleanup() == 2
        assert backend.records == {}


class TestRateLimitCleanupLoop:
    """Tests for the background cleanup task."""

    @pytest.mark.asyncio
    async def test_loop_runs_until_cancelled(self):
        """Test that cleanup repeats, survives errors and stops on cancel."""
        limiter = MagicMock()
        limiter.cleanup = AsyncMock(side_effect=[RuntimeError("boom"), 3, 0, 0, 0, 0, 0, 0])

        task = asyncio.create_task(rate_limit_cleanup_loop(limiter, interval_seconds=0.001))
        await asyncio.sleep(0.05)
        task.cancel()
        await task

        assert limiter.cleanup.await_count >= 2
        assert task.done()


def make_app(rate_limiter: RateLimiter, **kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, rate_limiter=rate_limiter, **kwargs)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.post("/auth/login")
    async def login():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


@pytest.fixture
def limiter(backend, clock) -> RateLimiter:
    return RateLimiter(
        [("/auth/login", make_gate(backend, RateLimitConfig(2, 2, 60, 60), "auth:login", clock))],
        make_gate(backend, RateLimitConfig(3, 2, 60, 60), "default", clock),
    )


@pytest_asyncio.fixture
async def client(limiter):
    transport = ASGITransport(app=make_app(limiter))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestRateLimitMiddleware:
    """Tests for RateLimitMiddleware over a small application."""

    @pytest.mark.asyncio
    async def test_adds_rate_limit_headers_to_response(self, client):
        """Test that allowed responses carry the quota headers."""
        response = await client.get("/ping")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert "X-RateLimit-Reset" in response.headers

    @pytest.mark.asyncio
    async def test_returns_429_when_rate_limited(self, client):
        """Test the 429 response once the quota is used up."""
        await client.post("/auth/login")
        await client.post("/auth/login")

        response = await client.post("/auth/login")

        assert response.status_code == 429
        assert response.json() == {
            "error": "Rate limit exceeded",
            "message": "Please try again in 60 seconds",
            "type": "unauthenticated",
        }
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_route_groups_are_independent(self, client):
        """Test that exhausting one group leaves the others usable."""
        for _ in range(3):
            await client.post("/auth/login")

        response = await client.get("/ping")

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_session_cookie_selects_authenticated_limit(self, client):
        """Test that any session cookie, even a forged one, counts as authenticated."""
        headers = {"Cookie": "session=forged-value"}
        statuses = [(await client.get("/ping", headers=headers)).status_code for _ in range(4)]

        assert statuses == [200, 200, 200, 429]

    @pytest.mark.asyncio
    async def test_authenticated_429_type(self, client):
        """Test that the 429 body reports the authenticated tier."""
        headers = {"Cookie": "session=abc"}
        for _ in range(3):
            await client.get("/ping", headers=headers)

        response = await client.get("/ping", headers=headers)

        assert response.json()["type"] == "authenticated"

    @pytest.mark.asyncio
    async def test_forwarded_ips_counted_separately(self, client):
        """Test that clients behind a proxy are keyed by X-Forwarded-For."""
        for _ in range(2):
            await client.get("/ping", headers={"X-Forwarded-For": "10.1.1.1"})

        blocked = await client.get("/ping", headers={"X-Forwarded-For": "10.1.1.1"})
        other = await client.get("/ping", headers={"X-Forwarded-For": "10.2.2.2, 10.0.0.1"})

        assert blocked.status_code == 429
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_excludes_health_endpoint(self, client):
        """Test that excluded paths are never counted."""
        for _ in range(5):
            response = await client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    @pytest.mark.asyncio
    async def test_blacklisted_ip(self, client, limiter):
        """Test the 403 response for a blacklisted IP on every route group."""
        await limiter.default.store.add_to_blacklist("127.0.0.1")

        for response in (await client.get("/ping"), await client.post("/auth/login")):
            assert response.status_code == 403
            assert response.json()["type"] == "blacklisted"
            assert response.headers["X-RateLimit-Blocked"] == "true"

    @pytest.mark.asyncio
    async def test_storage_failure_returns_503(self, limiter, clock):
        """Test the 503 response when the counter store fails."""
        store = MagicMock()
        store.config = RateLimitConfig(3, 2, 60, 60)
        store.namespace = "default"
        store.get_record = AsyncMock(side_effect=RateLimitStorageError("disk full"))
        limiter.default = RateLimitGate(store, clock)
        transport = ASGITransport(app=make_app(limiter))

        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ping")

        assert response.status_code == 503
        assert response.json() == {
            "error": "Service Unavailable",
            "message": "Rate limit service unavailable",
        }
        assert response.headers["X-RateLimit-Error"] == "true"

    @pytest.mark.asyncio
    async def test_disabled_middleware_passes_through(self, limiter):
        """Test that a disabled middleware neither counts nor blocks."""
        transport = ASGITransport(app=make_app(limiter, enabled=False))

        async with AsyncClient(transport=transport, base_url="http://test") as client:
            responses = [await client.post("/auth/login") for _ in range(5)]

        assert all(r.status_code == 200 for r in responses)
        assert "X-RateLimit-Limit" not in responses[-1].headers
