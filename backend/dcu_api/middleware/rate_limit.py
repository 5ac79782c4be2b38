"""Rate limiting middleware for API protection."""

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from dcu_api.core.config import Settings
from dcu_api.core.cookies import SESSION_COOKIE
from dcu_api.core.redis import RedisConnection
from dcu_api.core.request_utils import get_client_ip
from dcu_api.core.timeutils import Clock, utcnow
from dcu_api.services.rate_limit_store import (
    IPBlacklistedError,
    LocalCounterBackend,
    LocalRateLimitStore,
    RateLimitConfig,
    RateLimitStorageError,
    RateLimitStore,
)
from dcu_api.services.redis_rate_limit_store import RedisRateLimitStore

logger = logging.getLogger(__name__)


class RateLimitOutcome(str, Enum):
    ALLOWED = "allowed"
    LIMIT_EXCEEDED = "limit_exceeded"
    BLACKLISTED = "blacklisted"
    STORAGE_UNAVAILABLE = "storage_unavailable"


@dataclass
class RateLimitDecision:
    """Result of one rate limit check, with the headers to send back."""

    outcome: RateLimitOutcome
    is_authenticated: bool
    limit: int = 0
    remaining: int = 0
    retry_after: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.outcome is RateLimitOutcome.ALLOWED


class RateLimitGate:
    """Allow/block decision for one route group, backed by one store."""

    def __init__(self, store: RateLimitStore, clock: Clock = utcnow):
        self.store = store
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self.store.config

    async def check(self, ip: str, is_authenticated: bool) -> RateLimitDecision:
        """Check the quota for ``ip`` and count the request when it is allowed.

        A request that is over quota is not counted.
        """
        limit = self.config.limit_for(is_authenticated)
        window = timedelta(seconds=self.config.window_for(is_authenticated))

        try:
            record = await self.store.get_record(ip)
            if record is not None and record.requests >= limit:
                reset_at = record.last_reset + window
                retry_after = max(0, math.ceil((reset_at - self._clock()).total_seconds()))
                logger.warning(
                    f"Rate limit exceeded for {ip} ({self.store.namespace})",
                    extra={"client_ip": ip, "route_group": self.store.namespace},
                )
                return RateLimitDecision(
                    outcome=RateLimitOutcome.LIMIT_EXCEEDED,
                    is_authenticated=is_authenticated,
                    limit=limit,
                    remaining=0,
                    retry_after=retry_after,
                    headers={
                        "X-RateLimit-Limit": str(limit),
                        "X-RateLimit-Remaining": "0",
                        "X-RateLimit-Reset": str(math.ceil(reset_at.timestamp())),
                        "Retry-After": str(retry_after),
                    },
                )

            record = await self.store.increment_record(ip, is_authenticated)
        except IPBlacklistedError:
            logger.warning(f"Blocked request from blacklisted IP {ip}", extra={"client_ip": ip})
            return RateLimitDecision(
                outcome=RateLimitOutcome.BLACKLISTED,
                is_authenticated=is_authenticated,
                headers={
                    "X-RateLimit-Blocked": "true",
                    "X-RateLimit-Block-Reason": "blacklisted",
                },
            )
        except RateLimitStorageError as e:
            logger.error(f"Rate limit check failed for {ip}: {e}")
            return RateLimitDecision(
                outcome=RateLimitOutcome.STORAGE_UNAVAILABLE,
                is_authenticated=is_authenticated,
                headers={"X-RateLimit-Error": "true"},
            )

        remaining = max(0, limit - record.requests)
        reset_at = record.last_reset + window
        return RateLimitDecision(
            outcome=RateLimitOutcome.ALLOWED,
            is_authenticated=is_authenticated,
            limit=limit,
            remaining=remaining,
            headers={
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": str(remaining),
                "X-RateLimit-Reset": str(math.ceil(reset_at.timestamp())),
            },
        )


def namespace_for(prefix: str) -> str:
    """Counter namespace for a route prefix, e.g. ``/auth/login`` -> ``auth:login``."""
    return prefix.strip("/").replace("/", ":") or "root"


class RateLimiter:
    """Route-group gates plus a default gate for unmatched paths.

    Each group counts requests separately; the blacklist is shared.
    """

    def __init__(self, rules: list[tuple[str, RateLimitGate]], default: RateLimitGate):
        # Longest prefix wins
        self._rules = sorted(rules, key=lambda rule: len(rule[0]), reverse=True)
        self.default = default

    def gate_for(self, path: str) -> RateLimitGate:
        for prefix, gate in self._rules:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return gate
        return self.default

    @property
    def gates(self) -> list[RateLimitGate]:
        return [gate for _, gate in self._rules] + [self.default]

    async def cleanup(self) -> int:
        """Run retention cleanup on every group's store. Returns records removed."""
        removed = 0
        for gate in self.gates:
            removed += await gate.store.cleanup_old_records()
        return removed


def route_rules(settings: Settings) -> list[tuple[str, RateLimitConfig]]:
    """Per-route limits; paths not listed use the default limits."""
    login = RateLimitConfig(
        authenticated_limit=settings.rate_limit_login_limit,
        unauthenticated_limit=settings.rate_limit_login_limit,
        auth_window_seconds=settings.rate_limit_login_window_seconds,
        unauth_window_seconds=settings.rate_limit_login_window_seconds,
    )
    return [
        ("/auth/login", login),
        ("/auth/remember-me", RateLimitConfig(10, 10, 60, 60)),
        ("/auth/remember-me/revoke", RateLimitConfig(20, 20, 60, 60)),
        ("/auth/remember-me/revoke-all", RateLimitConfig(20, 20, 60, 60)),
        ("/auth/refresh", RateLimitConfig(10, 10, 60, 60)),
        ("/auth/validate", RateLimitConfig(50, 50, 30, 30)),
        ("/auth/validate-ownership", RateLimitConfig(20, 20, 60, 60)),
        ("/auth/logout", RateLimitConfig(5, 5, 60, 60)),
    ]


def default_rule(settings: Settings) -> RateLimitConfig:
    return RateLimitConfig(
        authenticated_limit=settings.rate_limit_authenticated_limit,
        unauthenticated_limit=settings.rate_limit_unauthenticated_limit,
        auth_window_seconds=settings.rate_limit_auth_window_seconds,
        unauth_window_seconds=settings.rate_limit_unauth_window_seconds,
    )


def build_rate_limiter(
    settings: Settings,
    redis_connection: RedisConnection | None = None,
    rules: list[tuple[str, RateLimitConfig]] | None = None,
    default: RateLimitConfig | None = None,
    clock: Clock = utcnow,
) -> RateLimiter:
    """Build gates for every route group on the configured backend.

    ``memory`` and ``file`` share one in-process backend across groups;
    ``redis`` shares ``redis_connection``.
    """
    rules = route_rules(settings) if rules is None else rules
    default = default or default_rule(settings)

    if settings.rate_limit_backend == "redis":
        if redis_connection is None:
            raise ValueError("Redis rate limit backend requires a Redis connection")

        def make_store(config: RateLimitConfig, namespace: str) -> RateLimitStore:
            return RedisRateLimitStore(redis_connection, config, namespace, clock)

    else:
        data_dir = settings.rate_limit_data_dir if settings.rate_limit_backend == "file" else None
        backend = LocalCounterBackend(data_dir)

        def make_store(config: RateLimitConfig, namespace: str) -> RateLimitStore:
            return LocalRateLimitStore(backend, config, namespace, clock)

    gates = [
        (prefix, RateLimitGate(make_store(config, namespace_for(prefix)), clock))
        for prefix, config in rules
    ]
    logger.info(
        f"Rate limiting on {settings.rate_limit_backend} backend with {len(gates)} route group(s)"
    )
    return RateLimiter(gates, RateLimitGate(make_store(default, "default"), clock))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware with per-route-group configuration.

    Features:
    - Per-IP counters, kept separately for each route group
    - Separate limits for requests with and without a session cookie
    - Quota headers on every rate-limited response
    - 403 for blacklisted IPs, 503 when the counter store is unavailable
    """

    def __init__(
        self,
        app: ASGIApp,
        rate_limiter: RateLimiter,
        exclude_paths: list[str] | None = None,
        enabled: bool = True,
    ) -> None:
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.exclude_paths = exclude_paths or [
            "/health",
            "/docs",
            "/redoc",
            "/openapi.json",
        ]
        self.enabled = enabled

    @staticmethod
    def _is_authenticated(request: Request) -> bool:
        # Presence only: the session is not validated here
        return bool(request.cookies.get(SESSION_COOKIE))

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process request with rate limiting."""
        # Skip if disabled
        if not self.enabled:
            return await call_next(request)

        # Skip rate limiting for excluded paths
        path = request.url.path
        if any(path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        client_ip = get_client_ip(request)
        is_authenticated = self._is_authenticated(request)
        decision = await self.rate_limiter.gate_for(path).check(client_ip, is_authenticated)

        if decision.outcome is RateLimitOutcome.LIMIT_EXCEEDED:
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "Rate limit exceeded",
                    "message": f"Please try again in {decision.retry_after} seconds",
                    "type": "authenticated" if is_authenticated else "unauthenticated",
                },
                headers=decision.headers,
            )

        if decision.outcome is RateLimitOutcome.BLACKLISTED:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={
                    "error": "Access Denied",
                    "message": "Your IP has been blacklisted due to excessive violations",
                    "type": "blacklisted",
                },
                headers=decision.headers,
            )

        if decision.outcome is RateLimitOutcome.STORAGE_UNAVAILABLE:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "error": "Service Unavailable",
                    "message": "Rate limit service unavailable",
                },
                headers=decision.headers,
            )

        # Process request
        response = await call_next(request)

        # Add rate limit headers to response
        for key, value in decision.headers.items():
            response.headers[key] = value

        return response
