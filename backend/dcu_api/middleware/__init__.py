"""Middleware module for DCU API backend."""

from dcu_api.middleware.rate_limit import (
    RateLimitGate,
    RateLimitMiddleware,
    RateLimiter,
    build_rate_limiter,
)
from dcu_api.middleware.rate_limit_cleanup import rate_limit_cleanup_loop
from dcu_api.middleware.session import SessionAuthMiddleware

__all__ = [
    "RateLimitGate",
    "RateLimitMiddleware",
    "RateLimiter",
    "SessionAuthMiddleware",
    "build_rate_limiter",
    "rate_limit_cleanup_loop",
]
