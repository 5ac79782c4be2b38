"""DCU API routers."""

from dcu_api.api.auth import router as auth_router
from dcu_api.api.health import router as health_router

__all__ = [
    "auth_router",
    "health_router",
]
