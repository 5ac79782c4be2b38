"""DCU API - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from dcu_api.api import auth_router, health_router
from dcu_api.core import (
    async_session_maker,
    build_engine,
    build_session_maker,
    engine,
    get_settings,
    init_models,
    setup_logging,
)
from dcu_api.core.config import Settings
from dcu_api.core.logging import get_logger
from dcu_api.core.redis import RedisConnection
from dcu_api.core.request_utils import get_client_ip
from dcu_api.core.timeutils import Clock, utcnow
from dcu_api.middleware import (
    RateLimitMiddleware,
    SessionAuthMiddleware,
    build_rate_limiter,
    rate_limit_cleanup_loop,
)
from dcu_api.services.auth import AuthService
from dcu_api.services.token_service import TokenService
from dcu_api.services.token_store import TokenStore
from dcu_api.services.users import SqlUserDirectory

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings

    # Configure logging
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    # Check security configuration
    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    await init_models(app.state.engine)

    tasks: list[asyncio.Task[None]] = []
    if settings.rate_limit_enabled:
        cleanup_task = asyncio.create_task(
            rate_limit_cleanup_loop(
                app.state.rate_limiter, settings.rate_limit_cleanup_interval_seconds
            ),
            name="rate-limit-cleanup",
        )
        cleanup_task.add_done_callback(task_done_callback)
        tasks.append(cleanup_task)

    yield

    logger.info("Shutting down...")

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    if app.state.redis is not None:
        await app.state.redis.close()
    await app.state.engine.dispose()


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log with traceback, return a generic 500."""
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"path": request.url.path, "client_ip": get_client_ip(request)},
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal Server Error", "message": "An unexpected error occurred"},
    )


def create_app(
    settings: Settings | None = None,
    *,
    db_engine: AsyncEngine | None = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Services are wired here and exposed on ``app.state``; nothing connects
    until the first request or the lifespan startup.
    """
    settings = settings or get_settings()

    if db_engine is not None:
        session_maker = build_session_maker(db_engine)
    elif str(settings.database_url) == str(get_settings().database_url):
        db_engine, session_maker = engine, async_session_maker
    else:
        db_engine = build_engine(str(settings.database_url))
        session_maker = build_session_maker(db_engine)

    redis_connection = (
        RedisConnection(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
        if settings.rate_limit_backend == "redis"
        else None
    )

    users = SqlUserDirectory(session_maker)
    token_service = TokenService.from_settings(settings, TokenStore(session_maker), users, clock)
    auth_service = AuthService(token_service, users, clock)
    rate_limiter = build_rate_limiter(settings, redis_connection, clock=clock)

    app = FastAPI(
        title=settings.app_name,
        description="DCU backend authentication and rate limiting",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.state.settings = settings
    app.state.engine = db_engine
    app.state.session_maker = session_maker
    app.state.redis = redis_connection
    app.state.token_service = token_service
    app.state.auth_service = auth_service
    app.state.rate_limiter = rate_limiter

    # Last added runs first: rate limiting wraps session identification
    app.add_middleware(SessionAuthMiddleware, token_service=token_service, settings=settings)
    app.add_middleware(
        RateLimitMiddleware,
        rate_limiter=rate_limiter,
        enabled=settings.rate_limit_enabled,
        exclude_paths=[
            "/health",
            "/docs",
            "/redoc",
            "/openapi.json",
        ],
    )

    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Auth at root level (/auth)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
        }

    return app


app = create_app()
