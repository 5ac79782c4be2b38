"""Health check endpoint with database and rate limit backend checks."""

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from dcu_api.core import check_db_connection

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    rate_limit_backend: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the database or the Redis rate limit backend is unreachable.
    """
    settings = request.app.state.settings
    db_healthy = await check_db_connection(request.app.state.session_maker)

    redis_connection = request.app.state.redis
    if redis_connection is None:
        rate_limit_healthy = True
        rate_limit_state = settings.rate_limit_backend
    else:
        rate_limit_healthy = await redis_connection.ping()
        rate_limit_state = "connected" if rate_limit_healthy else "disconnected"

    # Set appropriate status code for container orchestration
    healthy = db_healthy and rate_limit_healthy
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        rate_limit_backend=rate_limit_state,
    )
