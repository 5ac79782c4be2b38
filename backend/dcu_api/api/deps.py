"""Request dependencies resolving the services built by ``create_app``."""

from fastapi import HTTPException, Request, status

from dcu_api.core.config import Settings
from dcu_api.models.user import User
from dcu_api.services.auth import AuthService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_current_user(request: Request) -> User:
    """The session's user as resolved by ``SessionAuthMiddleware``; 401 for guests."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user
