"""Authentication API endpoints.

Tokens travel only in cookies: ``session`` (access token), ``refresh_token``,
``remember_me_token``, plus the non-secret ``email`` display cookie.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from dcu_api.api.deps import get_app_settings, get_auth_service, get_current_user
from dcu_api.core.config import Settings
from dcu_api.core.cookies import (
    EMAIL_COOKIE,
    REFRESH_COOKIE,
    REMEMBER_ME_COOKIE,
    SESSION_COOKIE,
    clear_auth_cookies,
    set_auth_cookie,
    set_email_cookie,
    set_session_cookie,
)
from dcu_api.core.request_utils import get_client_ip, get_user_agent
from dcu_api.core.result import Err, Ok
from dcu_api.models.user import User
from dcu_api.schemas.auth import (
    ErrorResponse,
    LoginRequest,
    MessageResponse,
    SessionResponse,
    UserResponse,
    UserStatusResponse,
    ValidateResponse,
)
from dcu_api.services.auth import AuthService
from dcu_api.services.token_service import TokenErrorCode, TokenFailure, TokenSet

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _error(
    failure: TokenFailure,
    status_code: int,
    settings: Settings | None = None,
    clear_cookies: bool = False,
) -> JSONResponse:
    """JSON failure body; storage failures always map to 503."""
    if failure.code is TokenErrorCode.STORAGE_UNAVAILABLE:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    content: dict[str, Any] = {"error": failure.code.value, "message": failure.message}
    if failure.user_status is not None:
        content["user_status"] = UserStatusResponse(
            is_active=failure.user_status.is_active,
            is_email_verified=failure.user_status.is_email_verified,
            token_status=failure.user_status.token_status.value,
        ).model_dump()
    response = JSONResponse(status_code=status_code, content=content)
    if clear_cookies and settings is not None:
        clear_auth_cookies(response, settings)
    return response


def _missing(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": TokenErrorCode.REQUIRED.value, "message": message},
    )


def _set_token_cookies(response: Response, tokens: TokenSet, settings: Settings) -> None:
    set_session_cookie(response, tokens.access_token, settings)
    set_auth_cookie(response, REFRESH_COOKIE, tokens.refresh_token, settings)
    if tokens.remember_me_token:
        set_auth_cookie(response, REMEMBER_ME_COOKIE, tokens.remember_me_token, settings)
    if tokens.email:
        set_email_cookie(response, tokens.email, settings)


@router.post("/login", response_model=SessionResponse, responses=_ERROR_RESPONSES)
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse | JSONResponse:
    """Authenticate with email and password and set the session cookies."""
    result = await auth.login(
        data.email,
        data.password,
        get_client_ip(request),
        get_user_agent(request),
        remember_me=data.remember_me,
    )
    match result:
        case Ok(tokens):
            _set_token_cookies(response, tokens, settings)
            return SessionResponse(
                message="Login successful",
                email=data.email,
                remember_me=tokens.remember_me_token is not None,
            )
        case Err(failure):
            return _error(failure, status.HTTP_401_UNAUTHORIZED)


@router.post("/refresh", response_model=SessionResponse, responses=_ERROR_RESPONSES)
async def refresh(
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse | JSONResponse:
    """Exchange the ``refresh_token`` cookie for a new token set."""
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        return _missing("Missing refresh token in cookies")

    result = await auth.refresh(refresh_token, get_client_ip(request), get_user_agent(request))
    match result:
        case Ok(tokens):
            _set_token_cookies(response, tokens, settings)
            return SessionResponse(
                message="Token refresh successful",
                email=tokens.email or "",
                remember_me=tokens.remember_me_token is not None,
            )
        case Err(failure):
            return _error(failure, status.HTTP_401_UNAUTHORIZED, settings, clear_cookies=True)


@router.post("/remember-me", response_model=SessionResponse, responses=_ERROR_RESPONSES)
async def remember_me_login(
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse | JSONResponse:
    """Log in with the ``remember_me_token`` cookie; the token is rotated."""
    remember_me_token = request.cookies.get(REMEMBER_ME_COOKIE)
    if not remember_me_token:
        return _missing("Missing remember me token in cookies")

    result = await auth.login_with_remember_me(
        remember_me_token, get_client_ip(request), get_user_agent(request)
    )
    match result:
        case Ok(tokens):
            _set_token_cookies(response, tokens, settings)
            return SessionResponse(
                message="Remember Me login successful",
                email=tokens.email or "",
                remember_me=True,
            )
        case Err(failure):
            return _error(failure, status.HTTP_401_UNAUTHORIZED, settings, clear_cookies=True)


@router.post("/logout", response_model=MessageResponse, responses=_ERROR_RESPONSES)
async def logout(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Revoke the tokens held in cookies and clear them.

    Cookies are cleared even when revocation fails.
    """
    access_token = request.cookies.get(SESSION_COOKIE)
    if not access_token:
        return _missing("Missing access token in cookies")

    result = await auth.logout(
        access_token,
        request.cookies.get(REFRESH_COOKIE),
        request.cookies.get(REMEMBER_ME_COOKIE),
    )
    match result:
        case Ok(message):
            response = JSONResponse(content=MessageResponse(message=message).model_dump())
            clear_auth_cookies(response, settings)
            return response
        case Err(failure):
            return _error(failure, status.HTTP_400_BAD_REQUEST, settings, clear_cookies=True)


@router.post("/remember-me/revoke", response_model=MessageResponse, responses=_ERROR_RESPONSES)
async def revoke_remember_me(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Revoke the Remember Me token held in cookies."""
    remember_me_token = request.cookies.get(REMEMBER_ME_COOKIE)
    if not remember_me_token:
        return _missing("Missing remember me token in cookies")

    result = await auth.revoke_remember_me_token(remember_me_token)
    match result:
        case Ok(message):
            response = JSONResponse(content=MessageResponse(message=message).model_dump())
            response.delete_cookie(REMEMBER_ME_COOKIE, path="/", secure=settings.cookie_secure)
            return response
        case Err(failure):
            return _error(failure, status.HTTP_400_BAD_REQUEST)


@router.post("/remember-me/revoke-all", response_model=MessageResponse, responses=_ERROR_RESPONSES)
async def revoke_all_remember_me(
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Revoke every Remember Me token of the signed-in user."""
    result = await auth.revoke_all_remember_me_tokens(user.id)
    match result:
        case Ok(message):
            response = JSONResponse(content=MessageResponse(message=message).model_dump())
            response.delete_cookie(REMEMBER_ME_COOKIE, path="/", secure=settings.cookie_secure)
            return response
        case Err(failure):
            return _error(failure, status.HTTP_400_BAD_REQUEST)


@router.get("/validate", response_model=ValidateResponse, responses=_ERROR_RESPONSES)
async def validate(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> ValidateResponse | JSONResponse:
    """Validate the session cookie for the user named by the ``email`` cookie.

    On failure the auth cookies are cleared.
    """
    email = request.cookies.get(EMAIL_COOKIE)
    if not email:
        return _missing("Missing email")
    access_token = request.cookies.get(SESSION_COOKIE)
    if not access_token:
        return _missing("Missing access token")

    result = await auth.validate_access_token(
        access_token, email, get_client_ip(request), get_user_agent(request)
    )
    match result:
        case Ok(validation):
            return ValidateResponse(
                valid=True,
                message=validation.message,
                user=UserResponse.model_validate(validation.user),
                user_status=UserStatusResponse(
                    is_active=validation.user_status.is_active,
                    is_email_verified=validation.user_status.is_email_verified,
                    token_status=validation.user_status.token_status.value,
                ),
            )
        case Err(failure):
            logger.info(f"Session validation failed: {failure.code.value}")
            return _error(failure, status.HTTP_400_BAD_REQUEST, settings, clear_cookies=True)


@router.get("/validate-ownership", responses=_ERROR_RESPONSES)
async def validate_ownership(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Check that the session cookie belongs to the user named by the ``email`` cookie."""
    email = request.cookies.get(EMAIL_COOKIE)
    if not email:
        return _missing("Email not found")
    access_token = request.cookies.get(SESSION_COOKIE)
    if not access_token:
        return _missing("Missing access token")

    if await auth.validate_token_ownership(access_token, email):
        return JSONResponse(
            content={"message": "Token ownership validated successfully.", "is_valid": True}
        )
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"message": "Token ownership validation failed.", "is_valid": False},
    )
