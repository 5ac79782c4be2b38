"""Session cookie identification.

Resolves the ``session`` cookie to a user for every request and stores it on
``request.state.user``. Identification never blocks a request: any failure
leaves the request anonymous (guest).
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from dcu_api.core.config import Settings
from dcu_api.core.cookies import (
    EMAIL_COOKIE,
    GUEST_EMAIL,
    SESSION_COOKIE,
    set_email_cookie,
    sets_cookie,
)
from dcu_api.core.request_utils import get_client_ip, get_user_agent
from dcu_api.core.result import Err, Ok
from dcu_api.services.token_service import TokenService

logger = logging.getLogger(__name__)

# Shortest string worth handing to the token codec
MIN_TOKEN_LENGTH = 10


def looks_like_token(value: str | None) -> bool:
    return bool(value) and len(value) >= MIN_TOKEN_LENGTH and "." in value


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Attach the session's user (or ``None``) to ``request.state.user``.

    The token is validated against the request's IP address and user agent.
    The ``email`` display cookie is kept in sync with the outcome unless the
    route itself already set it.
    """

    def __init__(self, app: ASGIApp, token_service: TokenService, settings: Settings) -> None:
        super().__init__(app)
        self.token_service = token_service
        self.settings = settings

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.user = None
        token = request.cookies.get(SESSION_COOKIE)

        if looks_like_token(token):
            try:
                result = await self.token_service.validate_access(
                    token,
                    ip_address=get_client_ip(request),
                    user_agent=get_user_agent(request),
                )
            except Exception:
                logger.exception("Session validation failed; continuing as guest")
            else:
                match result:
                    case Ok(validation):
                        request.state.user = validation.user
                    case Err(failure):
                        logger.debug(f"Session rejected ({failure.code.value}); continuing as guest")

        response = await call_next(request)

        email = request.state.user.email if request.state.user is not None else GUEST_EMAIL
        if request.cookies.get(EMAIL_COOKIE) != email and not sets_cookie(response, EMAIL_COOKIE):
            set_email_cookie(response, email, self.settings)
        return response
