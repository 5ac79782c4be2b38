"""Auth cookie names and helpers for setting and clearing them."""

from starlette.responses import Response

from dcu_api.core.config import Settings

SESSION_COOKIE = "session"
REFRESH_COOKIE = "refresh_token"
REMEMBER_ME_COOKIE = "remember_me_token"
EMAIL_COOKIE = "email"

GUEST_EMAIL = "guest"

AUTH_COOKIES = (SESSION_COOKIE, REFRESH_COOKIE, REMEMBER_ME_COOKIE)


def set_session_cookie(response: Response, access_token: str, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        access_token,
        max_age=settings.session_cookie_max_age_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def set_auth_cookie(response: Response, name: str, value: str, settings: Settings) -> None:
    """Set a long-lived credential cookie (refresh or remember-me token)."""
    response.set_cookie(
        name,
        value,
        max_age=settings.auth_cookie_max_age_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def set_email_cookie(response: Response, email: str, settings: Settings) -> None:
    """Display cookie; readable by the frontend."""
    response.set_cookie(
        EMAIL_COOKIE,
        email,
        max_age=settings.session_cookie_max_age_seconds,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    """Delete the credential cookies and mark the client as guest."""
    for name in AUTH_COOKIES:
        response.delete_cookie(name, path="/", secure=settings.cookie_secure, httponly=True)
    set_email_cookie(response, GUEST_EMAIL, settings)


def sets_cookie(response: Response, name: str) -> bool:
    """True when ``response`` already carries a Set-Cookie for ``name``."""
    prefix = f"{name}="
    return any(value.startswith(prefix) for value in response.headers.getlist("set-cookie"))
