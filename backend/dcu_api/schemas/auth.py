"""Pydantic schemas for authentication API."""

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class LoginRequest(BaseModel):
    """Request for login."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class ErrorResponse(BaseModel):
    """Failed auth operation."""

    error: str = Field(description="Machine-readable failure code")
    message: str


class UserStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_active: bool
    is_email_verified: bool
    token_status: str


class UserResponse(BaseModel):
    """Public user info."""

    model_config = ConfigDict(from_attributes=True)

    email: str
    full_name: str | None = None
    is_active: bool
    is_email_verified: bool


class SessionResponse(BaseModel):
    """Returned after login, refresh or Remember Me login.

    The tokens themselves are only sent as cookies.
    """

    message: str
    email: str
    remember_me: bool = False


class ValidateResponse(BaseModel):
    """Result of a session validation."""

    valid: bool
    message: str
    user: UserResponse | None = None
    user_status: UserStatusResponse | None = None
