"""Password login and the session operations built on top of it."""

import dataclasses
import logging
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy.exc import SQLAlchemyError

from dcu_api.core.result import Err
from dcu_api.core.timeutils import Clock, utcnow
from dcu_api.models.user import User
from dcu_api.services.token_service import (
    AccessValidation,
    TokenErrorCode,
    TokenFailure,
    TokenResult,
    TokenService,
    TokenSet,
)
from dcu_api.services.users import SqlUserDirectory

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

INVALID_CREDENTIALS = "Invalid credentials."


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except (VerifyMismatchError, InvalidHashError):
        return False


class AuthService:
    """Service for authentication operations."""

    def __init__(self, tokens: TokenService, users: SqlUserDirectory, clock: Clock = utcnow):
        self.tokens = tokens
        self.users = users
        self._clock = clock

    async def create_user(
        self,
        email: str,
        password: str,
        *,
        full_name: str | None = None,
        is_active: bool = True,
        is_email_verified: bool = False,
    ) -> User:
        """Create a user with a hashed password."""
        return await self.users.create_user(
            email,
            hash_password(password),
            full_name=full_name,
            is_active=is_active,
            is_email_verified=is_email_verified,
        )

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None,
        user_agent: str | None,
        remember_me: bool = False,
    ) -> TokenResult[TokenSet]:
        """Authenticate with email and password and issue a token set.

        Unknown email and wrong password return the same failure so callers
        cannot enumerate accounts.
        """
        logger.info(f"Login attempt from {ip_address}")
        try:
            user = await self.users.find_user_by_email(email)
        except SQLAlchemyError:
            logger.exception("User lookup failed during login")
            return Err(
                TokenFailure(TokenErrorCode.STORAGE_UNAVAILABLE, "Token storage is unavailable.")
            )

        if user is None:
            # Perform a dummy hash to prevent timing attacks
            verify_password(password, hash_password("dummy"))
            logger.warning(
                f"Login failed from {ip_address}: unknown account",
                extra={"client_ip": ip_address},
            )
            return Err(TokenFailure(TokenErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS))

        if not verify_password(password, user.password_hash):
            logger.warning(
                f"Login failed for user {user.id}: invalid password",
                extra={"client_ip": ip_address, "user_id": str(user.id)},
            )
            return Err(TokenFailure(TokenErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS))

        if not user.is_active or not user.is_email_verified:
            logger.warning(
                f"Login failed for user {user.id}. Account status - "
                f"verified: {user.is_email_verified}, active: {user.is_active}"
            )
            return Err(
                TokenFailure(TokenErrorCode.ACCOUNT_INACTIVE, "Account is inactive or unverified.")
            )

        issued = await self.tokens.issue(user.id, ip_address, user_agent, remember_me=remember_me)
        issued = issued.map(lambda tokens: dataclasses.replace(tokens, email=user.email))
        if issued.is_ok():
            try:
                await self.users.record_login(user.id, self._clock())
            except SQLAlchemyError:
                logger.exception(f"Could not record last login for user {user.id}")
            logger.info(f"Login successful for user {user.id}")
        return issued

    async def login_with_remember_me(
        self, remember_me_token: str | None, ip_address: str | None, user_agent: str | None
    ) -> TokenResult[TokenSet]:
        logger.info(f"Remember Me login attempt from {ip_address}")
        return await self.tokens.rotate_remember_me(remember_me_token, ip_address, user_agent)

    async def refresh(
        self, refresh_token: str | None, ip_address: str | None, user_agent: str | None
    ) -> TokenResult[TokenSet]:
        logger.info(f"Refreshing tokens for {ip_address}")
        return await self.tokens.rotate_refresh(refresh_token, ip_address, user_agent)

    async def logout(
        self,
        access_token: str | None,
        refresh_token: str | None = None,
        remember_me_token: str | None = None,
    ) -> TokenResult[str]:
        """Revoke the caller's token records."""
        revoked = await self.tokens.revoke_user_tokens(
            access_token, refresh_token, remember_me_token
        )
        return revoked.map(lambda _count: "Logout successful.")

    async def revoke_remember_me_token(self, remember_me_token: str | None) -> TokenResult[str]:
        return await self.tokens.revoke_remember_me_token(remember_me_token)

    async def revoke_all_remember_me_tokens(self, user_id: UUID) -> TokenResult[str]:
        revoked = await self.tokens.revoke_all_remember_me_tokens(user_id)
        return revoked.map(lambda count: f"Revoked {count} Remember Me token(s).")

    async def validate_access_token(
        self,
        token: str | None,
        email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenResult[AccessValidation]:
        return await self.tokens.validate_access(token, email, ip_address, user_agent)

    async def validate_token_ownership(self, token: str, email: str) -> bool:
        return await self.tokens.validate_token_ownership(token, email)

