"""Token lifecycle: issuance, validation, rotation and revocation.

``TokenService`` holds no state of its own. It signs tokens with the
``TokenCodec``, persists token sets through the ``TokenStore`` and reads
accounts from a ``UserDirectory``. Every public operation returns an
``Ok``/``Err`` result; expected failures never raise.

A token set moves ISSUED -> ACTIVE -> REVOKED (logout, refresh, remember-me
rotation) or expires. Expiry is detected lazily when a token is validated.
"""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, ParamSpec, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from dcu_api.core.config import Settings
from dcu_api.core.result import Err, Ok, Result
from dcu_api.core.timeutils import Clock, as_utc, utcnow
from dcu_api.models.token_record import TokenRecord
from dcu_api.models.user import User
from dcu_api.services.token_codec import (
    MalformedTokenError,
    TokenCodec,
    TokenExpiredError,
    TokenPayload,
    TokenType,
)
from dcu_api.services.token_store import StaleTokenRecordError, TokenStore
from dcu_api.services.users import UserDirectory

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class TokenErrorCode(str, Enum):
    """Why a token operation failed."""

    REQUIRED = "required"
    INVALID_STRUCTURE = "invalid_structure"
    EXPIRED = "expired"
    MAX_AGE_EXCEEDED = "max_age_exceeded"
    USER_NOT_FOUND = "user_not_found"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    ACCOUNT_INACTIVE = "account_inactive"
    REVOKED = "revoked"
    IP_MISMATCH = "ip_mismatch"
    DEVICE_MISMATCH = "device_mismatch"
    REMEMBER_ME_EXPIRED = "remember_me_expired"
    NO_TOKENS_FOUND = "no_tokens_found"
    NOT_FOUND_OR_REVOKED = "not_found_or_revoked"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INVALID_CREDENTIALS = "invalid_credentials"


class TokenStatus(str, Enum):
    VALID = "valid"
    REVOKED = "revoked"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True)
class UserStatus:
    """Best-known account state, reported alongside validation outcomes."""

    is_active: bool
    is_email_verified: bool
    token_status: TokenStatus

    @classmethod
    def of(cls, user: User, token_status: TokenStatus) -> "UserStatus":
        return cls(
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            token_status=token_status,
        )


@dataclass(frozen=True)
class TokenFailure:
    """Typed failure returned inside ``Err``."""

    code: TokenErrorCode
    message: str
    user_status: UserStatus | None = None


@dataclass(frozen=True)
class AccessValidation:
    """Successful access token validation."""

    user: User
    user_status: UserStatus
    message: str = "Token valid."


@dataclass(frozen=True)
class SessionValidation:
    """Successful refresh / remember-me validation: the live record and its owner."""

    record: TokenRecord
    user: User


@dataclass(frozen=True)
class TokenSet:
    """Tokens handed back to the client after login, refresh or rotation."""

    access_token: str
    refresh_token: str
    remember_me_token: str | None = None
    record_id: UUID | None = None
    email: str | None = None


TokenResult = Result[T, TokenFailure]


def _fail(
    code: TokenErrorCode, message: str, user_status: UserStatus | None = None
) -> Err[TokenFailure]:
    return Err(TokenFailure(code=code, message=message, user_status=user_status))


def _recover_storage_errors(
    func: Callable[P, Awaitable[Result[Any, TokenFailure]]],
) -> Callable[P, Awaitable[Result[Any, TokenFailure]]]:
    """Turn database failures into ``Err(STORAGE_UNAVAILABLE)``."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[Any, TokenFailure]:
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError:
            logger.exception(f"Token store failure during {func.__name__}")
            return _fail(TokenErrorCode.STORAGE_UNAVAILABLE, "Token storage is unavailable.")

    return wrapper


class TokenService:
    """Orchestrates the codec, token store and user directory."""

    def __init__(
        self,
        store: TokenStore,
        users: UserDirectory,
        codec: TokenCodec,
        *,
        access_ttl: timedelta = timedelta(minutes=45),
        refresh_ttl: timedelta = timedelta(days=7),
        remember_me_ttl: timedelta = timedelta(days=14),
        max_token_age: timedelta = timedelta(days=30),
        allow_ip_change: bool = False,
        allow_user_agent_change: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.users = users
        self.codec = codec
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.remember_me_ttl = remember_me_ttl
        self.max_token_age = max_token_age
        self.allow_ip_change = allow_ip_change
        self.allow_user_agent_change = allow_user_agent_change
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: TokenStore,
        users: UserDirectory,
        clock: Clock = utcnow,
    ) -> "TokenService":
        codec = TokenCodec(settings.jwt_secret_key, settings.jwt_algorithm, clock=clock)
        return cls(
            store,
            users,
            codec,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
            remember_me_ttl=timedelta(days=settings.remember_me_expire_days),
            max_token_age=timedelta(days=settings.max_token_age_days),
            allow_ip_change=settings.allow_ip_change,
            allow_user_agent_change=settings.allow_user_agent_change,
            clock=clock,
        )

    # --- Issuance ---

    def build_record(
        self,
        user_id: UUID,
        ip_address: str | None,
        user_agent: str | None,
        remember_me: bool = False,
        token_version: int = 1,
    ) -> TokenRecord:
        """Sign a fresh token set and wrap it in an unsaved ``TokenRecord``."""
        record = TokenRecord(
            user_id=user_id,
            access_token=self.codec.sign(user_id, TokenType.ACCESS, self.access_ttl),
            refresh_token=self.codec.sign(user_id, TokenType.REFRESH, self.refresh_ttl),
            ip_address=ip_address,
            user_agent=user_agent,
            revoked=False,
            is_remember_me_token=False,
        )
        if remember_me:
            record.remember_me_token = self.codec.sign(
                user_id, TokenType.REMEMBER_ME, self.remember_me_ttl
            )
            record.is_remember_me_token = True
            # Wall-clock expiry checked in addition to the token's own exp claim
            record.remember_me_expires_at = self._clock() + self.remember_me_ttl
            record.token_version = token_version

        logger.info(
            f"Token record built for user {user_id} "
            f"(ip={ip_address}, remember_me={remember_me}, version={token_version})"
        )
        return record

    @_recover_storage_errors
    async def issue(
        self,
        user_id: UUID,
        ip_address: str | None,
        user_agent: str | None,
        remember_me: bool = False,
        token_version: int = 1,
    ) -> TokenResult[TokenSet]:
        """Issue and persist a new token set for ``user_id``."""
        record = self.build_record(user_id, ip_address, user_agent, remember_me, token_version)
        await self.store.add(record)
        return Ok(self._token_set(record))

    # --- Validation ---

    def _decode(self, token: str, expected_type: TokenType | None) -> TokenResult[TokenPayload]:
        """Verify signature/type and map codec errors to failures."""
        try:
            payload = self.codec.verify(token, expected_type)
        except TokenExpiredError as e:
            logger.warning(f"Expired {expected_type.value if expected_type else ''} token presented")
            return _fail(TokenErrorCode.EXPIRED, str(e))
        except MalformedTokenError as e:
            logger.warning(f"Rejected token: {e}")
            return _fail(TokenErrorCode.INVALID_STRUCTURE, str(e))

        try:
            UUID(payload.subject_id)
        except ValueError:
            logger.warning("Rejected token: subject is not a user id")
            return _fail(TokenErrorCode.INVALID_STRUCTURE, "Invalid token structure.")
        return Ok(payload)

    def _check_age(self, payload: TokenPayload) -> TokenResult[TokenPayload]:
        """Reject tokens issued longer ago than the maximum age, whatever their exp."""
        if self._clock() - payload.issued_at > self.max_token_age:
            logger.warning(f"Token for user {payload.subject_id} exceeded maximum age")
            return _fail(
                TokenErrorCode.MAX_AGE_EXCEEDED,
                f"Token has exceeded maximum age of {self.max_token_age.days} days.",
                UserStatus(is_active=False, is_email_verified=False, token_status=TokenStatus.EXPIRED),
            )
        return Ok(payload)

    def _decode_checked(self, token: str, expected_type: TokenType) -> TokenResult[TokenPayload]:
        decoded = self._decode(token, expected_type)
        if decoded.is_err():
            return decoded
        return self._check_age(decoded.unwrap())

    @_recover_storage_errors
    async def validate_access(
        self,
        token: str | None,
        email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenResult[AccessValidation]:
        """Validate an access token, short-circuiting on the first failed check.

        Checks run cheapest first: presence, signature/type/expiry, age,
        then the user and token record lookups (fetched concurrently),
        ownership, account state, revocation, IP pinning, device pinning.
        """
        if not token:
            logger.warning("No token provided")
            return _fail(TokenErrorCode.REQUIRED, "Token is required.")

        decoded = self._decode_checked(token, TokenType.ACCESS)
        if decoded.is_err():
            return decoded
        payload = decoded.unwrap()
        user_id = UUID(payload.subject_id)

        user, record = await asyncio.gather(
            self.users.find_user_by_id(user_id),
            self.store.find_active_by_access_token(user_id, token),
        )

        if user is None:
            logger.warning(f"User {user_id} not found for access token")
            return _fail(
                TokenErrorCode.USER_NOT_FOUND,
                "User not found.",
                UserStatus(is_active=False, is_email_verified=False, token_status=TokenStatus.VALID),
            )

        if email and user.email != email:
            logger.warning(f"Token ownership validation failed for user {user_id}")
            return _fail(
                TokenErrorCode.OWNERSHIP_MISMATCH,
                "Token ownership validation failed.",
                UserStatus.of(user, TokenStatus.VALID),
            )

        if not user.is_active or not user.is_email_verified:
            logger.warning(f"User {user_id} is inactive or unverified")
            return _fail(
                TokenErrorCode.ACCOUNT_INACTIVE,
                "User account is inactive or unverified.",
                UserStatus.of(user, TokenStatus.VALID),
            )

        if record is None:
            logger.warning(f"Revoked or unknown access token for user {user_id}")
            return _fail(
                TokenErrorCode.REVOKED,
                "Token has been revoked.",
                UserStatus.of(user, TokenStatus.REVOKED),
            )

        # IP pinning is checked before device pinning and wins when both differ
        if ip_address and not self.allow_ip_change and record.ip_address != ip_address:
            logger.warning(
                f"IP address mismatch for user {user_id}. "
                f"Expected: {record.ip_address}, Got: {ip_address}"
            )
            return _fail(
                TokenErrorCode.IP_MISMATCH,
                "Token IP address mismatch.",
                UserStatus.of(user, TokenStatus.INVALID),
            )

        if user_agent and not self.allow_user_agent_change and record.user_agent != user_agent:
            logger.warning(f"User agent mismatch for user {user_id}")
            return _fail(
                TokenErrorCode.DEVICE_MISMATCH,
                "Token user agent mismatch.",
                UserStatus.of(user, TokenStatus.INVALID),
            )

        return Ok(AccessValidation(user=user, user_status=UserStatus.of(user, TokenStatus.VALID)))

    async def _load_owner(self, user_id: UUID, kind: str) -> TokenResult[User]:
        user = await self.users.find_user_by_id(user_id)
        if user is None:
            logger.warning(f"User {user_id} not found for {kind} token")
            return _fail(TokenErrorCode.USER_NOT_FOUND, f"User not found for {kind} token.")
        if not user.is_active or not user.is_email_verified:
            logger.warning(f"User {user_id} is inactive or unverified")
            return _fail(
                TokenErrorCode.ACCOUNT_INACTIVE,
                "User account is invalid or inactive.",
                UserStatus.of(user, TokenStatus.VALID),
            )
        return Ok(user)

    @_recover_storage_errors
    async def validate_refresh(self, refresh_token: str | None) -> TokenResult[SessionValidation]:
        """Validate a refresh token and return its live record and owner.

        No IP/device constraints apply here: possession of the refresh token
        is what is being checked. The caller issues the replacement set for
        the IP/user agent of the refresh request itself.
        """
        if not refresh_token:
            return _fail(TokenErrorCode.REQUIRED, "Refresh token is required.")

        decoded = self._decode_checked(refresh_token, TokenType.REFRESH)
        if decoded.is_err():
            return decoded
        user_id = UUID(decoded.unwrap().subject_id)

        record = await self.store.find_active_by_refresh_token(user_id, refresh_token)
        if record is None:
            logger.warning(f"Refresh token not found or revoked for user {user_id}")
            return _fail(TokenErrorCode.REVOKED, "Refresh token is invalid or has been revoked.")

        owner = await self._load_owner(user_id, "refresh")
        if owner.is_err():
            return owner
        return Ok(SessionValidation(record=record, user=owner.unwrap()))

    @_recover_storage_errors
    async def validate_remember_me(
        self, remember_me_token: str | None
    ) -> TokenResult[SessionValidation]:
        """Validate a remember-me token.

        Both the token's exp claim and the record's ``remember_me_expires_at``
        must still be in the future.
        """
        if not remember_me_token:
            return _fail(TokenErrorCode.REQUIRED, "Remember Me token is required.")

        decoded = self._decode(remember_me_token, TokenType.REMEMBER_ME)
        if decoded.is_err():
            return decoded
        user_id = UUID(decoded.unwrap().subject_id)

        record = await self.store.find_active_remember_me(remember_me_token, user_id=user_id)
        if record is None:
            logger.warning(f"Remember Me token not found or revoked for user {user_id}")
            return _fail(
                TokenErrorCode.REVOKED, "Remember Me token is invalid or has been revoked."
            )

        if not record.is_remember_me_valid(self._clock()):
            logger.warning(f"Remember Me token expired for user {user_id}")
            return _fail(TokenErrorCode.REMEMBER_ME_EXPIRED, "Remember Me token has expired.")

        owner = await self._load_owner(user_id, "Remember Me")
        if owner.is_err():
            return owner
        return Ok(SessionValidation(record=record, user=owner.unwrap()))

    async def validate_token_ownership(self, token: str, email: str) -> bool:
        """True when ``token`` is a valid token belonging to the user with ``email``."""
        decoded = self._decode(token, None)
        if decoded.is_err():
            return False
        try:
            user = await self.users.find_user_by_id(UUID(decoded.unwrap().subject_id))
        except SQLAlchemyError:
            logger.exception("User lookup failed during ownership check")
            return False
        return user is not None and user.email == email

    # --- Rotation ---

    async def _rotate(
        self, old: TokenRecord, new: TokenRecord, user: User
    ) -> TokenResult[TokenSet]:
        try:
            await self.store.rotate(new, old, now=self._clock())
        except StaleTokenRecordError:
            logger.warning(f"Token record {old.id} was revoked by a concurrent request")
            return _fail(TokenErrorCode.REVOKED, "Token has been revoked.")
        return Ok(self._token_set(new, user.email))

    @_recover_storage_errors
    async def rotate_refresh(
        self, refresh_token: str | None, ip_address: str | None, user_agent: str | None
    ) -> TokenResult[TokenSet]:
        """Exchange a refresh token for a new token set and revoke the old one.

        A remember-me chain survives the refresh: the new record takes over
        the same remember-me token, expiry and version.
        """
        validated = await self.validate_refresh(refresh_token)
        if validated.is_err():
            return validated
        old = validated.unwrap().record
        user = validated.unwrap().user

        new = self.build_record(user.id, ip_address, user_agent)
        if old.is_remember_me_token and old.remember_me_token:
            new.remember_me_token = old.remember_me_token
            new.is_remember_me_token = True
            new.remember_me_expires_at = (
                as_utc(old.remember_me_expires_at) if old.remember_me_expires_at else None
            )
            new.token_version = old.token_version

        result = await self._rotate(old, new, user)
        if result.is_ok():
            logger.info(f"Tokens refreshed for user {user.id}")
        return result

    @_recover_storage_errors
    async def rotate_remember_me(
        self, remember_me_token: str | None, ip_address: str | None, user_agent: str | None
    ) -> TokenResult[TokenSet]:
        """Log in with a remember-me token, starting the next version of its chain."""
        validated = await self.validate_remember_me(remember_me_token)
        if validated.is_err():
            return validated
        old = validated.unwrap().record
        user = validated.unwrap().user

        new = self.build_record(
            user.id,
            ip_address,
            user_agent,
            remember_me=True,
            token_version=(old.token_version or 0) + 1,
        )
        result = await self._rotate(old, new, user)
        if result.is_ok():
            logger.info(f"Remember Me login for user {user.id} (version {new.token_version})")
        return result

    # --- Revocation ---

    @_recover_storage_errors
    async def revoke_user_tokens(
        self,
        access_token: str | None,
        refresh_token: str | None = None,
        remember_me_token: str | None = None,
    ) -> TokenResult[int]:
        """Revoke every live record of the access token's owner holding any given token.

        Only the access token's signature and expiry are checked, not the
        full ``validate_access`` sequence. Returns the number of records revoked.
        """
        if not access_token:
            return _fail(TokenErrorCode.REQUIRED, "Token is required.")

        decoded = self._decode(access_token, None)
        if decoded.is_err():
            return decoded
        user_id = UUID(decoded.unwrap().subject_id)

        records = await self.store.find_active_matching_any(
            user_id, access_token, refresh_token, remember_me_token
        )
        if not records:
            logger.warning(f"No tokens found to revoke for user {user_id}")
            return _fail(TokenErrorCode.NO_TOKENS_FOUND, "No valid tokens found to revoke.")

        revoked = await self.store.revoke(records, now=self._clock())
        logger.info(f"Revoked {revoked} token record(s) for user {user_id}")
        return Ok(revoked)

    @_recover_storage_errors
    async def revoke_remember_me_token(self, remember_me_token: str | None) -> TokenResult[str]:
        """Revoke the record holding one remember-me token."""
        if not remember_me_token:
            return _fail(TokenErrorCode.REQUIRED, "Remember Me token is required.")

        record = await self.store.find_active_remember_me(remember_me_token)
        if record is None:
            return _fail(TokenErrorCode.NOT_FOUND_OR_REVOKED, "Token not found or already revoked.")

        await self.store.revoke([record], now=self._clock())
        logger.info(f"Remember Me token revoked for user {record.user_id}")
        return Ok("Remember Me token successfully revoked.")

    @_recover_storage_errors
    async def revoke_all_remember_me_tokens(self, user_id: UUID) -> TokenResult[int]:
        """Revoke every live remember-me chain of ``user_id``. Zero is not an error."""
        records = await self.store.find_active_remember_me_for_user(user_id)
        revoked = await self.store.revoke(records, now=self._clock())
        logger.info(f"Revoked {revoked} Remember Me token(s) for user {user_id}")
        return Ok(revoked)

    @staticmethod
    def _token_set(record: TokenRecord, email: str | None = None) -> TokenSet:
        return TokenSet(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            remember_me_token=record.remember_me_token if record.is_remember_me_token else None,
            record_id=record.id,
            email=email,
        )
