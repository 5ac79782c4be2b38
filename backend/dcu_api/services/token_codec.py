"""Signing and verification of JWT session tokens.

Pure functions over a fixed secret: no database or network access.
"""

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from dcu_api.core.timeutils import Clock, utcnow


REQUIRED_CLAIMS = ["id", "type", "iat", "exp"]


class TokenType(str, Enum):
    """Kinds of tokens; a token is only accepted where its type is expected."""

    ACCESS = "access"
    REFRESH = "refresh"
    REMEMBER_ME = "remember_me"
    ADMIN_ACCESS = "admin_access"
    ADMIN_REFRESH = "admin_refresh"


class TokenError(Exception):
    """Base token codec error."""

    pass


class TokenExpiredError(TokenError):
    """Token signature is valid but its exp claim has passed."""

    pass


class MalformedTokenError(TokenError):
    """Token is not a well-formed, correctly signed token of the expected type."""

    pass


@dataclass(frozen=True)
class TokenPayload:
    """Decoded claims of a verified token."""

    subject_id: str
    type: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str | None = None


class TokenCodec:
    """Encode/decode signed tokens carrying ``{id, type, iat, exp}``."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        clock: Clock = utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("Token secret key must not be empty")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock

    def sign(self, subject_id: Any, token_type: TokenType, ttl: timedelta) -> str:
        """Create a signed token for ``subject_id`` valid for ``ttl``.

        A random ``jti`` keeps tokens unique even when the same subject gets
        two tokens of one type within the same second.
        """
        issued_at = self._clock()
        payload = {
            "id": str(subject_id),
            "type": TokenType(token_type).value,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + ttl).timestamp()),
            "jti": secrets.token_hex(16),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token)

    def verify(self, token: str, expected_type: TokenType | None = None) -> TokenPayload:
        """Verify the signature and decode the payload.

        ``exp`` and ``iat`` are checked against the codec's clock rather than
        PyJWT's wall clock.

        Raises:
            TokenExpiredError: the exp claim has passed
            MalformedTokenError: bad signature, bad encoding, missing claims,
                an iat in the future, or a type other than ``expected_type``
        """
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except PyJWTError as e:
            raise MalformedTokenError("Invalid token format.") from e

        subject_id = claims.get("id")
        if not subject_id:
            raise MalformedTokenError("Invalid token structure.")

        try:
            token_type = TokenType(claims.get("type"))
        except ValueError as e:
            raise MalformedTokenError("Invalid token structure.") from e

        try:
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=UTC)
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=UTC)
        except (TypeError, ValueError, OverflowError) as e:
            raise MalformedTokenError("Invalid token structure.") from e

        now = self._clock()
        if expires_at <= now:
            raise TokenExpiredError("Token has expired.")
        if issued_at > now:
            raise MalformedTokenError("Token issued in the future.")

        if expected_type is not None and token_type is not TokenType(expected_type):
            raise MalformedTokenError(f"Invalid token type. Expected: {TokenType(expected_type).value}")

        return TokenPayload(
            subject_id=str(subject_id),
            type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=claims.get("jti"),
        )
