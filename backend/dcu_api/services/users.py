"""User lookup used by the token and auth services."""

import logging
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dcu_api.models.user import User

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    """Read access to user accounts."""

    async def find_user_by_id(self, user_id: UUID | str) -> User | None: ...

    async def find_user_by_email(self, email: str) -> User | None: ...


def _coerce_uuid(value: UUID | str) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class SqlUserDirectory:
    """UserDirectory backed by the ``users`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def find_user_by_id(self, user_id: UUID | str) -> User | None:
        """Get user by ID; malformed IDs simply match nothing."""
        uid = _coerce_uuid(user_id)
        if uid is None:
            return None
        async with self.session_maker() as session:
            result = await session.execute(select(User).where(User.id == uid))
            return result.scalar_one_or_none()

    async def find_user_by_email(self, email: str) -> User | None:
        """Get user by email."""
        async with self.session_maker() as session:
            result = await session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

    async def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: str | None = None,
        is_active: bool = True,
        is_email_verified: bool = False,
    ) -> User:
        """Insert a new user row."""
        user = User(
            email=email,
            password_hash=password_hash,
            full_name=full_name,
            is_active=is_active,
            is_email_verified=is_email_verified,
        )
        async with self.session_maker() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)

        logger.info(f"Created user: {user.id}")
        return user

    async def record_login(self, user_id: UUID, when: datetime) -> None:
        """Stamp ``last_login_at`` for a user."""
        async with self.session_maker() as session:
            user = await session.get(User, user_id)
            if user is not None:
                user.last_login_at = when
                await session.commit()
