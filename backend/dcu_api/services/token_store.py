"""Persistence of issued token sets (``auth_tokens`` rows).

Every lookup is scoped to non-revoked rows. Writes that touch more than one
row (rotation, bulk revoke) run in a single transaction so no reader ever
sees an old and a new record of the same chain active at the same time.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dcu_api.core.timeutils import utcnow
from dcu_api.models.token_record import TokenRecord

logger = logging.getLogger(__name__)


class StaleTokenRecordError(Exception):
    """The record being rotated was revoked by a concurrent request."""

    pass


class TokenStore:
    """CRUD over ``TokenRecord`` rows."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def add(self, record: TokenRecord) -> TokenRecord:
        """Persist a freshly issued record."""
        async with self.session_maker() as session:
            async with session.begin():
                session.add(record)
        return record

    async def find_active_by_access_token(
        self, user_id: UUID, access_token: str
    ) -> TokenRecord | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TokenRecord).where(
                    TokenRecord.user_id == user_id,
                    TokenRecord.access_token == access_token,
                    TokenRecord.revoked.is_(False),
                )
            )
            return result.scalars().first()

    async def find_active_by_refresh_token(
        self, user_id: UUID, refresh_token: str
    ) -> TokenRecord | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TokenRecord).where(
                    TokenRecord.user_id == user_id,
                    TokenRecord.refresh_token == refresh_token,
                    TokenRecord.revoked.is_(False),
                )
            )
            return result.scalars().first()

    async def find_active_remember_me(
        self, remember_me_token: str, user_id: UUID | None = None
    ) -> TokenRecord | None:
        """Find the live record holding ``remember_me_token``.

        ``user_id`` narrows the match to one owner when it is known.
        """
        conditions = [
            TokenRecord.remember_me_token == remember_me_token,
            TokenRecord.is_remember_me_token.is_(True),
            TokenRecord.revoked.is_(False),
        ]
        if user_id is not None:
            conditions.append(TokenRecord.user_id == user_id)
        async with self.session_maker() as session:
            result = await session.execute(select(TokenRecord).where(*conditions))
            return result.scalars().first()

    async def find_active_remember_me_for_user(self, user_id: UUID) -> list[TokenRecord]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TokenRecord).where(
                    TokenRecord.user_id == user_id,
                    TokenRecord.is_remember_me_token.is_(True),
                    TokenRecord.revoked.is_(False),
                )
            )
            return list(result.scalars().all())

    async def find_active_matching_any(
        self,
        user_id: UUID,
        access_token: str,
        refresh_token: str | None = None,
        remember_me_token: str | None = None,
    ) -> list[TokenRecord]:
        """Live records of ``user_id`` that hold any of the given token values."""
        matches = [TokenRecord.access_token == access_token]
        if refresh_token:
            matches.append(TokenRecord.refresh_token == refresh_token)
        if remember_me_token:
            matches.append(TokenRecord.remember_me_token == remember_me_token)

        async with self.session_maker() as session:
            result = await session.execute(
                select(TokenRecord).where(
                    TokenRecord.user_id == user_id,
                    TokenRecord.revoked.is_(False),
                    or_(*matches),
                )
            )
            return list(result.scalars().all())

    async def rotate(
        self, new_record: TokenRecord, old_record: TokenRecord, now: datetime | None = None
    ) -> TokenRecord:
        """Revoke ``old_record`` and insert ``new_record`` atomically.

        The revoke is an ``UPDATE ... WHERE revoked = false``; when a
        concurrent rotation got there first no row matches, nothing is
        written and ``StaleTokenRecordError`` is raised.
        """
        now = now or utcnow()
        async with self.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(TokenRecord)
                    .where(TokenRecord.id == old_record.id, TokenRecord.revoked.is_(False))
                    .values(revoked=True, last_used_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleTokenRecordError(f"Token record {old_record.id} is no longer active")
                session.add(new_record)

        old_record.revoke(now)
        logger.info(f"Token record rotated for user {new_record.user_id}")
        return new_record

    async def revoke(self, records: Sequence[TokenRecord], now: datetime | None = None) -> int:
        """Mark every record revoked in one transaction. Returns count revoked.

        Records already revoked by someone else are skipped and not counted.
        """
        if not records:
            return 0
        now = now or utcnow()
        ids = [record.id for record in records]
        async with self.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(TokenRecord)
                    .where(TokenRecord.id.in_(ids), TokenRecord.revoked.is_(False))
                    .values(revoked=True, last_used_at=now)
                    .execution_options(synchronize_session=False)
                )
                revoked = result.rowcount

        for record in records:
            record.revoke(now)
        logger.info(f"Revoked {revoked} token record(s)")
        return revoked
