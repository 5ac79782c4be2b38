"""Issued login sessions (access/refresh/remember-me token sets)."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dcu_api.core.timeutils import as_utc, utcnow
from dcu_api.models.base import BaseModel


class TokenRecord(BaseModel):
    """One row per issued token set.

    Rows are never deleted: logout, refresh and remember-me rotation flip
    ``revoked`` so the history stays available for auditing.
    """

    __tablename__ = "auth_tokens"
    __table_args__ = (
        Index("ix_auth_tokens_user_access", "user_id", "access_token"),
        Index("ix_auth_tokens_user_refresh", "user_id", "refresh_token"),
        Index("ix_auth_tokens_remember_me", "remember_me_token"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(String(500), nullable=False)
    refresh_token: Mapped[str] = mapped_column(String(500), nullable=False)

    # Device fingerprint captured at issuance
    ip_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    remember_me_token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_remember_me_token: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remember_me_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Incremented on every remember-me rotation of the same chain
    token_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def is_remember_me_valid(self, now: datetime | None = None) -> bool:
        """Check the wall-clock remember-me expiry (independent of the JWT exp)."""
        if not self.is_remember_me_token or self.remember_me_expires_at is None:
            return False
        return (now or utcnow()) < as_utc(self.remember_me_expires_at)

    def touch(self, now: datetime | None = None) -> None:
        self.last_used_at = now or utcnow()

    def revoke(self, now: datetime | None = None) -> None:
        """Mark the record revoked and stamp last use."""
        self.revoked = True
        self.touch(now)

    def __repr__(self) -> str:
        state = "revoked" if self.revoked else "active"
        return f"<TokenRecord {self.id} user={self.user_id} {state}>"
