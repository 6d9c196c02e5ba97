"""Database models for users and referral records."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String, TypeDecorator, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class UTCDateTime(TypeDecorator):
    """DateTime column that always hands back timezone-aware UTC values.

    Values are stored naive in UTC so SQLite and PostgreSQL compare them the
    same way.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class UserAccount(Base):
    """User document, referral and premium subset."""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Referral identity
    referral_code: Mapped[str] = mapped_column(String(6), unique=True, nullable=False, index=True)
    referred_by: Mapped[str | None] = mapped_column(String(6), nullable=True)
    referred_by_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    # Referrer stats
    referral_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    referrals_completed: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    # Entitlement
    premium_status: Mapped[str] = mapped_column(String(20), default="free", nullable=False)
    premium_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    premium_unlocked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    premium_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)  # NULL = forever
    referral_completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<UserAccount(user_id='{self.user_id}', code='{self.referral_code}', premium='{self.premium_status}')>"


class Referral(Base):
    """Referral record linking a referrer to the user they invited.

    Status only moves pending -> completed or pending -> expired.
    """

    __tablename__ = "referrals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    # A user can be referred at most once
    referred_user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    referred_couple_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<Referral(id='{self.id}', referrer='{self.referrer_user_id}', referred='{self.referred_user_id}', status='{self.status}')>"
