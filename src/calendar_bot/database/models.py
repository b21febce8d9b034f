"""SQLAlchemy database models."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on the way back, so values are normalized to UTC on
    write and re-tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class AccountState:
    PENDING = "pending"
    CONNECTED = "connected"
    REVOKED = "revoked"


class SubscriptionStatus:
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class Account(Base):
    """A calendar account linked by a chat user under a nickname."""

    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("user_id", "nickname", name="uq_accounts_user_nickname"),)

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Case-sensitive, 1-64 chars
    nickname: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountState.PENDING)

    # OAuth credential, written only by the token manager and the link flow
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    scopes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    calendar_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Set when the scheduler tears a subscription down; the user must resubscribe
    subscription_lapsed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def is_connected(self) -> bool:
        return self.state == AccountState.CONNECTED

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, user_id={self.user_id}, nickname={self.nickname}, state={self.state})>"


class LinkRequest(Base):
    """Single-use token correlating an OAuth authorization with its callback."""

    __tablename__ = "link_requests"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    nickname: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Subscription(Base):
    """Provider watch channel mapped to the account it notifies."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one active channel per account and watched calendar
        Index(
            "uq_subscriptions_active_account_calendar",
            "account_id",
            "calendar_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    channel_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Opaque id assigned by Google; needed to stop the channel
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    verification_token: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE
    )
    renewal_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sync_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Subscription(channel_id={self.channel_id}, account_id={self.account_id}, status={self.status})>"


class TrackedEvent(Base):
    """Last seen version of an event, used to classify and de-duplicate changes."""

    __tablename__ = "tracked_events"

    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    event_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    updated: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)


class Macro(Base):
    """Keyed text snippet scoped to a channel or to one conversation."""

    __tablename__ = "macros"
    __table_args__ = (
        UniqueConstraint("channel_name", "is_conv", "macro_name", name="uq_macros_scope_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Channel name for channel-wide macros, conversation id for conversation macros
    channel_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_conv: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    macro_name: Mapped[str] = mapped_column(String(255), nullable=False)
    macro_message: Mapped[str] = mapped_column(Text, nullable=False)
