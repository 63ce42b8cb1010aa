from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


USER_STATUS_ACTIVE = "active"
USER_STATUS_INACTIVE = "inactive"
USER_STATUS_MARKED = "marked_for_deletion"

USER_ROLE_USER = "user"
USER_ROLE_ADMIN = "admin"

CLIENT_STATUS_PENDING = "pending"
CLIENT_STATUS_ACTIVE = "active"
CLIENT_STATUS_SUSPENDED = "suspended"
CLIENT_STATUS_REVOKED = "revoked"

PLAID_STATUS_ACTIVE = "active"
PLAID_STATUS_ERROR = "error"
PLAID_STATUS_PENDING = "pending"
PLAID_STATUS_DISCONNECTED = "disconnected"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
PortableJSON = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
PortableBigInt = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # Store timezone-aware values and always hand back aware UTC datetimes.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default=USER_ROLE_USER, nullable=False)
    status: Mapped[str] = mapped_column(String, default=USER_STATUS_ACTIVE, index=True, nullable=False)
    # Non-null exactly when status is marked_for_deletion; start of the grace window.
    marked_for_deletion_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    inactivity_warning_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Per-user overrides of the default retention windows and consent flags.
    data_retention_preferences: Mapped[dict[str, Any] | None] = mapped_column(PortableJSON, nullable=True)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class Client(Base):
    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # SHA-256 of the client API key; the raw key is shown once at registration.
    api_key_hash: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String, default=CLIENT_STATUS_PENDING, nullable=False)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Monotonic within a cycle; only reset_cycle and admin resets bring it back to 0.
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_quota: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    reset_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_reset_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Highest usage percentage already notified this cycle; 100 marks the exceeded notice.
    last_notified_threshold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    previous_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())

    __table_args__ = (Index("ix_clients_status_reset_date", "status", "reset_date"),)


class AuthToken(Base):
    __tablename__ = "auth_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    client_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("clients.client_id"), nullable=True, index=True
    )
    # Store only the SHA-256 of the bearer token.
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    token_type: Mapped[str] = mapped_column(String, default=TOKEN_TYPE_ACCESS, nullable=False)
    two_factor_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class PlaidItem(Base):
    __tablename__ = "plaid_items"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=PLAID_STATUS_ACTIVE, nullable=False)
    access_token_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    disconnected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Always disconnected_at + the plaid disconnect retention window.
    deletion_scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    plaid_item_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("plaid_items.item_id"), nullable=True, index=True
    )
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    account_type: Mapped[str | None] = mapped_column(String, nullable=True)
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)


class InsightMetric(Base):
    __tablename__ = "insight_metrics"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    query_type: Mapped[str | None] = mapped_column(String, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    generated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)


class SpendingPattern(Base):
    __tablename__ = "spending_patterns"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    monthly_average: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class RetentionLog(Base):
    __tablename__ = "retention_logs"

    id: Mapped[int] = mapped_column(PortableBigInt, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    # Subject of the entry; intentionally not a foreign key so it outlives the user.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(PortableJSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_retention_logs_action", "action"),
        Index("ix_retention_logs_timestamp", "timestamp"),
    )


class AdminLog(Base):
    __tablename__ = "admin_logs"

    id: Mapped[int] = mapped_column(PortableBigInt, primary_key=True, autoincrement=True)
    admin_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    target_type: Mapped[str | None] = mapped_column(String, nullable=True)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(PortableJSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_admin_logs_action", "action"),
        Index("ix_admin_logs_timestamp", "timestamp"),
    )
