"""SQLAlchemy 2.0 ORM table definitions for the revenue state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Money columns: 18 digits with 4 decimals covers any processor amount.
_Money = Numeric(18, 4)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all revenue tables."""


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class ConnectionTable(Base):
    """A tenant's link to one payment processor.

    The ``encrypted_*`` columns hold credential vault tokens.  They are only
    decrypted inside a sync and are never returned by the API.
    """

    __tablename__ = "connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_webhook_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    environment: Mapped[str] = mapped_column(String(16), nullable=False, default="live")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("environment IN ('live', 'sandbox')", name="ck_connections_environment"),
        Index("ix_connections_tenant", "tenant_id"),
        Index("ix_connections_active", "is_active"),
    )


# ---------------------------------------------------------------------------
# Revenue snapshots
# ---------------------------------------------------------------------------


class RevenueSnapshotTable(Base):
    """One bucketed revenue observation; at most one row per connection and date."""

    __tablename__ = "revenue_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    revenue: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    mrr: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    arr: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    customer_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "date", name="uq_revenue_snapshots_connection_date"),
        Index("ix_revenue_snapshots_date", "date"),
    )


# ---------------------------------------------------------------------------
# Sync log
# ---------------------------------------------------------------------------


class SyncLogTable(Base):
    """Append-only record of one sync attempt.

    ``connection_id`` has no foreign key; log rows outlive their connection.
    """

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('success', 'error')", name="ck_sync_logs_status"),
        Index("ix_sync_logs_connection_completed", "connection_id", "completed_at"),
        Index("ix_sync_logs_status_completed", "status", "completed_at"),
    )


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class APIKeyTable(Base):
    """API keys for the export and connection endpoints.

    Keys are shown exactly once at creation time.  Only the SHA-256 hash is
    stored; the first 8 characters of the random part are kept as a prefix
    to help operators identify their keys.
    """

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(8), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_api_keys_tenant", "tenant_id"),
        Index("ix_api_keys_key_hash", "key_hash", unique=True),
    )
