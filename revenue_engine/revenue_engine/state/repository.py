"""Repository classes providing CRUD access to the revenue state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_engine.models import RevenueSnapshot, SyncStatus
from revenue_engine.state.tables import (
    APIKeyTable,
    ConnectionTable,
    RevenueSnapshotTable,
    SyncLogTable,
)

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.  Columns left out
        keep their stored value.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# ConnectionRepository
# ---------------------------------------------------------------------------


class ConnectionRepository:
    """CRUD operations for the ``connections`` table.

    ``tenant_id=None`` lifts the tenant filter; the scheduler uses it to
    walk every tenant's connections.
    """

    def __init__(self, session: AsyncSession, tenant_id: str | None = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _scoped(self, stmt: Any) -> Any:
        if self._tenant_id is None:
            return stmt
        return stmt.where(ConnectionTable.tenant_id == self._tenant_id)

    async def create(
        self,
        provider: str,
        encrypted_api_key: str,
        *,
        encrypted_secret: str | None = None,
        encrypted_webhook_secret: str | None = None,
        environment: str = "live",
    ) -> ConnectionTable:
        row = ConnectionTable(
            id=uuid.uuid4().hex,
            tenant_id=self._tenant_id or "default",
            provider=provider,
            encrypted_api_key=encrypted_api_key,
            encrypted_secret=encrypted_secret,
            encrypted_webhook_secret=encrypted_webhook_secret,
            environment=environment,
            is_active=True,
        )
        self._session.add(row)
        await self._session.flush()
        logger.info("Created %s connection %s", provider, row.id)
        return row

    async def get(self, connection_id: str) -> ConnectionTable | None:
        stmt = self._scoped(select(ConnectionTable).where(ConnectionTable.id == connection_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, *, active_only: bool = False) -> list[ConnectionTable]:
        """Return connections ordered by creation time."""
        stmt = select(ConnectionTable)
        if active_only:
            stmt = stmt.where(ConnectionTable.is_active.is_(True))
        stmt = self._scoped(stmt).order_by(ConnectionTable.created_at, ConnectionTable.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def set_active(self, connection_id: str, is_active: bool) -> ConnectionTable | None:
        row = await self.get(connection_id)
        if row is None:
            return None
        row.is_active = is_active
        await self._session.flush()
        return row

    async def delete(self, connection_id: str) -> bool:
        """Delete a connection and its snapshots.  Sync logs are kept."""
        if await self.get(connection_id) is None:
            return False
        await self._session.execute(
            delete(RevenueSnapshotTable).where(RevenueSnapshotTable.connection_id == connection_id)
        )
        await self._session.execute(delete(ConnectionTable).where(ConnectionTable.id == connection_id))
        await self._session.flush()
        logger.info("Deleted connection %s", connection_id)
        return True

    async def mark_synced(self, connection_id: str, synced_at: datetime) -> None:
        """Record a successful sync on the connection row."""
        row = await self.get(connection_id)
        if row is None:
            return
        row.last_synced_at = synced_at
        row.last_sync_status = SyncStatus.SUCCESS.value
        row.last_sync_error = None
        await self._session.flush()

    async def mark_failed(self, connection_id: str, error: str) -> None:
        """Record a failed sync; ``last_synced_at`` keeps the last success."""
        row = await self.get(connection_id)
        if row is None:
            return
        row.last_sync_status = SyncStatus.ERROR.value
        row.last_sync_error = error
        await self._session.flush()


# ---------------------------------------------------------------------------
# SnapshotRepository
# ---------------------------------------------------------------------------


class SnapshotRepository:
    """Idempotent writes and range reads for ``revenue_snapshots``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, snapshot: RevenueSnapshot) -> None:
        """Insert or overwrite the row for ``(connection_id, date)``.

        Revenue and currency are always overwritten.  MRR, ARR and customer
        count are only written when the snapshot carries them, so a bucket
        that is no longer the newest keeps its stored values.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "connection_id": snapshot.connection_id,
            "date": snapshot.date,
            "revenue": snapshot.revenue,
            "mrr": snapshot.mrr,
            "arr": snapshot.arr,
            "customer_count": snapshot.customer_count,
            "currency": snapshot.currency,
            "created_at": now,
            "updated_at": now,
        }
        update_columns = ["revenue", "currency", "updated_at"]
        update_columns.extend(col for col in ("mrr", "arr", "customer_count") if values[col] is not None)

        await _dialect_upsert(
            self._session,
            RevenueSnapshotTable,
            values=values,
            index_elements=["connection_id", "date"],
            update_columns=update_columns,
        )

    async def upsert_many(self, snapshots: Iterable[RevenueSnapshot]) -> int:
        """Upsert *snapshots* in increasing date order; return the count written."""
        count = 0
        for snapshot in sorted(snapshots, key=lambda s: s.date):
            await self.upsert(snapshot)
            count += 1
        await self._session.flush()
        return count

    async def list_range(
        self,
        connection_ids: Sequence[str],
        *,
        start: date | None = None,
        end: date | None = None,
        currency: str | None = None,
    ) -> list[RevenueSnapshotTable]:
        """Snapshots for *connection_ids*, ordered by connection then date."""
        if not connection_ids:
            return []
        stmt = select(RevenueSnapshotTable).where(RevenueSnapshotTable.connection_id.in_(list(connection_ids)))
        if start is not None:
            stmt = stmt.where(RevenueSnapshotTable.date >= start)
        if end is not None:
            stmt = stmt.where(RevenueSnapshotTable.date <= end)
        if currency is not None:
            stmt = stmt.where(RevenueSnapshotTable.currency == currency)
        stmt = stmt.order_by(RevenueSnapshotTable.connection_id, RevenueSnapshotTable.date)
        # Upserts bypass the identity map; reload rows already held by the session.
        stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_connection(self, connection_id: str) -> list[RevenueSnapshotTable]:
        return await self.list_range([connection_id])


# ---------------------------------------------------------------------------
# SyncLogRepository
# ---------------------------------------------------------------------------


class SyncLogRepository:
    """Append-only access to ``sync_logs``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        connection_id: str,
        status: SyncStatus,
        *,
        started_at: datetime,
        records_processed: int = 0,
        error_message: str | None = None,
        provider: str | None = None,
    ) -> SyncLogTable:
        row = SyncLogTable(
            connection_id=connection_id,
            provider=provider,
            status=status.value,
            records_processed=records_processed,
            error_message=error_message,
            started_at=started_at,
            completed_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_connection(self, connection_id: str, limit: int = 50) -> list[SyncLogTable]:
        """Most recent attempts first."""
        stmt = (
            select(SyncLogTable)
            .where(SyncLogTable.connection_id == connection_id)
            .order_by(SyncLogTable.completed_at.desc(), SyncLogTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def last_success_at(self, connection_id: str | None = None) -> datetime | None:
        """Completion time of the newest successful sync, optionally for one connection."""
        stmt = select(func.max(SyncLogTable.completed_at)).where(SyncLogTable.status == SyncStatus.SUCCESS.value)
        if connection_id is not None:
            stmt = stmt.where(SyncLogTable.connection_id == connection_id)
        result = await self._session.execute(stmt)
        return as_utc(result.scalar_one_or_none())

    async def last_attempt(self) -> SyncLogTable | None:
        stmt = select(SyncLogTable).order_by(SyncLogTable.completed_at.desc(), SyncLogTable.id.desc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# APIKeyRepository
# ---------------------------------------------------------------------------


class APIKeyRepository:
    """CRUD operations for the ``api_keys`` table.

    API keys use a ``rvk_`` prefix convention for identification.  Only the
    SHA-256 hash of the key is stored; the plaintext is returned exactly
    once at creation time.
    """

    _KEY_PREFIX_CONVENTION = "rvk_"

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def _hash_key(plaintext: str) -> str:
        """SHA-256 hash of the plaintext key."""
        return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()

    def _generate_key(self) -> tuple[str, str, str]:
        """Return ``(plaintext, prefix, hash)`` for a new key."""
        random_part = uuid.uuid4().hex + uuid.uuid4().hex
        plaintext = f"{self._KEY_PREFIX_CONVENTION}{random_part}"
        return plaintext, random_part[:8], self._hash_key(plaintext)

    async def create(self, name: str, *, expires_at: datetime | None = None) -> tuple[APIKeyTable, str]:
        """Create a new API key.

        Returns ``(row, plaintext_key)``; the plaintext is never stored.
        """
        plaintext, prefix, key_hash = self._generate_key()
        row = APIKeyTable(
            id=uuid.uuid4().hex,
            tenant_id=self._tenant_id,
            name=name.strip(),
            key_prefix=prefix,
            key_hash=key_hash,
            expires_at=expires_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row, plaintext

    async def validate_key(self, plaintext_key: str) -> APIKeyTable | None:
        """Return the key row if the key exists, is not revoked and not expired.

        Updates ``last_used_at`` on success.
        """
        stmt = select(APIKeyTable).where(
            APIKeyTable.key_hash == self._hash_key(plaintext_key),
            APIKeyTable.tenant_id == self._tenant_id,
            APIKeyTable.revoked_at.is_(None),
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None

        now = datetime.now(UTC)
        expires_at = as_utc(row.expires_at)
        if expires_at is not None and expires_at <= now:
            return None

        row.last_used_at = now
        await self._session.flush()
        return row

    async def list_active(self) -> list[APIKeyTable]:
        """Non-revoked keys for this tenant, newest first."""
        stmt = (
            select(APIKeyTable)
            .where(
                APIKeyTable.tenant_id == self._tenant_id,
                APIKeyTable.revoked_at.is_(None),
            )
            .order_by(APIKeyTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def revoke(self, key_id: str) -> bool:
        """Revoke an API key.  Returns ``True`` if a row was updated."""
        stmt = (
            update(APIKeyTable)
            .where(
                APIKeyTable.tenant_id == self._tenant_id,
                APIKeyTable.id == key_id,
                APIKeyTable.revoked_at.is_(None),
            )
            .values(revoked_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]
