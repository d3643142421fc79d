"""Repository tests against an in-memory SQLite database."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revenue_engine.models import RevenueSnapshot, SyncStatus
from revenue_engine.state.database import get_session
from revenue_engine.state.repository import (
    APIKeyRepository,
    ConnectionRepository,
    SnapshotRepository,
    SyncLogRepository,
    as_utc,
)


def _snapshot(connection_id: str, day: date, revenue: str, **metrics) -> RevenueSnapshot:
    return RevenueSnapshot(connection_id=connection_id, date=day, revenue=Decimal(revenue), currency="USD", **metrics)


async def _connection(session: AsyncSession, provider: str = "stripe", tenant_id: str = "default") -> str:
    row = await ConnectionRepository(session, tenant_id=tenant_id).create(provider, "token")
    await session.commit()
    return row.id


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnectionRepository:
    @pytest.mark.asyncio
    async def test_create_and_get(self, session: AsyncSession) -> None:
        repo = ConnectionRepository(session)
        row = await repo.create("paddle", "enc-key", encrypted_secret="enc-vendor", environment="sandbox")

        fetched = await repo.get(row.id)
        assert fetched is not None
        assert fetched.provider == "paddle"
        assert fetched.encrypted_secret == "enc-vendor"
        assert fetched.environment == "sandbox"
        assert fetched.is_active is True
        assert fetched.last_synced_at is None

    @pytest.mark.asyncio
    async def test_tenant_scoping(self, session: AsyncSession) -> None:
        ours = await _connection(session, tenant_id="default")
        theirs = await _connection(session, tenant_id="acme")

        default_repo = ConnectionRepository(session)
        assert await default_repo.get(theirs) is None
        assert [c.id for c in await default_repo.list_all()] == [ours]
        assert {c.id for c in await ConnectionRepository(session, tenant_id=None).list_all()} == {ours, theirs}

    @pytest.mark.asyncio
    async def test_active_only(self, session: AsyncSession) -> None:
        first = await _connection(session)
        second = await _connection(session, "polar")
        repo = ConnectionRepository(session)
        await repo.set_active(first, False)

        assert [c.id for c in await repo.list_all(active_only=True)] == [second]
        assert len(await repo.list_all()) == 2

    @pytest.mark.asyncio
    async def test_set_active_missing(self, session: AsyncSession) -> None:
        assert await ConnectionRepository(session).set_active("missing", False) is None

    @pytest.mark.asyncio
    async def test_mark_synced_then_failed(self, session: AsyncSession) -> None:
        conn_id = await _connection(session)
        repo = ConnectionRepository(session)
        synced_at = datetime(2026, 6, 1, 12, tzinfo=UTC)

        await repo.mark_synced(conn_id, synced_at)
        await repo.mark_failed(conn_id, "stripe: boom")
        row = await repo.get(conn_id)

        assert row is not None
        assert row.last_sync_status == "error"
        assert row.last_sync_error == "stripe: boom"
        # A failure keeps the time of the last success.
        assert as_utc(row.last_synced_at) == synced_at

    @pytest.mark.asyncio
    async def test_delete_keeps_sync_logs(self, session: AsyncSession) -> None:
        conn_id = await _connection(session)
        await SnapshotRepository(session).upsert(_snapshot(conn_id, date(2026, 6, 1), "10"))
        await SyncLogRepository(session).record(conn_id, SyncStatus.SUCCESS, started_at=datetime.now(UTC))

        assert await ConnectionRepository(session).delete(conn_id) is True
        assert await ConnectionRepository(session).get(conn_id) is None
        assert await SnapshotRepository(session).list_for_connection(conn_id) == []
        assert len(await SyncLogRepository(session).list_for_connection(conn_id)) == 1

    @pytest.mark.asyncio
    async def test_delete_missing(self, session: AsyncSession) -> None:
        assert await ConnectionRepository(session).delete("missing") is False


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshotRepository:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, session: AsyncSession) -> None:
        conn_id = await _connection(session)
        repo = SnapshotRepository(session)
        snapshot = _snapshot(conn_id, date(2026, 6, 1), "120", mrr=Decimal("30"), customer_count=2)

        await repo.upsert_many([snapshot])
        await repo.upsert_many([snapshot])

        rows = await repo.list_for_connection(conn_id)
        assert len(rows) == 1
        assert rows[0].revenue == Decimal("120")
        assert rows[0].mrr == Decimal("30")

    @pytest.mark.asyncio
    async def test_revenue_overwritten_not_added(self, session: AsyncSession) -> None:
        conn_id = await _connection(session)
        repo = SnapshotRepository(session)
        await repo.upsert(_snapshot(conn_id, date(2026, 6, 1), "50"))
        await repo.upsert(_snapshot(conn_id, date(2026, 6, 1), "120"))

        [row] = await repo.list_for_connection(conn_id)
        assert row.revenue == Decimal("120")

    @pytest.mark.asyncio
    async def test_older_bucket_keeps_stored_mrr(self, session: AsyncSession) -> None:
        """A re-sync that no longer treats a bucket as newest leaves its MRR alone."""
        conn_id = await _connection(session)
        repo = SnapshotRepository(session)
        await repo.upsert(_snapshot(conn_id, date(2026, 6, 1), "10", mrr=Decimal("40"), arr=Decimal("480")))

        await repo.upsert_many(
            [
                _snapshot(conn_id, date(2026, 6, 1), "15"),
                _snapshot(conn_id, date(2026, 6, 2), "5", mrr=Decimal("45")),
            ]
        )

        first, second = await repo.list_for_connection(conn_id)
        assert first.revenue == Decimal("15")
        assert first.mrr == Decimal("40")
        assert first.arr == Decimal("480")
        assert second.mrr == Decimal("45")

    @pytest.mark.asyncio
    async def test_same_date_different_connections(self, session: AsyncSession) -> None:
        a = await _connection(session)
        b = await _connection(session, "polar")
        repo = SnapshotRepository(session)
        await repo.upsert_many([_snapshot(a, date(2026, 6, 1), "1"), _snapshot(b, date(2026, 6, 1), "2")])

        rows = await repo.list_range([a, b])
        assert [(r.connection_id, r.revenue) for r in rows] == sorted(
            [(a, Decimal("1")), (b, Decimal("2"))]
        )

    @pytest.mark.asyncio
    async def test_list_range_filters(self, session: AsyncSession) -> None:
        conn_id = await _connection(session)
        repo = SnapshotRepository(session)
        await repo.upsert_many(
            [
                _snapshot(conn_id, date(2026, 5, 31), "1"),
                _snapshot(conn_id, date(2026, 6, 1), "2"),
                _snapshot(conn_id, date(2026, 6, 30), "3"),
                _snapshot(conn_id, date(2026, 7, 1), "4"),
            ]
        )
        rows = await repo.list_range([conn_id], start=date(2026, 6, 1), end=date(2026, 6, 30))
        assert [r.date for r in rows] == [date(2026, 6, 1), date(2026, 6, 30)]
        assert await repo.list_range([conn_id], currency="EUR") == []
        assert await repo.list_range([]) == []


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------


class TestSyncLogRepository:
    @pytest.mark.asyncio
    async def test_newest_first_and_limit(self, session: AsyncSession) -> None:
        repo = SyncLogRepository(session)
        started = datetime.now(UTC)
        for index in range(3):
            await repo.record("c1", SyncStatus.SUCCESS, started_at=started, records_processed=index)

        logs = await repo.list_for_connection("c1", limit=2)
        assert [log.records_processed for log in logs] == [2, 1]

    @pytest.mark.asyncio
    async def test_last_success_ignores_errors(self, session: AsyncSession) -> None:
        repo = SyncLogRepository(session)
        assert await repo.last_success_at() is None

        await repo.record("c1", SyncStatus.SUCCESS, started_at=datetime.now(UTC))
        await repo.record("c2", SyncStatus.ERROR, started_at=datetime.now(UTC), error_message="x")

        last = await repo.last_success_at()
        assert last is not None
        assert last.tzinfo is not None
        assert await repo.last_success_at("c2") is None
        attempt = await repo.last_attempt()
        assert attempt is not None
        assert attempt.status == "error"


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class TestAPIKeyRepository:
    @pytest.mark.asyncio
    async def test_create_and_validate(self, session: AsyncSession) -> None:
        repo = APIKeyRepository(session)
        row, plaintext = await repo.create("  exporter  ")

        assert plaintext.startswith("rvk_")
        assert row.name == "exporter"
        assert row.key_hash != plaintext
        assert plaintext[4:12] == row.key_prefix

        validated = await repo.validate_key(plaintext)
        assert validated is not None
        assert validated.last_used_at is not None

    @pytest.mark.asyncio
    async def test_unknown_key(self, session: AsyncSession) -> None:
        assert await APIKeyRepository(session).validate_key("rvk_nope") is None

    @pytest.mark.asyncio
    async def test_expired_key(self, session: AsyncSession) -> None:
        repo = APIKeyRepository(session)
        _, plaintext = await repo.create("old", expires_at=datetime.now(UTC) - timedelta(minutes=1))
        assert await repo.validate_key(plaintext) is None

    @pytest.mark.asyncio
    async def test_revoke(self, session: AsyncSession) -> None:
        repo = APIKeyRepository(session)
        row, plaintext = await repo.create("temp")

        assert await repo.revoke(row.id) is True
        assert await repo.revoke(row.id) is False
        assert await repo.validate_key(plaintext) is None
        assert await repo.list_active() == []

    @pytest.mark.asyncio
    async def test_other_tenant_key_rejected(self, session: AsyncSession) -> None:
        _, plaintext = await APIKeyRepository(session, tenant_id="acme").create("theirs")
        assert await APIKeyRepository(session).validate_key(plaintext) is None


class TestGetSession:
    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        with pytest.raises(RuntimeError):
            async with get_session(session_factory) as session:
                await ConnectionRepository(session).create("stripe", "token")
                raise RuntimeError("abort")

        async with get_session(session_factory) as session:
            assert await ConnectionRepository(session).list_all() == []
