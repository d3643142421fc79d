"""Sync orchestrator: per-connection, failure-isolated revenue ingestion.

One sync of one connection runs::

    decrypt credentials -> select adapter -> fetch revenue (lookback window)
    -> fetch current metrics -> normalize -> upsert snapshots (oldest first)
    -> mark connection synced -> append success SyncLog

Snapshots, the connection update and the success log are committed in one
transaction.  Any exception on the way is caught at the connection
boundary and written, in a fresh transaction, as an ``error`` SyncLog plus
``last_sync_status`` / ``last_sync_error`` on the connection.  A failed
connection is not retried until the next pass.  A connection that is gone
or inactive by the time its turn comes gets an ``error`` SyncLog without
its provider being called.

INVARIANT: a connection is never synced concurrently with itself.  A
per-connection lock is held for the whole sync; a second request while it
is held returns ``SyncStatus.SKIPPED`` immediately.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revenue_engine.errors import CredentialError, ProviderError
from revenue_engine.models import DateRange, Interval, ProviderConfig, SyncResult, SyncStatus
from revenue_engine.normalizer import RevenueNormalizer, dominant_currency
from revenue_engine.providers import create_adapter
from revenue_engine.providers.base import ProviderAdapter
from revenue_engine.state.database import get_session
from revenue_engine.state.repository import ConnectionRepository, SnapshotRepository, SyncLogRepository
from revenue_engine.state.tables import ConnectionTable
from revenue_engine.vault import CredentialVault

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., ProviderAdapter]
# Called after every attempt with (provider, result, duration_seconds).
ResultHook = Callable[[str, SyncResult, float], None]


class SyncOrchestrator:
    """Drives syncs for stored connections.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each sync step opens.
    vault:
        Credential vault used to decrypt connection credentials.
    adapter_factory:
        Builds a provider adapter; defaults to the provider registry.
    normalizer:
        Bucketing normalizer; its interval decides snapshot granularity.
    lookback_days:
        Size of the revenue window fetched on every sync.
    currency:
        Fallback currency label for processors that omit one.
    http_client:
        Shared HTTP client handed to adapters.
    provider_timeout:
        Timeout for adapters that create their own client.
    on_result:
        Optional observer, used for metrics.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        *,
        adapter_factory: AdapterFactory = create_adapter,
        normalizer: RevenueNormalizer | None = None,
        lookback_days: int = 90,
        currency: str = "USD",
        http_client: httpx.AsyncClient | None = None,
        provider_timeout: float = 30.0,
        on_result: ResultHook | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._adapter_factory = adapter_factory
        self._normalizer = normalizer or RevenueNormalizer(Interval.DAILY)
        self._lookback = timedelta(days=lookback_days)
        self._currency = currency
        self._http_client = http_client
        self._provider_timeout = provider_timeout
        self._on_result = on_result
        self._locks: dict[str, asyncio.Lock] = {}

    def is_running(self, connection_id: str) -> bool:
        lock = self._locks.get(connection_id)
        return lock is not None and lock.locked()

    # -- Passes --------------------------------------------------------------

    async def run_pass(self) -> list[SyncResult]:
        """Sync every active connection, one at a time.

        A connection whose sync raises is recorded as an error result and
        the pass moves on to the next one.
        """
        async with get_session(self._session_factory) as session:
            connections = await ConnectionRepository(session, tenant_id=None).list_all(active_only=True)
            connection_ids = [conn.id for conn in connections]

        logger.info("Sync pass started for %d active connection(s)", len(connection_ids))
        results: list[SyncResult] = []
        for connection_id in connection_ids:
            try:
                result = await self.sync_connection(connection_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Sync of connection %s aborted", connection_id)
                result = SyncResult(
                    connection_id=connection_id,
                    status=SyncStatus.ERROR,
                    error=f"{type(exc).__name__}: {exc}",
                )
            results.append(result)

        failed = sum(1 for r in results if r.status == SyncStatus.ERROR)
        logger.info(
            "Sync pass finished: %d succeeded, %d failed, %d skipped",
            sum(1 for r in results if r.status == SyncStatus.SUCCESS),
            failed,
            sum(1 for r in results if r.status == SyncStatus.SKIPPED),
        )
        return results

    async def sync_connection(self, connection_id: str) -> SyncResult:
        """Sync one connection unless a sync of it is already running.

        A connection that no longer exists or is inactive yields an
        ``error`` result and a SyncLog row; its provider is never called.
        """
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        if lock.locked():
            logger.info("Connection %s is already syncing; skipped", connection_id)
            return SyncResult(connection_id=connection_id, status=SyncStatus.SKIPPED)
        try:
            async with lock:
                return await self._sync_locked(connection_id)
        finally:
            # Callers never queue on these locks; a released one is unused.
            if not lock.locked() and self._locks.get(connection_id) is lock:
                del self._locks[connection_id]

    # -- One connection ------------------------------------------------------

    async def _sync_locked(self, connection_id: str) -> SyncResult:
        started_at = datetime.now(UTC)
        clock = time.monotonic()

        async with get_session(self._session_factory) as session:
            connection = await ConnectionRepository(session, tenant_id=None).get(connection_id)

        if connection is None:
            logger.warning("Connection %s not found; sync not attempted", connection_id)
            return await self._record_failure(connection_id, None, started_at, f"Connection {connection_id} not found")
        provider = connection.provider
        if not connection.is_active:
            logger.info("Connection %s is inactive; sync not attempted", connection_id)
            return await self._record_failure(
                connection_id, provider, started_at, "Connection is inactive", mark_connection=False
            )

        try:
            written = await self._ingest(connection, started_at)
        except asyncio.CancelledError:
            raise
        except (CredentialError, ProviderError) as exc:
            logger.warning("Sync of %s connection %s failed: %s", provider, connection_id, exc)
            result = await self._record_failure(connection_id, provider, started_at, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error syncing %s connection %s", provider, connection_id)
            result = await self._record_failure(connection_id, provider, started_at, f"{type(exc).__name__}: {exc}")
        else:
            logger.info("Synced %s connection %s: %d snapshot(s)", provider, connection_id, written)
            result = SyncResult(connection_id=connection_id, status=SyncStatus.SUCCESS, records_processed=written)

        if self._on_result is not None:
            self._on_result(provider, result, time.monotonic() - clock)
        return result

    def _provider_config(self, connection: ConnectionTable) -> ProviderConfig:
        """Decrypt the connection's credentials; they live only for this sync."""
        try:
            return ProviderConfig(
                api_key=self._vault.decrypt(connection.encrypted_api_key),
                api_secret=self._vault.decrypt_optional(connection.encrypted_secret),
                webhook_secret=self._vault.decrypt_optional(connection.encrypted_webhook_secret),
                environment=connection.environment,
            )
        except CredentialError:
            raise
        except ValueError as exc:
            raise CredentialError(f"Stored credentials are invalid: {exc}") from exc

    async def _ingest(self, connection: ConnectionTable, started_at: datetime) -> int:
        config = self._provider_config(connection)
        adapter = self._adapter_factory(
            connection.provider,
            config,
            http_client=self._http_client,
            timeout=self._provider_timeout,
        )
        window = DateRange(start=started_at - self._lookback, end=started_at)
        try:
            points = await adapter.fetch_revenue(window, self._normalizer.interval, self._currency)
            metrics_currency = dominant_currency(points, self._currency)
            metrics = await adapter.fetch_current_metrics(metrics_currency)
        finally:
            await adapter.aclose()

        snapshots = self._normalizer.normalize(connection.id, points, metrics, currency=metrics_currency)

        async with get_session(self._session_factory) as session:
            written = await SnapshotRepository(session).upsert_many(snapshots)
            await ConnectionRepository(session, tenant_id=None).mark_synced(connection.id, datetime.now(UTC))
            await SyncLogRepository(session).record(
                connection.id,
                SyncStatus.SUCCESS,
                started_at=started_at,
                records_processed=written,
                provider=connection.provider,
            )
        return written

    async def _record_failure(
        self,
        connection_id: str,
        provider: str | None,
        started_at: datetime,
        message: str,
        *,
        mark_connection: bool = True,
    ) -> SyncResult:
        async with get_session(self._session_factory) as session:
            await SyncLogRepository(session).record(
                connection_id,
                SyncStatus.ERROR,
                started_at=started_at,
                error_message=message,
                provider=provider,
            )
            if mark_connection:
                await ConnectionRepository(session, tenant_id=None).mark_failed(connection_id, message)
        return SyncResult(connection_id=connection_id, status=SyncStatus.ERROR, error=message)


def summarize(results: list[SyncResult]) -> dict[str, Any]:
    """Counts per status, for CLI and API responses."""
    summary: dict[str, Any] = {status.value: 0 for status in SyncStatus}
    for result in results:
        summary[result.status.value] += 1
    summary["total"] = len(results)
    return summary
