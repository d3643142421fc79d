"""Process-wide services with an explicit startup / shutdown lifecycle.

The container owns everything that must exist exactly once per process:
the database engine, the credential vault, the signing service, the shared
HTTP client for processor APIs, the sync orchestrator, and the background
scheduler.  It is built once in the application lifespan (or by the CLI)
and torn down on shutdown.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from revenue_api.config import APISettings
from revenue_api.middleware.prometheus import record_sync_result
from revenue_api.services.sync_scheduler import SyncScheduler
from revenue_engine.config import Settings
from revenue_engine.models import Interval
from revenue_engine.normalizer import RevenueNormalizer
from revenue_engine.signing import SigningService
from revenue_engine.state.database import get_engine, get_session_factory
from revenue_engine.state.sqlite_adapter import create_local_tables
from revenue_engine.sync import SyncOrchestrator
from revenue_engine.vault import CredentialVault

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Holds the long-lived services shared by routers, scheduler and CLI.

    Parameters
    ----------
    settings:
        Engine settings.
    api_settings:
        HTTP-layer settings; ``None`` when used outside the API (CLI),
        in which case no scheduler is created.
    engine:
        Optional pre-built engine, mainly for tests.
    """

    def __init__(
        self,
        settings: Settings,
        api_settings: APISettings | None = None,
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.settings = settings
        self.api_settings = api_settings
        self.engine = engine or get_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        self.session_factory: async_sessionmaker[AsyncSession] = get_session_factory(self.engine)
        self.vault = CredentialVault(settings.encryption_secret.get_secret_value())
        signing_secret = settings.signing_private_key.get_secret_value() if settings.signing_private_key else None
        self.signing = SigningService(signing_secret, settings.signing_key_path)
        self.http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.provider_timeout))
        self.orchestrator = SyncOrchestrator(
            self.session_factory,
            self.vault,
            normalizer=RevenueNormalizer(Interval(settings.sync_interval)),
            lookback_days=settings.sync_lookback_days,
            currency=settings.default_currency,
            http_client=self.http_client,
            provider_timeout=settings.provider_timeout,
            on_result=record_sync_result,
        )
        self.scheduler: SyncScheduler | None = None
        if api_settings is not None and api_settings.scheduler_enabled:
            self.scheduler = SyncScheduler(
                self.orchestrator,
                interval_seconds=settings.sync_interval_hours * 3600,
                initial_delay_seconds=settings.sync_initial_delay_seconds,
                shutdown_grace_seconds=api_settings.shutdown_grace_seconds,
            )
        self._started_at = time.monotonic()

    @property
    def is_local(self) -> bool:
        return self.settings.database_url.startswith("sqlite")

    @property
    def stale_after(self) -> timedelta:
        return timedelta(hours=self.settings.stale_after_hours)

    def uptime_seconds(self) -> float:
        return round(time.monotonic() - self._started_at, 3)

    async def start(self) -> None:
        """Ensure local tables and start the scheduler.

        The signing key is not touched here; it is materialized on first use.
        """
        if self.is_local:
            await create_local_tables(self.engine)
        if self.scheduler is not None:
            await self.scheduler.start()
        logger.info(
            "Service container started (%s database, scheduler %s)",
            "local SQLite" if self.is_local else "postgres",
            "enabled" if self.scheduler is not None else "disabled",
        )

    async def close(self) -> None:
        """Stop the scheduler, close the HTTP client, dispose the engine."""
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("Service container closed")
