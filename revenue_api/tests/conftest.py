"""Shared fixtures for revenue API tests.

Every test gets a real :class:`ServiceContainer` over an in-memory SQLite
database (scheduler disabled, signing key in a temp dir), injected into the
app through ``dependency_overrides``, plus an ``httpx.AsyncClient`` bound to
the ASGI app and a freshly issued API key.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from revenue_api.config import APISettings
from revenue_api.container import ServiceContainer
from revenue_api.dependencies import get_container
from revenue_api.main import create_app
from revenue_engine.config import Settings
from revenue_engine.models import RevenueSnapshot
from revenue_engine.state.database import get_session
from revenue_engine.state.repository import APIKeyRepository, ConnectionRepository, SnapshotRepository

# ---------------------------------------------------------------------------
# Container and app
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        encryption_secret="test-secret-for-revenue-api-tests",
        signing_key_path=tmp_path / "signing-key.json",
        default_currency="USD",
    )


@pytest_asyncio.fixture()
async def container(test_settings: Settings) -> AsyncGenerator[ServiceContainer, None]:
    svc = ServiceContainer(test_settings, APISettings(scheduler_enabled=False))
    await svc.start()
    yield svc
    await svc.close()


@pytest.fixture()
def app(container: ServiceContainer):
    """Create a FastAPI app wired to the test container."""
    application = create_app()
    application.dependency_overrides[get_container] = lambda: container
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client talking to the app in-process."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def api_key(container: ServiceContainer) -> str:
    """Plaintext of a live API key for the default tenant."""
    async with get_session(container.session_factory) as session:
        _, plaintext = await APIKeyRepository(session).create("test key")
    return plaintext


@pytest.fixture()
def auth_headers(api_key: str) -> dict[str, str]:
    return {"X-API-Key": api_key}


@pytest.fixture()
def make_connection(container: ServiceContainer):
    """Factory storing a connection with vault-encrypted credentials."""

    async def _make(provider: str = "stripe", api_key: str = "sk_test") -> str:
        async with get_session(container.session_factory) as session:
            row = await ConnectionRepository(session).create(provider, container.vault.encrypt(api_key))
            return row.id

    return _make


@pytest.fixture()
def add_snapshots(container: ServiceContainer):
    """Factory storing ``(date, revenue, mrr)`` snapshots for a connection."""

    async def _add(connection_id: str, *rows: tuple[date, str, str | None]) -> None:
        async with get_session(container.session_factory) as session:
            await SnapshotRepository(session).upsert_many(
                RevenueSnapshot(
                    connection_id=connection_id,
                    date=day,
                    revenue=Decimal(revenue),
                    mrr=Decimal(mrr) if mrr is not None else None,
                    currency="USD",
                )
                for day, revenue, mrr in rows
            )

    return _add
