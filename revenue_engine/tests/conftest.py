"""Shared fixtures for revenue engine tests.

Provides an in-memory SQLite engine with the full schema, a session
factory bound to it, and a credential vault with a fixed test secret.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from revenue_engine.models import DateRange
from revenue_engine.state.database import get_session_factory
from revenue_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from revenue_engine.vault import CredentialVault

_TEST_SECRET = "test-secret-for-revenue-engine-tests"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine; every session shares the one connection."""
    eng = get_local_engine(":memory:")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(_TEST_SECRET)


@pytest.fixture
def june_range() -> DateRange:
    """1-30 June 2026, whole days in UTC."""
    return DateRange(
        start=datetime(2026, 6, 1, tzinfo=UTC),
        end=datetime(2026, 6, 30, 23, 59, 59, tzinfo=UTC),
    )
