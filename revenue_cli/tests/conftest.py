"""Shared fixtures for CLI tests.

Every command resolves its configuration through ``load_settings``; the
``settings`` fixture points that at a throwaway SQLite file and key path
under ``tmp_path`` so commands that open and close their own container
still see each other's writes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

from revenue_api.container import ServiceContainer
from revenue_engine.config import Settings
from revenue_engine.state.database import get_session
from revenue_engine.state.repository import ConnectionRepository


@pytest.fixture
def settings(tmp_path: Path) -> Iterator[Settings]:
    cfg = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'revenue.db'}",
        encryption_secret="cli-test-secret",
        signing_key_path=tmp_path / "keys" / "signing-key.json",
    )
    with patch("revenue_cli.app.load_settings", return_value=cfg):
        yield cfg


@pytest.fixture
def seed_connection(settings: Settings):
    """Factory storing a connection the way the API would; returns its id."""

    def _seed(provider: str = "stripe", api_key: str = "sk_test_cli") -> str:
        async def _create() -> str:
            container = ServiceContainer(settings)
            try:
                await container.start()
                async with get_session(container.session_factory) as session:
                    row = await ConnectionRepository(session).create(provider, container.vault.encrypt(api_key))
                    return row.id
            finally:
                await container.close()

        return asyncio.run(_create())

    return _seed
