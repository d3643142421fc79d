"""FastAPI dependency injection for the service container, sessions, and API keys."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_api.container import ServiceContainer
from revenue_engine.state.repository import APIKeyRepository
from revenue_engine.state.tables import APIKeyTable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Service container
# ---------------------------------------------------------------------------

_container: ServiceContainer | None = None


def init_container(container: ServiceContainer) -> ServiceContainer:
    """Install *container* as the process-wide instance."""
    global _container  # noqa: PLW0603
    _container = container
    return container


async def dispose_container() -> None:
    """Close and forget the process-wide container (call during shutdown)."""
    global _container  # noqa: PLW0603
    if _container is not None:
        await _container.close()
        _container = None


def get_container() -> ServiceContainer:
    """Return the process-wide :class:`ServiceContainer`."""
    if _container is None:
        raise RuntimeError(
            "Service container has not been initialised. Ensure init_container() is called during application startup."
        )
    return _container


ContainerDep = Annotated[ServiceContainer, Depends(get_container)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------


async def get_db_session(container: ContainerDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = container.session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# API key authentication
# ---------------------------------------------------------------------------


async def require_api_key(
    request: Request,
    session: SessionDep,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> APIKeyTable:
    """Resolve the ``X-API-Key`` header to a live key row or fail with 401.

    The key's tenant is stored on ``request.state`` for request logging.
    """
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-Key header")

    row = await APIKeyRepository(session).validate_key(x_api_key)
    if row is None:
        logger.warning("Rejected API key on %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid or expired API key")

    request.state.tenant_id = row.tenant_id
    return row


ApiKeyDep = Annotated[APIKeyTable, Depends(require_api_key)]
