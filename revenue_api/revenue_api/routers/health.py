"""Deployment health endpoint.

``status`` is ``degraded`` when the newest successful sync is older than the
staleness threshold, even though the process is up.  A deployment that has
never synced is ``healthy``.  If the sync history cannot be read the
endpoint answers 503 ``unhealthy``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from revenue_api import __version__
from revenue_api.dependencies import ContainerDep
from revenue_engine.state.database import get_session
from revenue_engine.state.repository import SyncLogRepository
from revenue_engine.sync import HealthStatus, deployment_health

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(container: ContainerDep) -> JSONResponse:
    """Return ``{status, uptime, last_sync}`` plus a message when not healthy."""
    try:
        async with get_session(container.session_factory) as session:
            last_sync = await SyncLogRepository(session).last_success_at()
    except Exception as exc:
        logger.warning("Health check could not read sync history: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=503,
            content={
                "status": HealthStatus.UNHEALTHY.value,
                "uptime": container.uptime_seconds(),
                "last_sync": None,
                "message": "Sync history unavailable",
            },
        )

    status = deployment_health(last_sync, now=datetime.now(UTC), stale_after=container.stale_after)
    content: dict[str, Any] = {
        "status": status.value,
        "uptime": container.uptime_seconds(),
        "last_sync": last_sync.isoformat() if last_sync else None,
        "version": __version__,
    }
    if status == HealthStatus.DEGRADED:
        content["message"] = "Data sync is overdue"
    return JSONResponse(status_code=200, content=content)
