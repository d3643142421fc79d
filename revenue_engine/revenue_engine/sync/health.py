"""Health derivation from sync history.

A deployment is ``degraded`` when its newest successful sync is older than
the staleness threshold.  No sync at all (a fresh install) is ``healthy``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ConnectionHealth(str, Enum):
    """Per-connection label shown in connection listings."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"
    PENDING = "pending"
    INACTIVE = "inactive"


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def is_stale(last_success: datetime | None, *, now: datetime, stale_after: timedelta) -> bool:
    if last_success is None:
        return False
    return _aware(now) - _aware(last_success) > stale_after


def deployment_health(last_success: datetime | None, *, now: datetime, stale_after: timedelta) -> HealthStatus:
    if is_stale(last_success, now=now, stale_after=stale_after):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def connection_health(
    *,
    is_active: bool,
    last_synced_at: datetime | None,
    last_sync_status: str | None,
    now: datetime,
    stale_after: timedelta,
) -> ConnectionHealth:
    """Label one connection from its row's sync bookkeeping."""
    if not is_active:
        return ConnectionHealth.INACTIVE
    if last_synced_at is None:
        return ConnectionHealth.ERROR if last_sync_status == "error" else ConnectionHealth.PENDING
    if is_stale(last_synced_at, now=now, stale_after=stale_after):
        return ConnectionHealth.DEGRADED
    if last_sync_status == "error":
        return ConnectionHealth.ERROR
    return ConnectionHealth.HEALTHY
