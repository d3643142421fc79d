"""Tests for health derivation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from revenue_engine.sync.health import (
    ConnectionHealth,
    HealthStatus,
    connection_health,
    deployment_health,
    is_stale,
)

NOW = datetime(2026, 6, 15, 12, tzinfo=UTC)
STALE_AFTER = timedelta(hours=48)


class TestDeploymentHealth:
    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (timedelta(hours=1), HealthStatus.HEALTHY),
            (timedelta(hours=48), HealthStatus.HEALTHY),
            (timedelta(hours=48, seconds=1), HealthStatus.DEGRADED),
            (timedelta(days=7), HealthStatus.DEGRADED),
        ],
    )
    def test_threshold(self, age: timedelta, expected: HealthStatus) -> None:
        assert deployment_health(NOW - age, now=NOW, stale_after=STALE_AFTER) == expected

    def test_fresh_install_is_healthy(self) -> None:
        assert deployment_health(None, now=NOW, stale_after=STALE_AFTER) == HealthStatus.HEALTHY

    def test_naive_timestamp_read_as_utc(self) -> None:
        naive = (NOW - timedelta(hours=72)).replace(tzinfo=None)
        assert is_stale(naive, now=NOW, stale_after=STALE_AFTER) is True


class TestConnectionHealth:
    def _health(self, **overrides) -> ConnectionHealth:
        fields = {
            "is_active": True,
            "last_synced_at": NOW - timedelta(hours=1),
            "last_sync_status": "success",
            "now": NOW,
            "stale_after": STALE_AFTER,
        }
        fields.update(overrides)
        return connection_health(**fields)

    def test_healthy(self) -> None:
        assert self._health() == ConnectionHealth.HEALTHY

    def test_inactive_wins(self) -> None:
        assert self._health(is_active=False, last_sync_status="error") == ConnectionHealth.INACTIVE

    def test_never_synced(self) -> None:
        assert self._health(last_synced_at=None, last_sync_status=None) == ConnectionHealth.PENDING

    def test_never_succeeded(self) -> None:
        assert self._health(last_synced_at=None, last_sync_status="error") == ConnectionHealth.ERROR

    def test_stale(self) -> None:
        assert self._health(last_synced_at=NOW - timedelta(days=3)) == ConnectionHealth.DEGRADED

    def test_recent_failure(self) -> None:
        assert self._health(last_sync_status="error") == ConnectionHealth.ERROR
