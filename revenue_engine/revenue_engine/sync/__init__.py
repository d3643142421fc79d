"""Sync orchestration and health derivation."""

from revenue_engine.sync.health import ConnectionHealth, HealthStatus, connection_health, deployment_health
from revenue_engine.sync.orchestrator import SyncOrchestrator, summarize

__all__ = [
    "ConnectionHealth",
    "HealthStatus",
    "SyncOrchestrator",
    "connection_health",
    "deployment_health",
    "summarize",
]
