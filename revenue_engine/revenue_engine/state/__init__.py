"""State persistence layer (PostgreSQL or SQLite)."""

from revenue_engine.state.database import get_engine, get_session, get_session_factory
from revenue_engine.state.repository import (
    APIKeyRepository,
    ConnectionRepository,
    SnapshotRepository,
    SyncLogRepository,
)

__all__ = [
    "APIKeyRepository",
    "ConnectionRepository",
    "SnapshotRepository",
    "SyncLogRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
