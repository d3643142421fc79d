"""API router for processor connections.

Creating a connection validates the credentials against the processor
before anything is stored; credentials are then encrypted with the
credential vault and never returned by any endpoint.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Literal

from fastapi import APIRouter, Query, Response
from pydantic import AliasChoices, BaseModel, Field, SecretStr

from revenue_api.container import ServiceContainer
from revenue_api.dependencies import ApiKeyDep, ContainerDep, SessionDep
from revenue_engine.errors import NotFoundError, ValidationError
from revenue_engine.models import Provider, ProviderConfig
from revenue_engine.providers import create_adapter
from revenue_engine.state.repository import ConnectionRepository, SyncLogRepository, as_utc
from revenue_engine.state.tables import ConnectionTable, SyncLogTable
from revenue_engine.sync import connection_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateConnectionRequest(BaseModel):
    """Request body for connecting a payment processor."""

    provider: Provider
    api_key: SecretStr = Field(..., description="Processor API key or access token.")
    api_secret: SecretStr | None = Field(
        None,
        validation_alias=AliasChoices("api_secret", "vendor_id", "client_secret"),
        description="Secondary credential: Paddle vendor id or PayPal client secret.",
    )
    webhook_secret: SecretStr | None = Field(None, description="Webhook signing secret (PayPal: webhook id).")
    environment: Literal["live", "sandbox"] = "live"


class UpdateConnectionRequest(BaseModel):
    is_active: bool


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _connection_view(row: ConnectionTable, container: ServiceContainer) -> dict[str, Any]:
    """Non-secret fields of a connection plus its health label."""
    last_synced_at = as_utc(row.last_synced_at)
    health = connection_health(
        is_active=row.is_active,
        last_synced_at=last_synced_at,
        last_sync_status=row.last_sync_status,
        now=datetime.now(UTC),
        stale_after=container.stale_after,
    )
    return {
        "id": row.id,
        "provider": row.provider,
        "environment": row.environment,
        "is_active": row.is_active,
        "created_at": as_utc(row.created_at),
        "last_synced_at": last_synced_at,
        "last_sync_status": row.last_sync_status,
        "last_sync_error": row.last_sync_error,
        "health": health.value,
    }


def _sync_log_view(row: SyncLogTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "connection_id": row.connection_id,
        "provider": row.provider,
        "status": row.status,
        "records_processed": row.records_processed,
        "error_message": row.error_message,
        "started_at": as_utc(row.started_at),
        "completed_at": as_utc(row.completed_at),
    }


async def _get_or_404(repo: ConnectionRepository, connection_id: str) -> ConnectionTable:
    row = await repo.get(connection_id)
    if row is None:
        raise NotFoundError(f"Connection {connection_id} not found")
    return row


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_connection(
    body: CreateConnectionRequest,
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
) -> dict[str, Any]:
    """Validate credentials with the processor, then store them encrypted."""
    if not body.api_key.get_secret_value().strip():
        raise ValidationError("api_key must not be empty")
    config = ProviderConfig(
        api_key=body.api_key,
        api_secret=body.api_secret,
        webhook_secret=body.webhook_secret,
        environment=body.environment,
    )
    adapter = create_adapter(
        body.provider,
        config,
        http_client=container.http_client,
        timeout=container.settings.provider_timeout,
    )
    try:
        result = await adapter.validate_credentials()
    finally:
        await adapter.aclose()
    if not result.valid:
        raise ValidationError(f"Invalid {body.provider.value} credentials: {result.error}")

    vault = container.vault
    row = await ConnectionRepository(session, tenant_id=api_key.tenant_id).create(
        body.provider.value,
        vault.encrypt(body.api_key.get_secret_value()),
        encrypted_secret=vault.encrypt_optional(body.api_secret.get_secret_value() if body.api_secret else None),
        encrypted_webhook_secret=vault.encrypt_optional(
            body.webhook_secret.get_secret_value() if body.webhook_secret else None
        ),
        environment=body.environment,
    )
    return {
        "id": row.id,
        "provider": row.provider,
        "is_active": row.is_active,
        "created_at": as_utc(row.created_at),
    }


@router.get("")
async def list_connections(
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
) -> list[dict[str, Any]]:
    """List connections, oldest first."""
    rows = await ConnectionRepository(session, tenant_id=api_key.tenant_id).list_all()
    return [_connection_view(row, container) for row in rows]


@router.get("/{connection_id}")
async def get_connection(
    connection_id: str,
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
) -> dict[str, Any]:
    repo = ConnectionRepository(session, tenant_id=api_key.tenant_id)
    return _connection_view(await _get_or_404(repo, connection_id), container)


@router.patch("/{connection_id}")
async def update_connection(
    connection_id: str,
    body: UpdateConnectionRequest,
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
) -> dict[str, Any]:
    """Enable or disable scheduled syncs for a connection."""
    row = await ConnectionRepository(session, tenant_id=api_key.tenant_id).set_active(connection_id, body.is_active)
    if row is None:
        raise NotFoundError(f"Connection {connection_id} not found")
    logger.info("Connection %s %s", connection_id, "enabled" if body.is_active else "disabled")
    return _connection_view(row, container)


@router.delete("/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: str,
    session: SessionDep,
    api_key: ApiKeyDep,
) -> Response:
    """Delete a connection and its snapshots; its sync history is kept."""
    if not await ConnectionRepository(session, tenant_id=api_key.tenant_id).delete(connection_id):
        raise NotFoundError(f"Connection {connection_id} not found")
    return Response(status_code=204)


@router.post("/{connection_id}/sync")
async def sync_connection(
    connection_id: str,
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
) -> dict[str, Any]:
    """Sync one connection now.

    Returns ``status: skipped`` when a sync of the same connection is
    already running.
    """
    await _get_or_404(ConnectionRepository(session, tenant_id=api_key.tenant_id), connection_id)
    # The sync writes through its own sessions; release this one first.
    await session.commit()
    result = await container.orchestrator.sync_connection(connection_id)
    return result.model_dump(mode="json")


@router.get("/{connection_id}/sync-logs")
async def list_sync_logs(
    connection_id: str,
    session: SessionDep,
    api_key: ApiKeyDep,
    limit: int = Query(50, ge=1, le=500),
) -> list[dict[str, Any]]:
    """Sync attempts for a connection, newest first."""
    await _get_or_404(ConnectionRepository(session, tenant_id=api_key.tenant_id), connection_id)
    rows = await SyncLogRepository(session).list_for_connection(connection_id, limit=limit)
    return [_sync_log_view(row) for row in rows]
