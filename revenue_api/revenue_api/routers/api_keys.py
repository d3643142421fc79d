"""API key management.

The plaintext key is returned once, at creation.  The first key has to be
issued from the command line (``revenue create-api-key``).
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Response
from pydantic import BaseModel, Field

from revenue_api.dependencies import ApiKeyDep, SessionDep
from revenue_engine.errors import NotFoundError
from revenue_engine.state.repository import APIKeyRepository, as_utc
from revenue_engine.state.tables import APIKeyTable

router = APIRouter(prefix="/api-keys", tags=["api-keys"])


class CreateAPIKeyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    expires_in_days: int | None = Field(None, ge=1, le=3650)


def _key_view(row: APIKeyTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "key_prefix": row.key_prefix,
        "created_at": as_utc(row.created_at),
        "expires_at": as_utc(row.expires_at),
        "last_used_at": as_utc(row.last_used_at),
    }


@router.post("", status_code=201)
async def create_api_key(
    body: CreateAPIKeyRequest,
    session: SessionDep,
    api_key: ApiKeyDep,
) -> dict[str, Any]:
    expires_at = None
    if body.expires_in_days is not None:
        expires_at = datetime.now(UTC) + timedelta(days=body.expires_in_days)
    row, plaintext = await APIKeyRepository(session, tenant_id=api_key.tenant_id).create(
        body.name, expires_at=expires_at
    )
    return {**_key_view(row), "api_key": plaintext}


@router.get("")
async def list_api_keys(session: SessionDep, api_key: ApiKeyDep) -> list[dict[str, Any]]:
    rows = await APIKeyRepository(session, tenant_id=api_key.tenant_id).list_active()
    return [_key_view(row) for row in rows]


@router.delete("/{key_id}", status_code=204)
async def revoke_api_key(key_id: str, session: SessionDep, api_key: ApiKeyDep) -> Response:
    if not await APIKeyRepository(session, tenant_id=api_key.tenant_id).revoke(key_id):
        raise NotFoundError(f"API key {key_id} not found")
    return Response(status_code=204)
