"""Revenue export and derived-metrics endpoints.

``POST /revenue`` returns a bare JSON array of data points.
``POST /revenue/signed`` returns the same array canonicalised and wrapped in
a signed payload; if the signing key is unavailable only the signed path
fails (503) and the unsigned export keeps working.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Query
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_api.dependencies import ApiKeyDep, ContainerDep, SessionDep
from revenue_engine.config import normalize_currency
from revenue_engine.errors import NotFoundError, ValidationError
from revenue_engine.metrics import arpu, churn_rate, current_metrics, mrr_growth_rate, regroup_snapshots
from revenue_engine.models import Interval, RevenueDataPoint
from revenue_engine.state.repository import ConnectionRepository, SnapshotRepository
from revenue_engine.state.tables import RevenueSnapshotTable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/revenue", tags=["revenue"])


class RevenueExportRequest(BaseModel):
    """Date range and bucket size for an export.  Both bounds are inclusive."""

    model_config = ConfigDict(populate_by_name=True)

    start_date: date = Field(..., validation_alias=AliasChoices("start_date", "startDate"))
    end_date: date = Field(..., validation_alias=AliasChoices("end_date", "endDate"))
    interval: Interval = Interval.MONTHLY
    currency: str | None = None
    connection_id: str | None = None


def _check_currency(currency: str | None) -> str | None:
    return normalize_currency(currency) if currency is not None else None


async def _tenant_snapshots(
    session: AsyncSession,
    tenant_id: str,
    *,
    connection_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    currency: str | None = None,
) -> list[RevenueSnapshotTable]:
    connections = await ConnectionRepository(session, tenant_id=tenant_id).list_all()
    ids = [c.id for c in connections if connection_id is None or c.id == connection_id]
    if connection_id is not None and not ids:
        raise NotFoundError(f"Connection {connection_id} not found")
    return await SnapshotRepository(session).list_range(ids, start=start, end=end, currency=currency)


async def _export(session: AsyncSession, tenant_id: str, body: RevenueExportRequest) -> list[RevenueDataPoint]:
    if body.start_date > body.end_date:
        raise ValidationError(f"start_date ({body.start_date}) must be on or before end_date ({body.end_date})")
    rows = await _tenant_snapshots(
        session,
        tenant_id,
        connection_id=body.connection_id,
        start=body.start_date,
        end=body.end_date,
        currency=_check_currency(body.currency),
    )
    return regroup_snapshots(rows, body.interval)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@router.post("")
async def export_revenue(
    body: RevenueExportRequest,
    session: SessionDep,
    api_key: ApiKeyDep,
) -> list[dict[str, Any]]:
    """Unsigned export: a JSON array of revenue data points."""
    points = await _export(session, api_key.tenant_id, body)
    return [point.model_dump(mode="json") for point in points]


@router.post("/signed")
async def export_signed_revenue(
    body: RevenueExportRequest,
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
) -> dict[str, Any]:
    """Signed export: ``{data, signature, public_key, timestamp, version}``."""
    points = await _export(session, api_key.tenant_id, body)
    signed = container.signing.sign([point.model_dump(mode="json") for point in points])
    logger.info("Signed export of %d point(s) for tenant %s", len(points), api_key.tenant_id)
    return signed.model_dump()


# ---------------------------------------------------------------------------
# Derived metrics
# ---------------------------------------------------------------------------


@router.get("/current")
async def get_current_metrics(
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
    currency: str | None = Query(None, description="Defaults to the configured currency."),
) -> dict[str, Any]:
    """Current MRR, ARR, 30-day revenue and customer count from stored snapshots."""
    code = _check_currency(currency) or container.settings.default_currency
    rows = await _tenant_snapshots(session, api_key.tenant_id, currency=code)
    metrics = current_metrics(rows, code, today=datetime.now(UTC).date())
    return {
        "mrr": float(metrics.mrr),
        "arr": float(metrics.arr),
        "total_revenue": float(metrics.total_revenue),
        "customer_count": metrics.customer_count,
        "arpu": float(arpu(metrics.mrr, metrics.customer_count)),
        "currency": code,
    }


@router.get("/growth")
async def get_growth(
    session: SessionDep,
    container: ContainerDep,
    api_key: ApiKeyDep,
    currency: str | None = Query(None),
) -> dict[str, Any]:
    """Month-over-month MRR growth and net customer decline."""
    code = _check_currency(currency) or container.settings.default_currency
    rows = await _tenant_snapshots(session, api_key.tenant_id, currency=code)
    today = datetime.now(UTC).date()
    previous_month_end = today.replace(day=1) - timedelta(days=1)

    now = current_metrics(rows, code, today=today)
    before = current_metrics(rows, code, today=previous_month_end)
    lost = max(0, before.customer_count - now.customer_count)
    return {
        "currency": code,
        "mrr": float(now.mrr),
        "previous_mrr": float(before.mrr),
        "growth_rate": mrr_growth_rate(rows, code, today=today),
        "churn_rate": churn_rate(lost, before.customer_count),
    }
