"""Public, unauthenticated revenue statistics."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Query

from revenue_api.dependencies import ContainerDep, SessionDep
from revenue_engine.config import normalize_currency
from revenue_engine.metrics import current_metrics, monthly_chart, mrr_growth_rate
from revenue_engine.state.repository import ConnectionRepository, SnapshotRepository

router = APIRouter(tags=["stats"])


@router.get("/stats")
async def public_stats(
    session: SessionDep,
    container: ContainerDep,
    currency: str | None = Query(None),
    months: int = Query(12, ge=1, le=36),
) -> dict[str, Any]:
    """Aggregated current metrics across active connections plus a monthly chart."""
    code = normalize_currency(currency or container.settings.default_currency)

    connections = await ConnectionRepository(session, tenant_id=None).list_all(active_only=True)
    rows = await SnapshotRepository(session).list_range([c.id for c in connections], currency=code)
    today = datetime.now(UTC).date()
    metrics = current_metrics(rows, code, today=today)
    return {
        "mrr": float(metrics.mrr),
        "arr": float(metrics.arr),
        "total_revenue": float(metrics.total_revenue),
        "customer_count": metrics.customer_count,
        "growth_rate": mrr_growth_rate(rows, code, today=today),
        "currency": code,
        "chart": monthly_chart(rows, code, today=today, months=months),
    }
