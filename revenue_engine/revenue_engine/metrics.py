"""Derived queries over stored snapshots.

Processors only report current-state figures, so everything historical
(growth rate, chart series, exports at coarser intervals) is computed here
from the rows the sync orchestrator has persisted.

MRR is only stored on the newest bucket of each sync.  Wherever a value is
needed for a period, the newest MRR observed on or before the end of that
period is carried forward, per connection.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable, Sequence
from datetime import date, timedelta
from decimal import Decimal
from typing import Protocol

from revenue_engine.models import CurrentMetrics, Interval, RevenueDataPoint
from revenue_engine.normalizer import bucket_date, quantize_money
from revenue_engine.providers.base import RECENT_REVENUE_DAYS


class SnapshotLike(Protocol):
    connection_id: str
    date: date
    revenue: Decimal
    mrr: Decimal | None
    customer_count: int | None
    currency: str


# ---------------------------------------------------------------------------
# Scalar metrics
# ---------------------------------------------------------------------------


def growth_rate(current: Decimal, previous: Decimal) -> float:
    """Percentage change from *previous* to *current*.

    ``100.0`` when growing from zero, ``0.0`` when both are zero.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round(float((current - previous) / previous * 100), 2)


def arpu(mrr: Decimal, customers: int) -> Decimal:
    """Average revenue per user; zero without customers."""
    if customers <= 0:
        return Decimal("0.00")
    return quantize_money(mrr / customers)


def churn_rate(customers_lost: int, customers_at_start: int) -> float:
    """Share of starting customers lost over a period, in percent."""
    if customers_at_start <= 0:
        return 0.0
    return round(customers_lost / customers_at_start * 100, 2)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _by_connection(rows: Iterable[SnapshotLike]) -> dict[str, list[SnapshotLike]]:
    grouped: dict[str, list[SnapshotLike]] = {}
    for row in rows:
        grouped.setdefault(row.connection_id, []).append(row)
    for series in grouped.values():
        series.sort(key=lambda r: r.date)
    return grouped


def _latest_with(
    series: Sequence[SnapshotLike],
    field: str,
    *,
    on_or_before: date | None = None,
) -> SnapshotLike | None:
    for row in reversed(series):
        if on_or_before is not None and row.date > on_or_before:
            continue
        if getattr(row, field) is not None:
            return row
    return None


def _month_end(month_start: date) -> date:
    return month_start.replace(day=calendar.monthrange(month_start.year, month_start.month)[1])


def _shift_month(month_start: date, months: int) -> date:
    index = month_start.year * 12 + month_start.month - 1 + months
    return date(index // 12, index % 12 + 1, 1)


# ---------------------------------------------------------------------------
# Export regrouping
# ---------------------------------------------------------------------------


def regroup_snapshots(rows: Iterable[SnapshotLike], interval: Interval) -> list[RevenueDataPoint]:
    """Regroup stored snapshots into *interval* buckets for export.

    Per connection, revenue is summed per bucket, MRR is taken from the
    newest row in the bucket that carries one, and customer count is the
    bucket maximum.  Connections are then summed per ``(bucket, currency)``;
    amounts in different currencies are never combined.
    """
    totals: dict[tuple[date, str], dict[str, Decimal | int | None]] = {}
    for series in _by_connection(rows).values():
        buckets: dict[tuple[date, str], list[SnapshotLike]] = {}
        for row in series:
            buckets.setdefault((bucket_date(row.date, interval), row.currency), []).append(row)

        for key, members in buckets.items():
            revenue = sum((Decimal(m.revenue) for m in members), Decimal("0"))
            mrr_row = _latest_with(members, "mrr")
            counts = [m.customer_count for m in members if m.customer_count is not None]

            entry = totals.setdefault(key, {"revenue": Decimal("0"), "mrr": None, "customers": None})
            entry["revenue"] = Decimal(entry["revenue"] or 0) + revenue
            if mrr_row is not None:
                entry["mrr"] = Decimal(entry["mrr"] or 0) + Decimal(mrr_row.mrr or 0)
            if counts:
                entry["customers"] = int(entry["customers"] or 0) + max(counts)

    return [
        RevenueDataPoint(
            date=bucket,
            revenue=float(quantize_money(Decimal(entry["revenue"] or 0))),
            mrr=float(quantize_money(Decimal(entry["mrr"]))) if entry["mrr"] is not None else None,
            customer_count=int(entry["customers"]) if entry["customers"] is not None else None,
            currency=currency,
        )
        for (bucket, currency), entry in sorted(totals.items())
    ]


# ---------------------------------------------------------------------------
# Current metrics and chart
# ---------------------------------------------------------------------------


def current_metrics(rows: Iterable[SnapshotLike], currency: str, *, today: date) -> CurrentMetrics:
    """Current MRR / ARR / customers from the newest stored values per connection.

    ``total_revenue`` sums revenue over the last 30 days.
    """
    window_start = today - timedelta(days=RECENT_REVENUE_DAYS)
    mrr = Decimal("0")
    customers = 0
    total = Decimal("0")
    for series in _by_connection(r for r in rows if r.currency == currency).values():
        mrr_row = _latest_with(series, "mrr", on_or_before=today)
        if mrr_row is not None:
            mrr += Decimal(mrr_row.mrr or 0)
        count_row = _latest_with(series, "customer_count", on_or_before=today)
        if count_row is not None:
            customers += int(count_row.customer_count or 0)
        total += sum((Decimal(r.revenue) for r in series if window_start < r.date <= today), Decimal("0"))

    mrr = quantize_money(mrr)
    return CurrentMetrics(
        mrr=mrr,
        arr=mrr * 12,
        total_revenue=quantize_money(total),
        customer_count=customers,
        currency=currency,
    )


def monthly_chart(
    rows: Iterable[SnapshotLike],
    currency: str,
    *,
    today: date,
    months: int = 12,
) -> list[dict[str, object]]:
    """Revenue and carried-forward MRR for the last *months* calendar months.

    Months without data are present with zero revenue.
    """
    grouped = _by_connection(r for r in rows if r.currency == currency)
    current = today.replace(day=1)
    chart: list[dict[str, object]] = []
    for offset in range(months - 1, -1, -1):
        start = _shift_month(current, -offset)
        end = min(_month_end(start), today)
        revenue = Decimal("0")
        mrr = Decimal("0")
        for series in grouped.values():
            revenue += sum((Decimal(r.revenue) for r in series if start <= r.date <= end), Decimal("0"))
            mrr_row = _latest_with(series, "mrr", on_or_before=end)
            if mrr_row is not None:
                mrr += Decimal(mrr_row.mrr or 0)
        chart.append(
            {
                "month": start.strftime("%Y-%m"),
                "revenue": float(quantize_money(revenue)),
                "mrr": float(quantize_money(mrr)),
            }
        )
    return chart


def mrr_growth_rate(rows: Iterable[SnapshotLike], currency: str, *, today: date) -> float:
    """Month-over-month MRR growth: this month against the previous one."""
    chart = monthly_chart(rows, currency, today=today, months=2)
    previous, current = (Decimal(str(point["mrr"])) for point in chart)
    return growth_rate(current, previous)
