"""Unit tests for revenue_engine.metrics (derived snapshot queries)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

import pytest

from revenue_engine.metrics import (
    arpu,
    churn_rate,
    current_metrics,
    growth_rate,
    monthly_chart,
    mrr_growth_rate,
    regroup_snapshots,
)
from revenue_engine.models import Interval


@dataclass
class Row:
    connection_id: str
    date: date
    revenue: Decimal
    mrr: Decimal | None = None
    customer_count: int | None = None
    currency: str = "USD"


def _row(
    conn: str,
    day: date,
    revenue: str,
    mrr: str | None = None,
    customers: int | None = None,
    currency: str = "USD",
) -> Row:
    return Row(
        connection_id=conn,
        date=day,
        revenue=Decimal(revenue),
        mrr=Decimal(mrr) if mrr is not None else None,
        customer_count=customers,
        currency=currency,
    )


# ---------------------------------------------------------------------------
# Scalar metrics
# ---------------------------------------------------------------------------


class TestScalars:
    @pytest.mark.parametrize(
        ("current", "previous", "expected"),
        [
            ("110", "100", 10.0),
            ("50", "100", -50.0),
            ("10", "0", 100.0),
            ("0", "0", 0.0),
        ],
    )
    def test_growth_rate(self, current: str, previous: str, expected: float) -> None:
        assert growth_rate(Decimal(current), Decimal(previous)) == expected

    def test_arpu(self) -> None:
        assert arpu(Decimal("100"), 3) == Decimal("33.33")
        assert arpu(Decimal("100"), 0) == Decimal("0.00")

    def test_churn_rate(self) -> None:
        assert churn_rate(1, 4) == 25.0
        assert churn_rate(3, 0) == 0.0


# ---------------------------------------------------------------------------
# Regrouping
# ---------------------------------------------------------------------------


class TestRegroupSnapshots:
    def test_daily_rows_into_months(self) -> None:
        rows = [
            _row("a", date(2026, 5, 10), "10"),
            _row("a", date(2026, 5, 31), "20", mrr="40", customers=3),
            _row("a", date(2026, 6, 2), "5"),
            _row("a", date(2026, 6, 3), "5", mrr="45", customers=4),
        ]
        points = regroup_snapshots(rows, Interval.MONTHLY)

        assert [(p.date, p.revenue, p.mrr, p.customer_count) for p in points] == [
            (date(2026, 5, 1), 30.0, 40.0, 3),
            (date(2026, 6, 1), 10.0, 45.0, 4),
        ]

    def test_bucket_without_mrr_exports_null(self) -> None:
        points = regroup_snapshots([_row("a", date(2026, 6, 1), "10")], Interval.DAILY)
        assert points[0].mrr is None
        assert points[0].customer_count is None

    def test_connections_are_summed(self) -> None:
        rows = [
            _row("a", date(2026, 6, 1), "10", mrr="100", customers=2),
            _row("b", date(2026, 6, 1), "15", mrr="50", customers=1),
        ]
        [point] = regroup_snapshots(rows, Interval.DAILY)
        assert point.revenue == 25.0
        assert point.mrr == 150.0
        assert point.customer_count == 3

    def test_currencies_are_not_combined(self) -> None:
        rows = [
            _row("a", date(2026, 6, 1), "10", currency="USD"),
            _row("b", date(2026, 6, 1), "8", currency="EUR"),
        ]
        points = regroup_snapshots(rows, Interval.DAILY)
        assert [(p.currency, p.revenue) for p in points] == [("EUR", 8.0), ("USD", 10.0)]

    def test_newest_mrr_in_bucket_wins(self) -> None:
        rows = [
            _row("a", date(2026, 6, 1), "1", mrr="10"),
            _row("a", date(2026, 6, 20), "1", mrr="30"),
        ]
        [point] = regroup_snapshots(rows, Interval.MONTHLY)
        assert point.mrr == 30.0

    def test_empty(self) -> None:
        assert regroup_snapshots([], Interval.MONTHLY) == []


# ---------------------------------------------------------------------------
# Current metrics / chart
# ---------------------------------------------------------------------------


class TestCurrentMetrics:
    def test_latest_values_per_connection(self) -> None:
        today = date(2026, 6, 30)
        rows = [
            _row("a", date(2026, 6, 1), "100", mrr="20", customers=2),
            _row("a", date(2026, 6, 29), "50", mrr="30", customers=3),
            _row("b", date(2026, 6, 15), "25", mrr="10", customers=1),
            # Outside the 30-day revenue window.
            _row("b", date(2026, 5, 1), "999"),
        ]
        metrics = current_metrics(rows, "USD", today=today)

        assert metrics.mrr == Decimal("40.00")
        assert metrics.arr == Decimal("480.00")
        assert metrics.customer_count == 4
        assert metrics.total_revenue == Decimal("175.00")
        assert metrics.currency == "USD"

    def test_other_currency_ignored(self) -> None:
        rows = [_row("a", date(2026, 6, 1), "10", mrr="10", currency="EUR")]
        metrics = current_metrics(rows, "USD", today=date(2026, 6, 2))
        assert metrics.mrr == Decimal("0.00")
        assert metrics.customer_count == 0

    def test_future_rows_ignored(self) -> None:
        rows = [_row("a", date(2026, 7, 1), "10", mrr="99", customers=9)]
        metrics = current_metrics(rows, "USD", today=date(2026, 6, 30))
        assert metrics.mrr == Decimal("0.00")
        assert metrics.total_revenue == Decimal("0.00")


class TestMonthlyChart:
    def test_months_present_and_mrr_carried_forward(self) -> None:
        rows = [
            _row("a", date(2026, 4, 10), "100", mrr="50"),
            _row("a", date(2026, 6, 5), "30", mrr="80"),
        ]
        chart = monthly_chart(rows, "USD", today=date(2026, 6, 15), months=3)

        assert chart == [
            {"month": "2026-04", "revenue": 100.0, "mrr": 50.0},
            {"month": "2026-05", "revenue": 0.0, "mrr": 50.0},
            {"month": "2026-06", "revenue": 30.0, "mrr": 80.0},
        ]

    def test_crosses_year_boundary(self) -> None:
        chart = monthly_chart([], "USD", today=date(2026, 1, 20), months=2)
        assert [point["month"] for point in chart] == ["2025-12", "2026-01"]

    def test_mrr_growth_rate(self) -> None:
        rows = [
            _row("a", date(2026, 5, 31), "0", mrr="100"),
            _row("a", date(2026, 6, 10), "0", mrr="125"),
        ]
        assert mrr_growth_rate(rows, "USD", today=date(2026, 6, 15)) == 25.0
