"""Revenue normalization: calendar bucketing and monthly-equivalent MRR.

Bucketing rule:

* ``daily``   -- the transaction's UTC date;
* ``weekly``  -- the Monday of the transaction's ISO week;
* ``monthly`` -- the first day of the transaction's month;
* ``yearly``  -- January 1st of the transaction's year.

MRR rule: each active recurring line contributes its price converted to a
monthly equivalent (monthly x1, yearly /12, weekly x4.33, daily x30).
One-time charges contribute nothing.  ARR is ``MRR x 12``.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from revenue_engine.models import (
    BillingInterval,
    CurrentMetrics,
    Interval,
    RawRevenuePoint,
    RevenueSnapshot,
    SubscriptionLine,
    Transaction,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Monthly-equivalent factor per billing cycle as (multiplier, divisor).
MRR_FACTORS: dict[BillingInterval, tuple[Decimal, Decimal]] = {
    BillingInterval.DAY: (Decimal("30"), Decimal("1")),
    BillingInterval.WEEK: (Decimal("4.33"), Decimal("1")),
    BillingInterval.MONTH: (Decimal("1"), Decimal("1")),
    BillingInterval.YEAR: (Decimal("1"), Decimal("12")),
}


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Bucketing
# ---------------------------------------------------------------------------


def bucket_date(moment: datetime | date, interval: Interval) -> date:
    """Return the bucket key for *moment* under *interval*."""
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(UTC)
        day = moment.date()
    else:
        day = moment

    if interval == Interval.DAILY:
        return day
    if interval == Interval.WEEKLY:
        return day - timedelta(days=day.weekday())
    if interval == Interval.MONTHLY:
        return day.replace(day=1)
    if interval == Interval.YEARLY:
        return day.replace(month=1, day=1)
    raise ValueError(f"Unsupported interval: {interval!r}")


def aggregate_transactions(
    transactions: Iterable[Transaction],
    interval: Interval,
) -> list[RawRevenuePoint]:
    """Sum transactions into ``(bucket, currency)`` points, ordered by date."""
    totals: dict[tuple[date, str], Decimal] = {}
    for txn in transactions:
        key = (bucket_date(txn.occurred_at, interval), txn.currency.upper())
        totals[key] = totals.get(key, Decimal("0")) + txn.amount

    return [
        RawRevenuePoint(date=bucket, revenue=amount, currency=currency)
        for (bucket, currency), amount in sorted(totals.items())
    ]


def dominant_currency(points: Iterable[RawRevenuePoint], default: str | None = None) -> str:
    """Currency carried by the most points.

    Ties go to *default* when it is among them, otherwise to the
    alphabetically first code.  With no points, *default* is returned.

    Raises
    ------
    ValueError
        If there are no points and no *default*.
    """
    counts = Counter(point.currency.upper() for point in points)
    preferred = default.upper() if default else None
    if not counts:
        if preferred is None:
            raise ValueError("No points and no default currency")
        return preferred
    return min(counts, key=lambda code: (-counts[code], code != preferred, code))


# ---------------------------------------------------------------------------
# MRR
# ---------------------------------------------------------------------------


def monthly_equivalent(amount: Decimal, interval: BillingInterval | None, interval_count: int = 1) -> Decimal:
    """Convert a recurring price to its monthly equivalent.

    ``interval=None`` denotes a one-time charge and yields zero.  A plan
    billed every *interval_count* cycles is divided accordingly.
    """
    if interval is None:
        return Decimal("0")
    multiplier, divisor = MRR_FACTORS[interval]
    return amount * multiplier / (divisor * interval_count)


def compute_mrr(lines: Iterable[SubscriptionLine]) -> Decimal:
    """Sum the monthly-equivalent value of active subscription lines, rounded to cents."""
    total = Decimal("0")
    for line in lines:
        total += monthly_equivalent(line.amount, line.interval, line.interval_count) * line.quantity
    return quantize_money(total)


def metrics_from_subscriptions(
    lines: Sequence[SubscriptionLine],
    *,
    total_revenue: Decimal,
    currency: str,
) -> CurrentMetrics:
    """Build :class:`CurrentMetrics` from active subscription lines.

    Customer count is the number of distinct customer identifiers among
    the lines.
    """
    mrr = compute_mrr(lines)
    customers = {line.customer_id for line in lines if line.customer_id}
    return CurrentMetrics(
        mrr=mrr,
        arr=mrr * 12,
        total_revenue=quantize_money(total_revenue),
        customer_count=len(customers),
        currency=currency,
    )


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class RevenueNormalizer:
    """Turn provider output into snapshots for one connection.

    Processors expose current-state metrics, not historical MRR, so only the
    newest bucket of a sync window receives MRR, ARR and customer count.
    Older buckets are emitted with those fields unset, which tells the
    upsert to leave previously stored values untouched.
    """

    def __init__(self, interval: Interval = Interval.DAILY) -> None:
        self._interval = interval

    @property
    def interval(self) -> Interval:
        return self._interval

    def normalize(
        self,
        connection_id: str,
        points: Iterable[RawRevenuePoint],
        metrics: CurrentMetrics | None = None,
        *,
        currency: str | None = None,
    ) -> list[RevenueSnapshot]:
        """Group *points* by bucket, sum revenue, then attach *metrics* to the latest bucket.

        Each snapshot holds amounts in a single currency.  A bucket that mixes
        currencies keeps *currency* (default: the metrics currency) when it is
        present, otherwise the currency seen on most points; amounts in other
        currencies are dropped with a warning.  Metrics are only attached when
        their currency matches the latest snapshot's.
        """
        points = list(points)
        preferred = (currency or (metrics.currency if metrics is not None else "")).upper() or None
        snapshots = self._group(connection_id, points, preferred)
        if metrics is not None:
            snapshots = self._attach_current_metrics(snapshots, metrics)
        return snapshots

    def _group(
        self,
        connection_id: str,
        points: Sequence[RawRevenuePoint],
        preferred: str | None,
    ) -> list[RevenueSnapshot]:
        buckets: dict[date, list[RawRevenuePoint]] = {}
        for point in points:
            buckets.setdefault(bucket_date(point.date, self._interval), []).append(point)

        snapshots: list[RevenueSnapshot] = []
        for bucket in sorted(buckets):
            members = buckets[bucket]
            present = {p.currency.upper() for p in members}
            chosen = preferred if preferred in present else dominant_currency(members)
            dropped = sorted(present - {chosen})
            if dropped:
                logger.warning(
                    "Connection %s bucket %s mixes currencies; keeping %s, dropping %s",
                    connection_id,
                    bucket,
                    chosen,
                    ", ".join(dropped),
                )
            total = sum((p.revenue for p in members if p.currency.upper() == chosen), Decimal("0"))
            snapshots.append(
                RevenueSnapshot(
                    connection_id=connection_id,
                    date=bucket,
                    revenue=quantize_money(total),
                    currency=chosen,
                )
            )
        return snapshots

    @staticmethod
    def _attach_current_metrics(
        snapshots: list[RevenueSnapshot],
        metrics: CurrentMetrics,
    ) -> list[RevenueSnapshot]:
        """Copy MRR, ARR and customer count onto the newest snapshot only."""
        if not snapshots:
            return snapshots
        latest = snapshots[-1]
        if metrics.currency.upper() != latest.currency:
            logger.warning(
                "Metrics for connection %s are in %s but bucket %s is in %s; MRR not recorded",
                latest.connection_id,
                metrics.currency.upper(),
                latest.date,
                latest.currency,
            )
            return snapshots
        latest = latest.model_copy(
            update={
                "mrr": metrics.mrr,
                "arr": metrics.arr if metrics.arr else metrics.mrr * 12,
                "customer_count": metrics.customer_count,
            }
        )
        return [*snapshots[:-1], latest]
