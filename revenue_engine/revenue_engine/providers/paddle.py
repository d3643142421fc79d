"""Paddle Classic vendor API integration.

Credentials: ``api_key`` is the vendor auth code, ``api_secret`` the vendor
id.  Every vendor endpoint is a POST whose body carries both, and answers
``{"success": bool, "response": ...}`` with HTTP 200 even on failure.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import AsyncIterator, Mapping
from decimal import Decimal
from typing import Any

from revenue_engine.errors import ProviderError
from revenue_engine.models import (
    BillingInterval,
    CurrentMetrics,
    DateRange,
    Provider,
    SubscriptionLine,
    Transaction,
    ValidationResult,
)
from revenue_engine.normalizer import metrics_from_subscriptions
from revenue_engine.providers.base import ProviderAdapter, parse_timestamp

logger = logging.getLogger(__name__)

LIVE_URL = "https://vendors.paddle.com/api/2.0"
SANDBOX_URL = "https://sandbox-vendors.paddle.com/api/2.0"

_PAGE_SIZE = 200
_MAX_PAGES = 500
# Maximum age of a webhook timestamp before the delivery is rejected.
WEBHOOK_TOLERANCE_SECONDS = 300

_SETTLED_STATUSES = frozenset({"completed", "paid"})


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split a ``ts=...;h1=...`` header into the timestamp and its ``h1`` digests."""
    timestamp: str | None = None
    digests: list[str] = []
    for part in header.split(";"):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "ts":
            timestamp = value
        elif key == "h1":
            digests.append(value)
    return timestamp, digests


class PaddleAdapter(ProviderAdapter):
    """Completed transactions for revenue, active subscribers for MRR."""

    provider = Provider.PADDLE

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self._config.environment == "sandbox" else LIVE_URL

    def _credentials(self) -> dict[str, str]:
        if self._config.api_secret is None:
            raise ProviderError(self.name, "vendor id (api_secret) is required")
        return {
            "vendor_id": self._config.api_secret.get_secret_value(),
            "vendor_auth_code": self._config.api_key.get_secret_value(),
        }

    async def _call(self, endpoint: str, **fields: Any) -> Any:
        """POST to a vendor endpoint and unwrap its ``response`` member."""
        body = await self._request_json(
            "POST",
            f"{self.base_url}/{endpoint}",
            json={**self._credentials(), **fields},
        )
        if not body.get("success", False):
            error = body.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderError(self.name, f"{endpoint}: {message or 'request rejected'}")
        return body.get("response")

    async def validate_credentials(self) -> ValidationResult:
        if self._config.api_secret is None:
            return ValidationResult(valid=False, error="Paddle requires a vendor id as api_secret")
        try:
            await self._call("product/get_products")
        except ProviderError as exc:
            return ValidationResult(valid=False, error=str(exc))
        return ValidationResult(valid=True)

    # -- Revenue -------------------------------------------------------------

    async def _iter_transactions(self, date_range: DateRange, currency: str) -> AsyncIterator[Transaction]:
        for page in range(1, _MAX_PAGES + 1):
            rows = await self._call(
                "product/get_transactions",
                page=page,
                **{
                    "from": date_range.start.date().isoformat(),
                    "to": date_range.end.date().isoformat(),
                },
            )
            if not rows:
                return

            oldest = None
            for row in rows:
                occurred_at = parse_timestamp(row.get("created_at") or row["event_time"])
                oldest = occurred_at if oldest is None else min(oldest, occurred_at)
                if row.get("status") not in _SETTLED_STATUSES:
                    continue
                yield Transaction(
                    occurred_at=occurred_at,
                    amount=Decimal(str(row.get("amount", row.get("total", "0")))),
                    currency=(row.get("currency") or currency).upper(),
                )

            # Newest first: once a page reaches past the window there is nothing left.
            if oldest is not None and oldest < date_range.start:
                return
        logger.warning("paddle: transaction listing stopped after %d pages", _MAX_PAGES)

    # -- Subscriptions -------------------------------------------------------

    async def _plan_intervals(self) -> dict[str, tuple[BillingInterval, int]]:
        plans = await self._call("subscription/plans") or []
        intervals: dict[str, tuple[BillingInterval, int]] = {}
        for plan in plans:
            billing_type = plan.get("billing_type")
            if billing_type in {member.value for member in BillingInterval}:
                intervals[str(plan["id"])] = (BillingInterval(billing_type), int(plan.get("billing_period") or 1))
        return intervals

    async def _iter_users(self, **filters: Any) -> AsyncIterator[dict[str, Any]]:
        for page in range(1, _MAX_PAGES + 1):
            users = await self._call(
                "subscription/users",
                page=page,
                results_per_page=_PAGE_SIZE,
                **filters,
            )
            if not users:
                return
            for user in users:
                yield user
            if len(users) < _PAGE_SIZE:
                return

    async def _subscription_lines(self) -> list[SubscriptionLine]:
        intervals = await self._plan_intervals()
        lines: list[SubscriptionLine] = []
        async for user in self._iter_users(state="active"):
            payment = user.get("next_payment") or {}
            if not payment:
                continue
            plan_id = str(user.get("plan_id"))
            if plan_id not in intervals:
                logger.warning("paddle: unknown plan %s, treating as monthly", plan_id)
            interval, count = intervals.get(plan_id, (BillingInterval.MONTH, 1))
            lines.append(
                SubscriptionLine(
                    amount=Decimal(str(payment.get("amount", "0"))),
                    interval=interval,
                    interval_count=count,
                    quantity=int(user.get("quantity") or 1),
                    customer_id=str(user.get("user_id") or user.get("user_email") or "") or None,
                    currency=(payment.get("currency") or "USD").upper(),
                )
            )
        return lines

    async def _current_metrics(self, currency: str) -> CurrentMetrics:
        lines = [line for line in await self._subscription_lines() if line.currency == currency]
        total = await self._recent_revenue_total(currency)
        return metrics_from_subscriptions(lines, total_revenue=total, currency=currency)

    async def _customer_count(self) -> int:
        customers: set[str] = set()
        async for user in self._iter_users():
            key = user.get("user_id") or user.get("user_email")
            if key:
                customers.add(str(key))
        return len(customers)

    # -- Webhooks ------------------------------------------------------------

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Verify a ``Paddle-Signature`` header (``ts=<unix>;h1=<hex hmac>``).

        The HMAC-SHA256 covers ``"<ts>:<raw body>"`` keyed with the endpoint
        secret.  Deliveries older than :data:`WEBHOOK_TOLERANCE_SECONDS` are
        rejected.
        """
        if self._config.webhook_secret is None or not signature:
            return False
        timestamp, digests = parse_signature_header(signature)
        if timestamp is None or not digests or not timestamp.isdigit():
            return False
        if abs(time.time() - int(timestamp)) > WEBHOOK_TOLERANCE_SECONDS:
            logger.warning("paddle: webhook timestamp outside tolerance")
            return False

        secret = self._config.webhook_secret.get_secret_value().encode("utf-8")
        expected = hmac.new(secret, timestamp.encode("ascii") + b":" + payload, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected.encode("ascii"), digest.encode("utf-8")) for digest in digests)
