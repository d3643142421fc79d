"""Polar REST API integration.

Orders are listed newest first, so pagination stops at the first page whose
oldest order predates the requested window.  Webhooks follow the Standard
Webhooks scheme (``webhook-id`` / ``webhook-timestamp`` /
``webhook-signature`` headers).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from collections.abc import AsyncIterator, Mapping
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
from revenue_engine.providers.base import ProviderAdapter, minor_to_major, parse_timestamp

logger = logging.getLogger(__name__)

LIVE_URL = "https://api.polar.sh/v1"
SANDBOX_URL = "https://sandbox-api.polar.sh/v1"

_PAGE_SIZE = 100
_MAX_PAGES = 500
WEBHOOK_TOLERANCE_SECONDS = 300

_SETTLED_STATUSES = frozenset({"paid", "partially_refunded"})


class PolarAdapter(ProviderAdapter):
    """Paid orders for revenue, active subscriptions for MRR."""

    provider = Provider.POLAR

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self._config.environment == "sandbox" else LIVE_URL

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key.get_secret_value()}",
            "Accept": "application/json",
        }

    async def _get(self, path: str, **params: Any) -> dict[str, Any]:
        return await self._request_json("GET", f"{self.base_url}{path}", params=params, headers=self._headers())

    async def _pages(self, path: str, **params: Any) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield the ``items`` of each page until the last one."""
        for page in range(1, _MAX_PAGES + 1):
            body = await self._get(path, page=page, limit=_PAGE_SIZE, **params)
            items = body["items"]
            if not items:
                return
            yield items
            max_page = int((body.get("pagination") or {}).get("max_page") or page)
            if page >= max_page:
                return
        logger.warning("polar: %s listing stopped after %d pages", path, _MAX_PAGES)

    async def validate_credentials(self) -> ValidationResult:
        try:
            await self._get("/organizations/", limit=1)
        except ProviderError as exc:
            return ValidationResult(valid=False, error=str(exc))
        return ValidationResult(valid=True)

    async def _iter_transactions(self, date_range: DateRange, currency: str) -> AsyncIterator[Transaction]:
        async for orders in self._pages("/orders/", sorting="-created_at"):
            reached_start = False
            for order in orders:
                occurred_at = parse_timestamp(order["created_at"])
                if occurred_at < date_range.start:
                    reached_start = True
                    break
                if occurred_at > date_range.end:
                    continue
                status = order.get("status")
                if status is not None and status not in _SETTLED_STATUSES:
                    continue
                if status is None and not order.get("paid", True):
                    continue
                net = int(order.get("amount") or 0) - int(order.get("refunded_amount") or 0)
                yield Transaction(
                    occurred_at=occurred_at,
                    amount=minor_to_major(net),
                    currency=(order.get("currency") or currency).upper(),
                )
            if reached_start:
                return

    async def _subscription_lines(self) -> list[SubscriptionLine]:
        lines: list[SubscriptionLine] = []
        async for subscriptions in self._pages("/subscriptions/", active="true"):
            for sub in subscriptions:
                if sub.get("status", "active") != "active":
                    continue
                interval = sub.get("recurring_interval")
                lines.append(
                    SubscriptionLine(
                        amount=minor_to_major(sub.get("amount") or 0),
                        interval=BillingInterval(interval) if interval else None,
                        interval_count=int(sub.get("recurring_interval_count") or 1),
                        customer_id=sub.get("customer_id") or sub.get("user_id"),
                        currency=(sub.get("currency") or "usd").upper(),
                    )
                )
        return lines

    async def _current_metrics(self, currency: str) -> CurrentMetrics:
        lines = [line for line in await self._subscription_lines() if line.currency == currency]
        total = await self._recent_revenue_total(currency)
        return metrics_from_subscriptions(lines, total_revenue=total, currency=currency)

    async def _customer_count(self) -> int:
        body = await self._get("/customers/", page=1, limit=1)
        return int((body.get("pagination") or {}).get("total_count") or 0)

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Verify a Standard Webhooks signature.

        *signature* is the ``webhook-signature`` header, a space separated
        list of ``v1,<base64 digest>`` entries.  *headers* must carry
        ``webhook-id`` and ``webhook-timestamp``.  The signed content is
        ``"<id>.<timestamp>.<body>"`` under HMAC-SHA256 keyed with the
        secret's UTF-8 bytes.
        """
        if self._config.webhook_secret is None or not signature or headers is None:
            return False
        lowered = {key.lower(): value for key, value in headers.items()}
        msg_id = lowered.get("webhook-id")
        timestamp = lowered.get("webhook-timestamp")
        if not msg_id or not timestamp or not timestamp.isdigit():
            return False
        if abs(time.time() - int(timestamp)) > WEBHOOK_TOLERANCE_SECONDS:
            logger.warning("polar: webhook timestamp outside tolerance")
            return False

        key = self._config.webhook_secret.get_secret_value().encode("utf-8")
        signed = f"{msg_id}.{timestamp}.".encode() + payload
        expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")
        for entry in signature.split():
            version, _, digest = entry.partition(",")
            if version == "v1" and hmac.compare_digest(expected.encode("ascii"), digest.encode("utf-8")):
                return True
        return False
