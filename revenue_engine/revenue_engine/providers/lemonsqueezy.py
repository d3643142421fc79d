"""Lemon Squeezy JSON:API integration."""

from __future__ import annotations

import hashlib
import hmac
import logging
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

API_URL = "https://api.lemonsqueezy.com/v1"

_PAGE_SIZE = 100
_MAX_PAGES = 500
_SETTLED_STATUSES = frozenset({"paid", "partial_refund"})


class LemonSqueezyAdapter(ProviderAdapter):
    """Paid orders for revenue; active subscriptions priced via ``/prices``."""

    provider = Provider.LEMON_SQUEEZY

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key.get_secret_value()}",
            "Accept": "application/vnd.api+json",
        }

    async def _get(self, path: str, **params: Any) -> dict[str, Any]:
        return await self._request_json("GET", f"{API_URL}{path}", params=params, headers=self._headers())

    async def _pages(self, path: str, **params: Any) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield the ``data`` array of each page, following ``meta.page.lastPage``."""
        for page in range(1, _MAX_PAGES + 1):
            body = await self._get(path, **{"page[number]": page, "page[size]": _PAGE_SIZE}, **params)
            data = body["data"]
            if not data:
                return
            yield data
            last_page = int(((body.get("meta") or {}).get("page") or {}).get("lastPage") or page)
            if page >= last_page:
                return
        logger.warning("lemon_squeezy: %s listing stopped after %d pages", path, _MAX_PAGES)

    async def validate_credentials(self) -> ValidationResult:
        try:
            await self._get("/stores")
        except ProviderError as exc:
            return ValidationResult(valid=False, error=str(exc))
        return ValidationResult(valid=True)

    async def _iter_transactions(self, date_range: DateRange, currency: str) -> AsyncIterator[Transaction]:
        async for orders in self._pages("/orders", sort="-created_at"):
            reached_start = False
            for order in orders:
                attrs = order["attributes"]
                occurred_at = parse_timestamp(attrs["created_at"])
                if occurred_at < date_range.start:
                    reached_start = True
                    break
                if attrs.get("status") not in _SETTLED_STATUSES:
                    continue
                net = int(attrs.get("total") or 0) - int(attrs.get("refunded_amount") or 0)
                yield Transaction(
                    occurred_at=occurred_at,
                    amount=minor_to_major(net),
                    currency=(attrs.get("currency") or currency).upper(),
                )
            if reached_start:
                return

    async def _store_currencies(self) -> dict[str, str]:
        body = await self._get("/stores")
        return {str(store["id"]): str(store["attributes"].get("currency") or "USD").upper() for store in body["data"]}

    async def _subscription_lines(self) -> list[SubscriptionLine]:
        currencies = await self._store_currencies()
        prices: dict[str, dict[str, Any]] = {}
        lines: list[SubscriptionLine] = []
        async for subscriptions in self._pages("/subscriptions", **{"filter[status]": "active"}):
            for sub in subscriptions:
                attrs = sub["attributes"]
                if attrs.get("status") != "active":
                    continue
                item = attrs.get("first_subscription_item") or {}
                price_id = item.get("price_id")
                if price_id is None:
                    continue
                key = str(price_id)
                if key not in prices:
                    prices[key] = (await self._get(f"/prices/{key}"))["data"]["attributes"]
                price = prices[key]

                unit = price.get("renewal_interval_unit")
                recurring = price.get("category") in (None, "subscription") and unit is not None
                lines.append(
                    SubscriptionLine(
                        amount=minor_to_major(price.get("unit_price") or 0),
                        interval=BillingInterval(unit) if recurring else None,
                        interval_count=int(price.get("renewal_interval_quantity") or 1),
                        quantity=int(item.get("quantity") or 1),
                        customer_id=str(attrs.get("customer_id")) if attrs.get("customer_id") else None,
                        currency=currencies.get(str(attrs.get("store_id")), "USD"),
                    )
                )
        return lines

    async def _current_metrics(self, currency: str) -> CurrentMetrics:
        lines = [line for line in await self._subscription_lines() if line.currency == currency]
        total = await self._recent_revenue_total(currency)
        return metrics_from_subscriptions(lines, total_revenue=total, currency=currency)

    async def _customer_count(self) -> int:
        body = await self._get("/customers", **{"page[size]": 1})
        return int(((body.get("meta") or {}).get("page") or {}).get("total") or 0)

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Compare the ``X-Signature`` header with a hex HMAC-SHA256 of the raw body."""
        if self._config.webhook_secret is None or not signature:
            return False
        secret = self._config.webhook_secret.get_secret_value().encode("utf-8")
        expected = hmac.new(secret, payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
