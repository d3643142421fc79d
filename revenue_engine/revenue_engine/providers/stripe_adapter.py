"""Stripe integration via the official ``stripe`` SDK.

The SDK is imported lazily and every call passes the connection's key as
``api_key=`` so that concurrent connections never share module-level
credentials.  SDK calls are synchronous and run via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
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

_PAGE_SIZE = 100
# Upper bound on customer pages walked by fetch_customer_count.
_MAX_CUSTOMER_PAGES = 100


def _customer_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


class StripeAdapter(ProviderAdapter):
    """Charges for revenue, active subscriptions for MRR."""

    provider = Provider.STRIPE

    def _get_stripe(self) -> Any:
        """Lazily import the Stripe library."""
        import stripe

        return stripe

    @property
    def _api_key(self) -> str:
        return self._config.api_key.get_secret_value()

    async def validate_credentials(self) -> ValidationResult:
        stripe = self._get_stripe()
        try:
            await asyncio.to_thread(stripe.Balance.retrieve, api_key=self._api_key)
        except stripe.StripeError as exc:
            return ValidationResult(valid=False, error=getattr(exc, "user_message", None) or str(exc))
        return ValidationResult(valid=True)

    async def _call(self, method: Any, **params: Any) -> Any:
        """Invoke an SDK method off the loop with this connection's key, translating Stripe errors."""
        stripe = self._get_stripe()
        try:
            return await asyncio.to_thread(method, api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            raise ProviderError(self.name, str(exc)) from exc

    async def _list_pages(self, resource: Any, **params: Any) -> list[dict[str, Any]]:
        """Walk a Stripe list endpoint with ``starting_after`` cursors."""
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            if cursor is not None:
                params["starting_after"] = cursor
            page = await self._call(resource.list, limit=_PAGE_SIZE, **params)
            data = page["data"]
            if not data:
                break
            items.extend(data)
            if not page.get("has_more"):
                break
            cursor = data[-1]["id"]
        return items

    async def _iter_transactions(self, date_range: DateRange, currency: str) -> AsyncIterator[Transaction]:
        stripe = self._get_stripe()
        charges = await self._list_pages(
            stripe.Charge,
            created={
                "gte": int(date_range.start.timestamp()),
                "lte": int(date_range.end.timestamp()),
            },
        )
        for charge in charges:
            if not charge.get("paid") or charge.get("refunded"):
                continue
            if charge.get("status", "succeeded") != "succeeded":
                continue
            net = int(charge["amount"]) - int(charge.get("amount_refunded") or 0)
            yield Transaction(
                occurred_at=parse_timestamp(charge["created"]),
                amount=minor_to_major(net),
                currency=(charge.get("currency") or currency).upper(),
            )

    async def _subscription_lines(self) -> list[SubscriptionLine]:
        stripe = self._get_stripe()
        lines: list[SubscriptionLine] = []
        for subscription in await self._list_pages(stripe.Subscription, status="active"):
            customer = _customer_id(subscription.get("customer"))
            for item in subscription["items"]["data"]:
                price = item["price"]
                recurring = price.get("recurring") or {}
                interval = recurring.get("interval")
                lines.append(
                    SubscriptionLine(
                        amount=minor_to_major(price.get("unit_amount") or 0),
                        interval=BillingInterval(interval) if interval else None,
                        interval_count=int(recurring.get("interval_count") or 1),
                        quantity=int(item.get("quantity") or 1),
                        customer_id=customer,
                        currency=(price.get("currency") or "usd").upper(),
                    )
                )
        return lines

    async def _current_metrics(self, currency: str) -> CurrentMetrics:
        lines = [line for line in await self._subscription_lines() if line.currency == currency]
        total = await self._recent_revenue_total(currency)
        return metrics_from_subscriptions(lines, total_revenue=total, currency=currency)

    async def _customer_count(self) -> int:
        stripe = self._get_stripe()
        count = 0
        cursor: str | None = None
        for _ in range(_MAX_CUSTOMER_PAGES):
            params: dict[str, Any] = {"limit": _PAGE_SIZE}
            if cursor is not None:
                params["starting_after"] = cursor
            page = await self._call(stripe.Customer.list, **params)
            data = page["data"]
            count += len(data)
            if not data or not page.get("has_more"):
                return count
            cursor = data[-1]["id"]
        logger.warning("stripe: customer count truncated after %d pages", _MAX_CUSTOMER_PAGES)
        return count

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Verify a ``Stripe-Signature`` header with the SDK."""
        if self._config.webhook_secret is None or not signature:
            return False
        stripe = self._get_stripe()
        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self._config.webhook_secret.get_secret_value(),
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("stripe: webhook signature rejected: %s", exc)
            return False
        return True
