"""PayPal REST integration (Transaction Search API).

Credentials: ``api_key`` is the REST client id, ``api_secret`` the client
secret, ``webhook_secret`` the webhook id registered with PayPal.

PayPal exposes no subscription catalogue suitable for MRR, so MRR is
estimated from the latest calendar month of settled revenue and the
customer count from distinct payers over the last 30 days.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from revenue_engine.errors import ProviderError
from revenue_engine.models import (
    CurrentMetrics,
    DateRange,
    Interval,
    Provider,
    Transaction,
    ValidationResult,
)
from revenue_engine.normalizer import aggregate_transactions, quantize_money
from revenue_engine.providers.base import RECENT_REVENUE_DAYS, ProviderAdapter, parse_timestamp

logger = logging.getLogger(__name__)

LIVE_URL = "https://api-m.paypal.com"
SANDBOX_URL = "https://api-m.sandbox.paypal.com"

_PAGE_SIZE = 500
_MAX_PAGES = 200
# Transaction Search rejects ranges longer than 31 days.
_MAX_WINDOW = timedelta(days=31)
_SUCCESS_STATUS = "S"

_WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
}


def _format_time(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def split_windows(date_range: DateRange, size: timedelta = _MAX_WINDOW) -> list[DateRange]:
    """Split *date_range* into consecutive windows no longer than *size*."""
    windows: list[DateRange] = []
    start = date_range.start
    while start <= date_range.end:
        end = min(start + size - timedelta(seconds=1), date_range.end)
        windows.append(DateRange(start=start, end=end))
        start = end + timedelta(seconds=1)
    return windows


class PayPalAdapter(ProviderAdapter):
    """Successful incoming payments from the Transaction Search report."""

    provider = Provider.PAYPAL

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._access_token: str | None = None

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self._config.environment == "sandbox" else LIVE_URL

    async def _token(self) -> str:
        """Obtain (once per adapter) an OAuth2 client-credentials token."""
        if self._access_token is not None:
            return self._access_token
        client_secret = self._config.api_secret.get_secret_value() if self._config.api_secret else ""
        body = await self._request_json(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._config.api_key.get_secret_value(), client_secret),
            headers={"Accept": "application/json", "Accept-Language": "en_US"},
        )
        token = body.get("access_token")
        if not token:
            raise ProviderError(self.name, "token response carried no access_token")
        self._access_token = str(token)
        return self._access_token

    async def _authorized(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Authorization": f"Bearer {await self._token()}", "Accept": "application/json"}
        return await self._request_json(method, f"{self.base_url}{path}", headers=headers, **kwargs)

    async def validate_credentials(self) -> ValidationResult:
        if self._config.api_secret is None:
            return ValidationResult(valid=False, error="PayPal requires a client secret as api_secret")
        try:
            await self._token()
        except ProviderError as exc:
            return ValidationResult(valid=False, error=str(exc))
        return ValidationResult(valid=True)

    # -- Transaction Search --------------------------------------------------

    async def _iter_details(self, date_range: DateRange) -> AsyncIterator[dict[str, Any]]:
        """Yield raw ``transaction_details`` entries window by window."""
        for window in split_windows(date_range):
            for page in range(1, _MAX_PAGES + 1):
                body = await self._authorized(
                    "GET",
                    "/v1/reporting/transactions",
                    params={
                        "start_date": _format_time(window.start),
                        "end_date": _format_time(window.end),
                        "fields": "transaction_info,payer_info",
                        "page_size": _PAGE_SIZE,
                        "page": page,
                    },
                )
                details = body.get("transaction_details") or []
                if not details:
                    break
                for detail in details:
                    yield detail
                if page >= int(body.get("total_pages") or page):
                    break

    @staticmethod
    def _settled_amount(detail: dict[str, Any]) -> tuple[datetime, Decimal, str] | None:
        info = detail["transaction_info"]
        if info.get("transaction_status") != _SUCCESS_STATUS:
            return None
        money = info.get("transaction_amount") or {}
        amount = Decimal(str(money.get("value", "0")))
        # Refunds, fees and payouts are reported as negative amounts.
        if amount <= 0:
            return None
        occurred_at = parse_timestamp(info["transaction_initiation_date"])
        return occurred_at, amount, str(money.get("currency_code") or "")

    async def _iter_transactions(self, date_range: DateRange, currency: str) -> AsyncIterator[Transaction]:
        async for detail in self._iter_details(date_range):
            settled = self._settled_amount(detail)
            if settled is None:
                continue
            occurred_at, amount, code = settled
            yield Transaction(occurred_at=occurred_at, amount=amount, currency=(code or currency).upper())

    # -- Metrics -------------------------------------------------------------

    def _recent_window(self) -> DateRange:
        end = datetime.now(UTC)
        return DateRange(start=end - timedelta(days=RECENT_REVENUE_DAYS), end=end)

    async def _current_metrics(self, currency: str) -> CurrentMetrics:
        window = self._recent_window()
        transactions: list[Transaction] = []
        payers: set[str] = set()
        async for detail in self._iter_details(window):
            settled = self._settled_amount(detail)
            if settled is None:
                continue
            occurred_at, amount, code = settled
            if (code or currency).upper() != currency or not window.contains(occurred_at):
                continue
            transactions.append(Transaction(occurred_at=occurred_at, amount=amount, currency=currency))
            payer = (detail.get("payer_info") or {}).get("account_id")
            if payer:
                payers.add(str(payer))

        monthly = aggregate_transactions(transactions, Interval.MONTHLY)
        mrr = quantize_money(monthly[-1].revenue) if monthly else Decimal("0.00")
        total = sum((txn.amount for txn in transactions), Decimal("0"))
        return CurrentMetrics(
            mrr=mrr,
            arr=mrr * 12,
            total_revenue=quantize_money(total),
            customer_count=len(payers),
            currency=currency,
        )

    async def _customer_count(self) -> int:
        payers: set[str] = set()
        async for detail in self._iter_details(self._recent_window()):
            if self._settled_amount(detail) is None:
                continue
            payer = (detail.get("payer_info") or {}).get("account_id")
            if payer:
                payers.add(str(payer))
        return len(payers)

    # -- Webhooks ------------------------------------------------------------

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Verify a delivery with PayPal's ``verify-webhook-signature`` endpoint.

        *signature* is the ``PAYPAL-TRANSMISSION-SIG`` header; the remaining
        ``PAYPAL-*`` transmission headers must be present in *headers*.
        """
        if self._config.webhook_secret is None or not signature or headers is None:
            return False
        lowered = {key.lower(): value for key, value in headers.items()}
        fields = {name: lowered.get(header) for name, header in _WEBHOOK_HEADERS.items()}
        if not all(fields.values()):
            return False
        try:
            event = json.loads(payload)
        except ValueError:
            return False

        try:
            body = await self._authorized(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={
                    **fields,
                    "transmission_sig": signature,
                    "webhook_id": self._config.webhook_secret.get_secret_value(),
                    "webhook_event": event,
                },
            )
        except ProviderError as exc:
            logger.warning("paypal: webhook verification call failed: %s", exc)
            return False
        return body.get("verification_status") == "SUCCESS"
