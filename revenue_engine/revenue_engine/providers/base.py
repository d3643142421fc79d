"""Provider adapter contract shared by every payment processor integration.

Each adapter hides its processor's pagination, billing-cycle semantics and
currency units behind five operations:

* ``validate_credentials`` -- cheap, side-effect free; never raises.
* ``fetch_revenue`` -- settled payments in ``[start, end]`` summed per
  calendar bucket.
* ``fetch_current_metrics`` -- MRR / ARR / recent revenue / customers from
  currently active subscriptions.
* ``fetch_customer_count`` -- best effort.
* ``verify_webhook`` -- processor-specific signature check.

Network failures, non-2xx responses and malformed payloads surface as
:class:`~revenue_engine.errors.ProviderError`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

import httpx

from revenue_engine.errors import ProviderError
from revenue_engine.models import (
    CurrentMetrics,
    DateRange,
    Interval,
    Provider,
    ProviderConfig,
    RawRevenuePoint,
    Transaction,
    ValidationResult,
)
from revenue_engine.normalizer import aggregate_transactions

logger = logging.getLogger(__name__)

# Window used for ``total_revenue`` in current metrics.
RECENT_REVENUE_DAYS = 30

_MALFORMED_DATA_ERRORS = (KeyError, TypeError, ValueError, InvalidOperation, AttributeError)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime."""
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # PayPal reports offsets without a colon (``+0000``).
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def minor_to_major(amount: Any) -> Decimal:
    """Convert an integer minor-unit amount (cents) to major units."""
    return Decimal(int(amount)) / Decimal(100)


class ProviderAdapter(ABC):
    """Abstract base for one processor integration.

    Adapters are connection-scoped: a new instance is built for every sync
    with that connection's decrypted credentials.

    Parameters
    ----------
    config:
        Decrypted credentials for the connection.
    http_client:
        Shared ``httpx.AsyncClient``.  When omitted the adapter creates its
        own and closes it in :meth:`aclose`.
    timeout:
        Per-request timeout in seconds for an adapter-owned client.
    """

    provider: ClassVar[Provider]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def name(self) -> str:
        return self.provider.value

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # -- Contract ------------------------------------------------------------

    @abstractmethod
    async def validate_credentials(self) -> ValidationResult:
        """Confirm the credentials with a cheap read-only call."""

    async def fetch_revenue(
        self,
        date_range: DateRange,
        interval: Interval = Interval.DAILY,
        currency: str = "USD",
    ) -> list[RawRevenuePoint]:
        """Return settled revenue in *date_range* summed per bucket, oldest first.

        *currency* is only the fallback label for processors that omit one;
        amounts are never converted.
        """
        with self._provider_errors("fetch_revenue"):
            transactions = [
                txn
                async for txn in self._iter_transactions(date_range, currency.upper())
                if date_range.contains(txn.occurred_at)
            ]
            points = aggregate_transactions(transactions, interval)
        logger.info(
            "%s: fetched %d transaction(s) into %d bucket(s) for %s..%s",
            self.name,
            len(transactions),
            len(points),
            date_range.start.date(),
            date_range.end.date(),
        )
        return points

    async def fetch_current_metrics(self, currency: str = "USD") -> CurrentMetrics:
        """Return MRR / ARR / recent revenue / customer count."""
        with self._provider_errors("fetch_current_metrics"):
            return await self._current_metrics(currency.upper())

    async def fetch_customer_count(self) -> int:
        with self._provider_errors("fetch_customer_count"):
            return await self._customer_count()

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Check a webhook signature; ``False`` for any mismatch or missing secret."""

    # -- Adapter hooks -------------------------------------------------------

    @abstractmethod
    def _iter_transactions(self, date_range: DateRange, currency: str) -> AsyncIterator[Transaction]:
        """Yield settled (paid, not refunded, not pending) transactions.

        Implementations paginate until a page is empty, or until the oldest
        record on a newest-first page predates ``date_range.start``.
        """

    @abstractmethod
    async def _current_metrics(self, currency: str) -> CurrentMetrics: ...

    @abstractmethod
    async def _customer_count(self) -> int: ...

    # -- Helpers -------------------------------------------------------------

    @contextmanager
    def _provider_errors(self, operation: str) -> Iterator[None]:
        """Translate transport and payload errors into :class:`ProviderError`."""
        try:
            yield
        except ProviderError:
            raise
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{operation} failed: {exc}") from exc
        except _MALFORMED_DATA_ERRORS as exc:
            raise ProviderError(self.name, f"{operation} returned malformed data: {exc!r}") from exc

    async def _request_json(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises
        ------
        ProviderError
            On transport failure, non-2xx status, or a non-JSON body.
        """
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{method} {url} failed: {exc}") from exc

        if response.status_code == 429:
            raise ProviderError(self.name, f"rate limited on {url}")
        if response.status_code >= 400:
            raise ProviderError(self.name, f"{method} {url} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, f"{url} returned a non-JSON body") from exc

    async def _recent_revenue_total(self, currency: str) -> Decimal:
        """Sum settled revenue over the last ``RECENT_REVENUE_DAYS`` days."""
        end = datetime.now(UTC)
        window = DateRange(start=end - timedelta(days=RECENT_REVENUE_DAYS), end=end)
        total = Decimal("0")
        async for txn in self._iter_transactions(window, currency):
            if window.contains(txn.occurred_at):
                total += txn.amount
        return total
