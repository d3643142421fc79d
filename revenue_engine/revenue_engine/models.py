"""Value objects exchanged between provider adapters, the normalizer, and storage.

Monetary amounts are :class:`~decimal.Decimal` throughout so that interval
multipliers (``x4.33`` for weekly plans, ``/12`` for yearly plans) produce
exact cent values.  Currency is carried through unconverted.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """Supported payment processors."""

    STRIPE = "stripe"
    PADDLE = "paddle"
    POLAR = "polar"
    PAYPAL = "paypal"
    LEMON_SQUEEZY = "lemon_squeezy"


class Interval(str, Enum):
    """Calendar bucket size for revenue aggregation."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class BillingInterval(str, Enum):
    """Recurring billing cycle of a subscription line item."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class TrustLevel(str, Enum):
    """Consumer-assigned provenance label for revenue data.

    Assigned from *how* data arrived, not from signature validity alone.
    """

    PLATFORM_VERIFIED = "platform_verified"
    SELF_REPORTED = "self_reported"


# ---------------------------------------------------------------------------
# Request-side value objects
# ---------------------------------------------------------------------------


class DateRange(BaseModel):
    """An inclusive UTC timestamp range used to scope provider queries."""

    start: datetime = Field(..., description="Inclusive lower bound of the range.")
    end: datetime = Field(..., description="Inclusive upper bound of the range.")

    @field_validator("start", "end")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @model_validator(mode="after")
    def validate_start_before_end(self) -> DateRange:
        """Ensure *start* does not come after *end*."""
        if self.start > self.end:
            raise ValueError(f"DateRange start ({self.start}) must be <= end ({self.end}).")
        return self

    def contains(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return self.start <= moment <= self.end


class ProviderConfig(BaseModel):
    """Decrypted credentials handed to a provider adapter for one sync.

    ``api_secret`` is the processor's secondary credential: the vendor id
    for Paddle, the client secret for PayPal.  ``webhook_secret`` holds the
    webhook signing secret (the webhook id for PayPal).
    """

    api_key: SecretStr
    api_secret: SecretStr | None = None
    webhook_secret: SecretStr | None = None
    environment: str = Field("live", pattern="^(live|sandbox)$")


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None


# ---------------------------------------------------------------------------
# Provider output
# ---------------------------------------------------------------------------


class Transaction(BaseModel):
    """One settled payment as reported by a processor."""

    model_config = ConfigDict(frozen=True)

    occurred_at: datetime
    amount: Decimal
    currency: str


class SubscriptionLine(BaseModel):
    """An active recurring line item used for MRR normalization.

    ``interval`` is ``None`` for one-time charges, which contribute nothing
    to MRR.
    """

    amount: Decimal = Field(..., description="Price per unit per billing cycle, in major units.")
    interval: BillingInterval | None = None
    interval_count: int = Field(1, ge=1)
    quantity: int = Field(1, ge=0)
    customer_id: str | None = None
    currency: str = "USD"


class RawRevenuePoint(BaseModel):
    """Revenue summed into a calendar bucket by a provider adapter."""

    date: date
    revenue: Decimal
    currency: str


class CurrentMetrics(BaseModel):
    """Current-state figures derived from active subscriptions."""

    mrr: Decimal = Decimal("0")
    arr: Decimal = Decimal("0")
    total_revenue: Decimal = Decimal("0")
    customer_count: int = 0
    currency: str = "USD"


# ---------------------------------------------------------------------------
# Persisted / exported shapes
# ---------------------------------------------------------------------------


class RevenueSnapshot(BaseModel):
    """One bucketed observation for a connection, upserted on ``(connection_id, date)``."""

    connection_id: str
    date: date
    revenue: Decimal
    mrr: Decimal | None = None
    arr: Decimal | None = None
    customer_count: int | None = None
    currency: str


class RevenueDataPoint(BaseModel):
    """Export shape served by the revenue API and signed by the signing service."""

    date: date
    revenue: float
    mrr: float | None = None
    customer_count: int | None = None
    currency: str


class SignedPayload(BaseModel):
    """Canonical data plus a detached Ed25519 signature and the signer's public key.

    ``signature`` and ``public_key`` are standard base64.  ``timestamp`` is
    milliseconds since the epoch and is not covered by the signature.
    """

    model_config = ConfigDict(frozen=True)

    data: str
    signature: str
    public_key: str
    timestamp: int
    version: str = "1.0"


class SyncResult(BaseModel):
    connection_id: str
    status: SyncStatus
    records_processed: int = 0
    error: str | None = None
