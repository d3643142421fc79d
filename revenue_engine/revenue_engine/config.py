"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from revenue_engine.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES: frozenset[str] = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})


def normalize_currency(code: str) -> str:
    """Upper-case *code* and check it is supported.

    Raises
    ------
    ValidationError
        If the currency is not one of :data:`SUPPORTED_CURRENCIES`.
    """
    value = code.strip().upper()
    if value not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency {code!r}; expected one of {sorted(SUPPORTED_CURRENCIES)}")
    return value


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with REVENUE_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="REVENUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/revenue.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Credential vault.  The AES key is derived from this secret at startup
    # and is never written anywhere.
    encryption_secret: SecretStr = SecretStr("revenue-dev-secret-change-in-production")

    # Signing key pair.  A configured key wins over the on-disk key file.
    signing_private_key: SecretStr | None = None
    signing_key_path: Path = Path("data/signing-key.json")

    # Sync
    sync_interval_hours: float = Field(24.0, gt=0)
    sync_initial_delay_seconds: float = Field(5.0, ge=0)
    sync_lookback_days: int = Field(90, ge=1)
    sync_interval: str = "daily"

    # Health
    stale_after_hours: float = Field(48.0, gt=0)

    # Providers
    default_currency: str = "USD"
    provider_timeout: float = 30.0

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        try:
            return normalize_currency(v)
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("sync_interval")
    @classmethod
    def _known_interval(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in ("daily", "weekly", "monthly", "yearly"):
            raise ValueError(f"Unsupported sync interval {v!r}")
        return value


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
