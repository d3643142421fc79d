"""Exception taxonomy shared by the engine, the API, and the CLI.

``CredentialError`` and ``ProviderError`` are caught at the per-connection
boundary of the sync orchestrator and recorded in the sync log.
``ValidationError`` and ``SigningError`` reach the API caller synchronously.
"""

from __future__ import annotations


class RevenueEngineError(Exception):
    """Base class for all revenue engine errors."""


class CredentialError(RevenueEngineError):
    """Stored credentials are missing, invalid, or cannot be decrypted.

    The connection stays unusable until its credentials are re-entered.
    """


class DecryptionError(CredentialError):
    """A vault token is malformed, truncated, or fails authentication."""


class ProviderError(RevenueEngineError):
    """A payment processor API was unreachable or returned unusable data.

    Treated as transient: the connection is retried on the next scheduled
    pass, never immediately.
    """

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ValidationError(RevenueEngineError):
    """Malformed request input, rejected before any side effect."""


class NotFoundError(RevenueEngineError):
    """A referenced connection or key does not exist."""


class SigningError(RevenueEngineError):
    """The signing key pair is unavailable or corrupt."""
