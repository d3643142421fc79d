"""Ed25519 signing and verification of exported revenue data.

One key pair exists per deployment.  It is materialized lazily on first use,
in priority order:

1. ``REVENUE_SIGNING_PRIVATE_KEY`` (base64 of a 32-byte seed, or of a
   64-byte ``seed || public key`` secret key);
2. the on-disk key file (``REVENUE_SIGNING_KEY_PATH``);
3. a freshly generated pair, persisted to the key file.

INVARIANT: an existing key is never replaced.  A corrupt key file or an
invalid configured key raises :class:`SigningError`; it does not trigger
regeneration, because that would silently invalidate every signature a
consumer has already verified.

Signed message: the canonical JSON of ``data`` (sorted keys, no
whitespace), UTF-8 encoded.  The timestamp and version are metadata and are
not covered by the signature.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from revenue_engine.errors import SigningError
from revenue_engine.models import SignedPayload

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "1.0"

_SEED_BYTES = 32
_SECRET_KEY_BYTES = 64


def canonicalize(data: Any) -> str:
    """Serialize *data* to canonical JSON (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _b64decode_strict(value: str) -> bytes:
    """Decode standard base64, rejecting non-canonical encodings.

    Unused trailing bits make several strings decode to the same bytes; only
    the canonical encoding is accepted so that any change to the encoded
    string changes what is verified.
    """
    raw = base64.b64decode(value.encode("ascii"), validate=True)
    if base64.b64encode(raw).decode("ascii") != value:
        raise ValueError("non-canonical base64")
    return raw


def _raw_public_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def _raw_private_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())


class SigningKeyPair:
    """An Ed25519 private key with its raw public key bytes."""

    def __init__(self, private_key: Ed25519PrivateKey, created_at: datetime | None = None) -> None:
        self.private_key = private_key
        self.public_bytes = _raw_public_bytes(private_key)
        self.created_at = created_at or datetime.now(UTC)

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_bytes).decode("ascii")

    @classmethod
    def from_secret(cls, secret_b64: str) -> SigningKeyPair:
        """Build a key pair from a base64 seed or 64-byte secret key.

        Raises
        ------
        SigningError
            If the value is not base64, has the wrong length, or its public
            half does not match the seed.
        """
        try:
            raw = base64.b64decode(secret_b64.strip().encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SigningError("Configured signing key is not valid base64") from exc

        if len(raw) == _SECRET_KEY_BYTES:
            seed, embedded_public = raw[:_SEED_BYTES], raw[_SEED_BYTES:]
        elif len(raw) == _SEED_BYTES:
            seed, embedded_public = raw, None
        else:
            raise SigningError(
                f"Configured signing key must be {_SEED_BYTES} or {_SECRET_KEY_BYTES} bytes, got {len(raw)}"
            )

        pair = cls(Ed25519PrivateKey.from_private_bytes(seed))
        if embedded_public is not None and embedded_public != pair.public_bytes:
            raise SigningError("Configured signing key: public half does not match the seed")
        return pair

    def to_file_payload(self) -> dict[str, str]:
        return {
            "public_key": self.public_key_b64,
            "private_key": base64.b64encode(_raw_private_bytes(self.private_key)).decode("ascii"),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_file_payload(cls, payload: dict[str, Any]) -> SigningKeyPair:
        try:
            seed = base64.b64decode(str(payload["private_key"]).encode("ascii"), validate=True)
            created_at = datetime.fromisoformat(str(payload["created_at"]))
            expected_public = base64.b64decode(str(payload["public_key"]).encode("ascii"), validate=True)
            pair = cls(Ed25519PrivateKey.from_private_bytes(seed), created_at=created_at)
        except (KeyError, ValueError, binascii.Error) as exc:
            raise SigningError(f"Signing key file is corrupt: {exc}") from exc

        if pair.public_bytes != expected_public:
            raise SigningError("Signing key file is corrupt: public key does not match private key")
        return pair


class SigningService:
    """Holds the deployment key pair; signs and verifies JSON payloads.

    The key pair is read-only once materialized, so :meth:`sign` and
    :meth:`verify` are safe to call concurrently.

    Parameters
    ----------
    private_key_b64:
        Optional configured secret (highest priority).
    key_path:
        Location of the persisted key file.
    """

    def __init__(
        self,
        private_key_b64: str | None = None,
        key_path: Path | str = Path("data/signing-key.json"),
    ) -> None:
        self._configured_secret = private_key_b64 or None
        self._key_path = Path(key_path)
        self._key_pair: SigningKeyPair | None = None
        self._lock = threading.Lock()

    @property
    def key_path(self) -> Path:
        return self._key_path

    @property
    def is_loaded(self) -> bool:
        return self._key_pair is not None

    def key_pair(self) -> SigningKeyPair:
        """Return the key pair, materializing it on first call."""
        if self._key_pair is not None:
            return self._key_pair
        with self._lock:
            if self._key_pair is None:
                self._key_pair = self._materialize()
        return self._key_pair

    def public_key(self) -> str:
        """Base64 raw public key of the deployment key pair."""
        return self.key_pair().public_key_b64

    def _materialize(self) -> SigningKeyPair:
        if self._configured_secret is not None:
            pair = SigningKeyPair.from_secret(self._configured_secret)
            logger.info("Signing key loaded from configuration")
            return pair

        if self._key_path.exists():
            pair = self._load_key_file()
            logger.info("Signing key loaded from %s", self._key_path)
            return pair

        return self._generate_and_persist()

    def _load_key_file(self) -> SigningKeyPair:
        try:
            payload = json.loads(self._key_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SigningError(f"Cannot read signing key file {self._key_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SigningError(f"Signing key file {self._key_path} is corrupt")
        return SigningKeyPair.from_file_payload(payload)

    def _generate_and_persist(self) -> SigningKeyPair:
        pair = SigningKeyPair(Ed25519PrivateKey.generate())
        content = json.dumps(pair.to_file_payload(), indent=2)

        try:
            self._key_path.parent.mkdir(parents=True, exist_ok=True)
            # O_EXCL: another process may have written the file since the
            # existence check; its key wins.
            fd = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return self._load_key_file()
        except OSError as exc:
            raise SigningError(f"Cannot persist signing key to {self._key_path}: {exc}") from exc

        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)

        logger.info("Generated new signing key pair at %s (public key %s)", self._key_path, pair.public_key_b64)
        return pair

    # -- Operations ----------------------------------------------------------

    def sign(self, data: Any) -> SignedPayload:
        """Sign *data* and package it with the public key.

        Raises
        ------
        SigningError
            If the key pair cannot be materialized.
        """
        pair = self.key_pair()
        canonical = canonicalize(data)
        signature = pair.private_key.sign(canonical.encode("utf-8"))
        return SignedPayload(
            data=canonical,
            signature=base64.b64encode(signature).decode("ascii"),
            public_key=pair.public_key_b64,
            timestamp=int(time.time() * 1000),
            version=SIGNATURE_VERSION,
        )

    @staticmethod
    def verify(signed: SignedPayload, *, expected_public_key: str | None = None) -> bool:
        """Return ``True`` only if ``signed.signature`` is valid for ``signed.data``.

        The embedded public key only proves that these exact bytes were
        signed by the holder of the matching private key.  Pass
        *expected_public_key* to additionally pin the signer.
        """
        if expected_public_key is not None and signed.public_key != expected_public_key:
            return False
        try:
            public_bytes = _b64decode_strict(signed.public_key)
            signature = _b64decode_strict(signed.signature)
            public_key = Ed25519PublicKey.from_public_bytes(public_bytes)
            public_key.verify(signature, signed.data.encode("utf-8"))
        except (InvalidSignature, ValueError, binascii.Error, UnicodeEncodeError):
            return False
        return True

    @staticmethod
    def load_data(signed: SignedPayload) -> Any:
        """Decode the signed canonical JSON back into Python objects."""
        return json.loads(signed.data)
