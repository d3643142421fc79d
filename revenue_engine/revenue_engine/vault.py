"""Credential vault: AES-256-GCM encryption of processor credentials at rest.

Token layout (before URL-safe base64 encoding)::

    iv (12 bytes) || ciphertext || auth tag (16 bytes)

A fresh random IV is drawn for every call, so encrypting the same plaintext
twice yields two different tokens.  The AES key is derived once from the
deployment secret with HKDF-SHA256 and held in memory only.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from revenue_engine.errors import CredentialError, DecryptionError

logger = logging.getLogger(__name__)

_IV_BYTES = 12
_TAG_BYTES = 16
_KEY_INFO = b"revenue-engine/credential-vault/v1"


def derive_key(secret: str) -> bytes:
    """Derive a 256-bit AES key from a deployment secret."""
    if not secret:
        raise CredentialError("Credential vault secret is empty")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_KEY_INFO)
    return hkdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """Symmetric encrypt/decrypt of processor credentials.

    Parameters
    ----------
    secret:
        Deployment secret the AES key is derived from.  Changing it makes
        every stored token undecryptable.
    """

    def __init__(self, secret: str) -> None:
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* and return a URL-safe base64 token."""
        iv = os.urandom(_IV_BYTES)
        ciphertext = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises
        ------
        DecryptionError
            If the token is not valid base64, is too short to hold an IV and
            tag, or fails GCM authentication (tampered or wrong key).
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise DecryptionError("Credential token is not valid base64") from exc

        if len(raw) < _IV_BYTES + _TAG_BYTES:
            raise DecryptionError(f"Credential token is truncated ({len(raw)} bytes)")

        iv, ciphertext = raw[:_IV_BYTES], raw[_IV_BYTES:]
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            logger.warning("Credential token failed authentication")
            raise DecryptionError("Credential token failed authentication") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted credential is not valid UTF-8") from exc

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return None
        return self.encrypt(plaintext)

    def decrypt_optional(self, token: str | None) -> str | None:
        if token is None:
            return None
        return self.decrypt(token)
