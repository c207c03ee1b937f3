"""
Credential vault — encrypt / decrypt secrets at rest.

Uses AES-256-GCM from the ``cryptography`` library.  The cipher key is
never the configured master secret itself: ``config.encryption_key``
(env var: ``ENCRYPTION_KEY``) is stretched with PBKDF2-HMAC-SHA256
(100 000 iterations, fixed application salt) into 32 bytes.

Ciphertext format is three base64 segments joined by ``:``::

    <iv>:<tag>:<ciphertext>

Anything malformed or tampered with raises ``DecryptionError``; there is
no plaintext fallback.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config.settings import config

logger = logging.getLogger(__name__)

_KEY_LENGTH = 32
_IV_LENGTH = 16
_TAG_LENGTH = 16
_KDF_ITERATIONS = 100_000
_KDF_SALT = b"listvault-credential-vault-salt"


class DecryptionError(Exception):
    """Ciphertext is malformed, truncated, tampered with, or from another key."""

    retryable = False


class VaultNotConfigured(RuntimeError):
    pass


@lru_cache(maxsize=8)
def derive_key(master_secret: str) -> bytes:
    """Stretch the master secret into a 32-byte AES key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(master_secret.encode("utf-8"))


def _b64decode(segment: str, what: str) -> bytes:
    try:
        return base64.b64decode(segment.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecryptionError(f"Invalid base64 in {what}") from exc


class CredentialVault:
    """Authenticated encryption over every stored secret."""

    def __init__(self, master_secret: str):
        if not master_secret:
            raise VaultNotConfigured(
                "ENCRYPTION_KEY is not set; refusing to store credentials unencrypted"
            )
        self._key = derive_key(master_secret)
        self._aead = AESGCM(self._key)

    # ── bytes API ───────────────────────────────────────────────────────

    def encrypt_bytes(self, plaintext: bytes) -> str:
        iv = os.urandom(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return ":".join(
            base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
        )

    def decrypt_bytes(self, token: str) -> bytes:
        if not isinstance(token, str):
            raise DecryptionError("Ciphertext must be a string")
        parts = token.split(":")
        if len(parts) != 3:
            raise DecryptionError(
                "Invalid ciphertext format. Expected format: iv:tag:encryptedData"
            )
        iv = _b64decode(parts[0], "IV")
        tag = _b64decode(parts[1], "authentication tag")
        ciphertext = _b64decode(parts[2], "ciphertext")
        if len(iv) != _IV_LENGTH:
            raise DecryptionError("Invalid IV length")
        if len(tag) != _TAG_LENGTH:
            raise DecryptionError("Invalid authentication tag length")
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication failed; ciphertext rejected") from exc

    # ── text API ────────────────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, token: str) -> str:
        raw = self.decrypt_bytes(token)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from exc

    def fingerprint(self, plaintext: str) -> str:
        """
        Keyed, deterministic digest of *plaintext*.

        Lets the store tell whether an email changed without decrypting it.
        """
        return hmac.new(
            self._key, b"fingerprint:" + plaintext.encode("utf-8"), hashlib.sha256
        ).hexdigest()


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Lazy-initialise the process-wide vault from config once."""
    global _vault
    if _vault is None:
        _vault = CredentialVault(config.encryption_key)
        logger.info("Credential vault initialised (AES-256-GCM, PBKDF2-derived key)")
    return _vault
