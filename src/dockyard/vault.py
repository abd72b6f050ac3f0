"""Secret vault: symmetric encryption for small secrets kept in session metadata.

Per-sandbox agent credentials and third-party tokens are stored inline in
JSON metadata, encrypted with AES-256-GCM. The key is the SHA-256 digest of a
single process-wide secret (``DOCKYARD_AUTH_SECRET``), so there is no
per-secret key management.

Token format::

    hex(nonce) : hex(ciphertext) : hex(tag)

with a 96-bit random nonce per call and a 128-bit authentication tag.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dockyard.errors import DockyardError

logger = logging.getLogger(__name__)

AUTH_SECRET_ENV = "DOCKYARD_AUTH_SECRET"

NONCE_BYTES = 12
TAG_BYTES = 16


class DecryptionError(DockyardError):
    """Ciphertext is malformed or failed authentication."""


class SecretVault:
    """AES-256-GCM encrypt/decrypt keyed off one shared secret."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError(f"{AUTH_SECRET_ENV} must be a non-empty string")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    @classmethod
    def from_env(cls) -> SecretVault:
        secret = os.environ.get(AUTH_SECRET_ENV)
        if not secret:
            raise RuntimeError(f"{AUTH_SECRET_ENV} is required to encrypt sandbox credentials")
        return cls(secret)

    def encrypt(self, plaintext: str | bytes) -> str:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        nonce = secrets.token_bytes(NONCE_BYTES)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(nonce, data, None)
        body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{body.hex()}:{tag.hex()}"

    def decrypt_bytes(self, token: str) -> bytes:
        if not isinstance(token, str):
            raise DecryptionError("Invalid ciphertext format: expected a string")
        parts = token.split(":")
        if len(parts) != 3 or not parts[0] or not parts[2]:
            raise DecryptionError("Invalid ciphertext format: expected nonce:ciphertext:tag")
        nonce_hex, body_hex, tag_hex = parts
        try:
            nonce = bytes.fromhex(nonce_hex)
            body = bytes.fromhex(body_hex)
            tag = bytes.fromhex(tag_hex)
        except ValueError as e:
            raise DecryptionError(f"Invalid ciphertext format: {e}") from e
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Invalid ciphertext format: wrong nonce or tag length")
        try:
            return self._aead.decrypt(nonce, body + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag did not verify") from e

    def decrypt(self, token: str) -> str:
        data = self.decrypt_bytes(token)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from e

    def decrypt_or_none(self, token: str | None) -> str | None:
        """Decrypt, returning None when the token is absent or unusable.

        A session whose credential cannot be decrypted (corrupted, or written
        under a different secret) must still be inspectable and deletable, so
        callers treat this as "no credential available".
        """
        if not token:
            return None
        try:
            return self.decrypt(token)
        except DecryptionError:
            logger.warning("Stored secret could not be decrypted; treating as absent")
            return None
