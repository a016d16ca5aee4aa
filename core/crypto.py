"""
core/crypto.py -- Secret generation, token hashing, and at-rest encryption.

Security design decisions:
  Token secrets: secrets.token_hex(64) -- 512 bits of entropy, returned to the
       caller exactly once. Only SHA-256(raw) is ever persisted. A plain hash
       (no HMAC key) is sufficient because the input is high-entropy random
       data, not a guessable password.

  One-time codes: 6 decimal digits from secrets.randbelow(). Low entropy is
       acceptable only because codes are short-lived and single-use.

  SecretCipher: AES-256-GCM (cryptography's AESGCM). The 32-byte key is
       SHA-256 of the configured secret. Each encryption draws a fresh 96-bit
       nonce, so encrypting the same plaintext twice yields different output.
       Payload layout: base64( nonce(12) | tag(16) | ciphertext ).
       Decryption fails closed -- truncated, malformed, or tampered payloads
       raise CipherError rather than returning garbage.

Layer rule: core/ may not import from api/ or auth/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_LENGTH = 12
TAG_LENGTH = 16
_MIN_SECRET_LENGTH = 32


class CipherError(Exception):
    """Ciphertext could not be decrypted, or the cipher is misconfigured."""


# ---------------------------------------------------------------------------
# Token secrets
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    """Return a 64-byte random secret encoded as 128 hex characters."""
    return secrets.token_hex(64)


def generate_numeric_code(digits: int = 6) -> str:
    """Return a zero-padded random decimal code, e.g. '004217'."""
    return str(secrets.randbelow(10**digits)).zfill(digits)


def hash_token(raw: str) -> str:
    """Return the SHA-256 hex digest stored in place of a raw token secret."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------


class SecretCipher:
    """AES-256-GCM cipher keyed from a configured secret.

    Usage:
        cipher = SecretCipher(settings.two_factor_encryption_key)
        blob = cipher.encrypt("JBSWY3DPEHPK3PXP")
        cipher.decrypt(blob)  # -> "JBSWY3DPEHPK3PXP"
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise CipherError("Encryption key is not configured")
        if len(secret) < _MIN_SECRET_LENGTH:
            raise CipherError(f"Encryption key must be at least {_MIN_SECRET_LENGTH} characters long")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt_bytes(self, plaintext: bytes) -> str:
        nonce = secrets.token_bytes(NONCE_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext; move it in front.
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt_bytes(self, payload: str) -> bytes:
        try:
            data = base64.b64decode(payload.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
            raise CipherError("Invalid encrypted payload") from e
        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            raise CipherError("Invalid encrypted payload")
        nonce = data[:NONCE_LENGTH]
        tag = data[NONCE_LENGTH : NONCE_LENGTH + TAG_LENGTH]
        ciphertext = data[NONCE_LENGTH + TAG_LENGTH :]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise CipherError("Encrypted payload failed authentication") from e

    def encrypt(self, plaintext: str) -> str:
        """Encrypt UTF-8 text and return the base64 payload."""
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, payload: str) -> str:
        """Decrypt a payload produced by encrypt(). Raises CipherError on any tampering."""
        return self.decrypt_bytes(payload).decode("utf-8")
