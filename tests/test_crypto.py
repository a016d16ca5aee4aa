"""
tests/test_crypto.py -- Unit tests for core/crypto.py.

Coverage:
  - decrypt(encrypt(x)) == x for text and arbitrary bytes
  - randomized nonce: same plaintext encrypts differently
  - fail closed: truncated, non-base64, tampered, and wrong-key payloads raise CipherError
  - key policy: missing or short keys rejected
  - secret / code / hash helpers
"""

from __future__ import annotations

import base64
import os
import re

import pytest

from core.crypto import (
    NONCE_LENGTH,
    TAG_LENGTH,
    CipherError,
    SecretCipher,
    generate_numeric_code,
    generate_secret,
    hash_token,
)

KEY = "k" * 32


class TestSecretCipher:
    @pytest.mark.parametrize(
        "plaintext",
        [b"", b"\x00", b"JBSWY3DPEHPK3PXP", os.urandom(1), os.urandom(257), bytes(range(256))],
    )
    def test_decrypt_inverts_encrypt_for_bytes(self, plaintext: bytes) -> None:
        cipher = SecretCipher(KEY)
        assert cipher.decrypt_bytes(cipher.encrypt_bytes(plaintext)) == plaintext

    def test_text_round_trip(self) -> None:
        cipher = SecretCipher("a much longer configured secret value " * 3)
        assert cipher.decrypt(cipher.encrypt("JBSWY3DPEHPK3PXP")) == "JBSWY3DPEHPK3PXP"

    def test_encryption_is_randomized(self) -> None:
        cipher = SecretCipher(KEY)
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_payload_layout_is_nonce_tag_ciphertext(self) -> None:
        cipher = SecretCipher(KEY)
        raw = base64.b64decode(cipher.encrypt_bytes(b"abcd"))
        assert len(raw) == NONCE_LENGTH + TAG_LENGTH + 4

    def test_truncated_payload_rejected(self) -> None:
        cipher = SecretCipher(KEY)
        short = base64.b64encode(b"\x00" * (NONCE_LENGTH + TAG_LENGTH - 1)).decode()
        with pytest.raises(CipherError):
            cipher.decrypt(short)

    def test_non_base64_rejected(self) -> None:
        with pytest.raises(CipherError):
            SecretCipher(KEY).decrypt("not base64 at all!!")

    def test_tampered_ciphertext_rejected(self) -> None:
        cipher = SecretCipher(KEY)
        raw = bytearray(base64.b64decode(cipher.encrypt("seed-value")))
        raw[-1] ^= 0x01
        with pytest.raises(CipherError):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_tampered_tag_rejected(self) -> None:
        cipher = SecretCipher(KEY)
        raw = bytearray(base64.b64decode(cipher.encrypt("seed-value")))
        raw[NONCE_LENGTH] ^= 0x80
        with pytest.raises(CipherError):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_wrong_key_rejected(self) -> None:
        payload = SecretCipher(KEY).encrypt("seed-value")
        with pytest.raises(CipherError):
            SecretCipher("x" * 32).decrypt(payload)

    @pytest.mark.parametrize("secret", ["", "short", "k" * 31])
    def test_weak_keys_rejected(self, secret: str) -> None:
        with pytest.raises(CipherError):
            SecretCipher(secret)


class TestTokenHelpers:
    def test_secret_is_64_random_bytes_hex(self) -> None:
        secret = generate_secret()
        assert re.fullmatch(r"[0-9a-f]{128}", secret)
        assert generate_secret() != secret

    def test_numeric_code_is_six_digits(self) -> None:
        for _ in range(50):
            assert re.fullmatch(r"\d{6}", generate_numeric_code())

    def test_hash_token_is_sha256_hex(self) -> None:
        assert hash_token("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
