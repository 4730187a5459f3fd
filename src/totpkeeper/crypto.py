"""AES-256-GCM encryption for the account file (it holds every TOTP secret)."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from totpkeeper.config import settings

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM


def generate_key() -> str:
    """New random master key, base64-encoded."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()


def load_key(raw: str | None = None) -> bytes:
    """Decode and check a base64 master key (the configured one by default)."""
    raw = settings.master_key if raw is None else raw
    if not raw:
        raise RuntimeError("TOTPKEEPER_MASTER_KEY not set")
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise ValueError("TOTPKEEPER_MASTER_KEY is not valid base64") from e
    if len(key) != 32:
        raise ValueError("TOTPKEEPER_MASTER_KEY must be 32 bytes (base64-encoded)")
    return key


def encrypt(plaintext: str, key: str | None = None) -> str:
    """Encrypt a string. Returns base64(nonce + ciphertext)."""
    nonce = os.urandom(_NONCE_SIZE)
    ct = AESGCM(load_key(key)).encrypt(nonce, plaintext.encode(), None)
    return base64.b64encode(nonce + ct).decode()


def decrypt(token: str, key: str | None = None) -> str:
    """Decrypt a base64(nonce + ciphertext) token back to plaintext."""
    raw = base64.b64decode(token)
    nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    return AESGCM(load_key(key)).decrypt(nonce, ct, None).decode()
