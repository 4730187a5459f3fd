"""TOTP code generation and secret handling.

Uses pyotp for the HOTP primitive. The time-step counter is computed here
from a floored integer timestamp so every caller agrees on exactly when a
code rolls over.
"""

from __future__ import annotations

import base64
import binascii
import math
import re
from typing import Any, NamedTuple

import pyotp

from totpkeeper.clock import Clock, system_clock
from totpkeeper.errors import ImportValidationError, InvalidSecret

DEFAULT_STEP_SECONDS = 30
DEFAULT_DIGITS = 6
MIN_SECRET_BYTES = 10  # 80 bits

_BASE32_RE = re.compile(r"^[A-Z2-7]+$")
_SEPARATORS_RE = re.compile(r"[\s-]+")
_BAD_BASE32_REMAINDERS = {1, 3, 6}


class TokenResult(NamedTuple):
    code: str
    seconds_remaining: int


def normalize_secret(raw: str) -> str:
    """Canonical form of a base32 secret: upper case, no separators or padding."""
    if not isinstance(raw, str):
        raise InvalidSecret("Secret must be a string")
    return _SEPARATORS_RE.sub("", raw).upper().rstrip("=")


def validate_secret(raw: str) -> str:
    """Return the normalized secret or raise InvalidSecret."""
    secret = normalize_secret(raw)
    if not secret:
        raise InvalidSecret("Secret is empty")
    if not _BASE32_RE.match(secret):
        raise InvalidSecret("Secret contains characters outside the base32 alphabet")
    if len(secret) % 8 in _BAD_BASE32_REMAINDERS:
        raise InvalidSecret(f"Secret has an impossible base32 length ({len(secret)})")
    try:
        key = base64.b32decode(secret + "=" * (-len(secret) % 8))
    except binascii.Error as e:
        raise InvalidSecret(f"Secret is not valid base32: {e}") from e
    if len(key) < MIN_SECRET_BYTES:
        raise InvalidSecret(
            f"Secret too short: {len(key) * 8} bits, need at least {MIN_SECRET_BYTES * 8}"
        )
    return secret


def _unix_seconds(time_source: Clock | float | int | None) -> int:
    if time_source is None:
        now = system_clock.time()
    elif hasattr(time_source, "time"):
        now = time_source.time()
    else:
        now = float(time_source)
    return math.floor(now)


def compute(
    secret_key: str,
    time_source: Clock | float | int | None = None,
    step_seconds: int = DEFAULT_STEP_SECONDS,
    digits: int = DEFAULT_DIGITS,
) -> TokenResult:
    """Compute the code valid at ``time_source`` and how long it stays valid.

    ``time_source`` may be a Clock, a Unix timestamp, or None for the
    system clock. ``seconds_remaining`` is always in ``[1, step_seconds]``.
    """
    if step_seconds < 1:
        raise ValueError("step_seconds must be >= 1")
    if not 1 <= digits <= 10:
        raise ValueError("digits must be between 1 and 10")
    secret = validate_secret(secret_key)
    unix_time = _unix_seconds(time_source)
    counter = unix_time // step_seconds
    code = pyotp.TOTP(secret, digits=digits, interval=step_seconds).generate_otp(counter)
    return TokenResult(code=code, seconds_remaining=step_seconds - unix_time % step_seconds)


def generate_secret() -> str:
    """Generate a new TOTP secret (base32-encoded, 32 chars)."""
    return pyotp.random_base32()


def provisioning_uri(secret_key: str, account_name: str, issuer: str | None = None) -> str:
    """Get the otpauth:// URI for QR code enrollment or export."""
    return pyotp.TOTP(validate_secret(secret_key)).provisioning_uri(
        name=account_name, issuer_name=issuer
    )


def record_from_uri(uri: str) -> dict[str, Any]:
    """Decode a scanned otpauth://totp/ URI into an import record."""
    try:
        otp = pyotp.parse_uri(uri)
    except ValueError as e:
        raise ImportValidationError(f"Unreadable otpauth URI: {e}") from e
    if not isinstance(otp, pyotp.TOTP):
        raise ImportValidationError("Only time-based (totp) URIs are supported")
    return {
        "account_name": otp.name or "",
        "issuer": otp.issuer,
        "secret_key": otp.secret,
    }
