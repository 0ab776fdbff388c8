"""RFC 6238 time-based one-time codes for the bastion's MFA challenge."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import struct
import time
from typing import Optional

from bastion_fleet.errors import InvalidSecretError

TIME_STEP = 30
DIGITS = 6


def decode_secret(secret: str) -> bytes:
    """Decode an RFC 4648 base32 secret; padding is optional."""
    cleaned = secret.strip().replace(" ", "")
    padded = cleaned + "=" * (-len(cleaned) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSecretError(f"Invalid base32 secret: {exc}") from exc


def hotp_code(key: bytes, counter: int) -> str:
    """RFC 4226 HOTP value for *counter*, zero-padded to six digits."""
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    (value,) = struct.unpack(">I", digest[offset:offset + 4])
    return str((value & 0x7FFFFFFF) % 10**DIGITS).zfill(DIGITS)


def totp_code(secret: str, time_bias: int = 3, *, now: Optional[float] = None) -> str:
    """Current TOTP code for a base32 *secret*.

    *time_bias* (seconds) is added to the clock before picking the 30s window,
    compensating for skew between this host and the authentication server.
    """
    key = decode_secret(secret)
    if now is None:
        now = time.time()
    step = int(now + time_bias) // TIME_STEP
    return hotp_code(key, step)
