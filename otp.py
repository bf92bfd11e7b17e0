"""
HOTP / TOTP code generation for AuthVault (RFC 4226 / RFC 6238).
"""
import base64
import binascii
import hashlib
import hmac
import logging
import struct
import time
from enum import Enum
from typing import Optional, Tuple

import pyotp

from errors import InvalidSecretError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_DIGITS = 6
DEFAULT_PERIOD = 30


class Algorithm(Enum):
    """Hash algorithms accepted for OTP generation."""
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"
    MD5 = "MD5"

    @classmethod
    def from_name(cls, name: Optional[str]) -> "Algorithm":
        """
        Resolve an algorithm name.

        Empty or unknown names resolve to SHA1 instead of raising, so records
        written by other tools keep producing codes.
        """
        try:
            return cls((name or "").strip().upper())
        except ValueError:
            if name:
                logger.debug("Unknown OTP algorithm %r, using SHA1", name)
            return cls.SHA1


class OtpType(Enum):
    TOTP = "TOTP"
    HOTP = "HOTP"

    @classmethod
    def from_name(cls, name: Optional[str]) -> "OtpType":
        if (name or "").strip().upper() == "HOTP":
            return cls.HOTP
        return cls.TOTP


HASH_FUNCTIONS = {
    Algorithm.SHA1: hashlib.sha1,
    Algorithm.SHA256: hashlib.sha256,
    Algorithm.SHA512: hashlib.sha512,
    Algorithm.MD5: hashlib.md5,
}


def normalize_secret(secret: str) -> str:
    """Upper-case a base32 secret and drop all whitespace."""
    return "".join((secret or "").split()).upper()


def decode_secret(secret: str) -> bytes:
    """
    Decode a textual base32 secret to raw bytes.

    Padding is optional. Raises InvalidSecretError on anything that is not base32.
    """
    normalized = normalize_secret(secret).rstrip("=")
    normalized += "=" * (-len(normalized) % 8)
    try:
        return base64.b32decode(normalized, casefold=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecretError(f"invalid secret: {e}") from e


def encode_secret(raw: bytes) -> str:
    """Encode raw secret bytes as padded upper-case base32 text."""
    return base64.b32encode(raw).decode('ascii')


def generate_secret() -> str:
    """Generate a new random base32 secret."""
    return pyotp.random_base32()


def dynamic_truncate(digest: bytes) -> int:
    """
    RFC 4226 dynamic truncation.

    Offset is the low nibble of the last byte; the 4 bytes at that offset are
    read big-endian with the sign bit cleared. MD5 digests are only 16 bytes
    long, so the offset is clamped to keep the window inside the digest.
    """
    offset = min(digest[-1] & 0x0F, len(digest) - 4)
    return struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF


def _normalize_digits(digits: int) -> int:
    if not digits:
        return DEFAULT_DIGITS
    if not 1 <= digits <= 10:
        raise ValueError(f"unsupported digit count: {digits}")
    return digits


def _normalize_period(period: int) -> int:
    return period if period and period > 0 else DEFAULT_PERIOD


def _now(now: Optional[float]) -> int:
    return int(time.time() if now is None else now)


def generate_hotp(secret: str, algorithm: str, digits: int, counter: int) -> str:
    """
    Generate an HOTP code.

    Args:
        secret: Base32 secret (case and whitespace insignificant)
        algorithm: SHA1, SHA256, SHA512 or MD5; anything else means SHA1
        digits: Code length; 0 means 6
        counter: Moving factor

    Returns:
        Zero-padded numeric code of exactly `digits` characters

    Raises:
        InvalidSecretError: If the secret is not valid base32
    """
    key = decode_secret(secret)
    digits = _normalize_digits(digits)
    digest = HASH_FUNCTIONS[Algorithm.from_name(algorithm)]

    mac = hmac.new(key, struct.pack(">Q", counter & 0xFFFFFFFFFFFFFFFF), digest).digest()
    code = dynamic_truncate(mac) % (10 ** digits)
    return str(code).zfill(digits)


def generate_totp(secret: str, algorithm: str, digits: int, period: int,
                  now: Optional[float] = None) -> Tuple[str, int]:
    """
    Generate a TOTP code for the current (or given) unix time.

    Returns:
        Tuple of (code, seconds_remaining)
    """
    period = _normalize_period(period)
    timestamp = _now(now)

    code = generate_hotp(secret, algorithm, digits, timestamp // period)
    return code, period - (timestamp % period)


def remaining_seconds(period: int, now: Optional[float] = None) -> int:
    """Seconds until the next TOTP code."""
    period = _normalize_period(period)
    return period - (_now(now) % period)


def progress(period: int, now: Optional[float] = None) -> int:
    """Percentage (0-99) of the current TOTP period already elapsed."""
    period = _normalize_period(period)
    return (_now(now) % period) * 100 // period


def validate_hotp(secret: str, code: str, algorithm: str, digits: int, counter: int) -> bool:
    """Check a candidate HOTP code."""
    try:
        expected = generate_hotp(secret, algorithm, digits, counter)
    except InvalidSecretError:
        return False
    return hmac.compare_digest(expected, code or "")


def validate_totp(secret: str, code: str, algorithm: str, digits: int, period: int,
                  now: Optional[float] = None) -> bool:
    """Check a candidate TOTP code against the current time step."""
    try:
        expected, _ = generate_totp(secret, algorithm, digits, period, now)
    except InvalidSecretError:
        return False
    return hmac.compare_digest(expected, code or "")
