"""
Utility functions shared by the verification, proof and storage layers.
"""

import hashlib
import hmac
import logging
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def start_of_day_ms(ts_ms: Optional[int] = None) -> int:
    """Epoch milliseconds of the UTC midnight preceding ts_ms (default: now)."""
    if ts_ms is None:
        ts_ms = now_ms()
    return ts_ms - (ts_ms % MS_PER_DAY)


def ms_to_iso(ts_ms: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds as an ISO-8601 UTC string with Z suffix."""
    if ts_ms is None:
        return None
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_token(identity: str) -> str:
    """
    Generate an opaque consent token bound to a subscriber identity.

    Format: {identity}_{base36 timestamp}_{random}
    """
    random_part = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(13))
    return f"{identity}_{to_base36(now_ms())}_{random_part}"


def compute_hmac_signature(payload: bytes, secret: str) -> str:
    """
    Compute a hex-encoded HMAC-SHA256 signature.

    Args:
        payload: Raw bytes to sign
        secret: SIGNING_SECRET

    Returns:
        Hex digest of the signature
    """
    logger.debug(f"Signing payload of {len(payload)} bytes")
    return hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        payload: Raw bytes that were signed
        signature: Hex-encoded signature
        secret: SIGNING_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    expected_signature = compute_hmac_signature(payload, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode("utf-8"), signature.encode("utf-8"))
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
