import hashlib
import hmac
from typing import Optional


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()


def _constant_time_equals(expected: str, provided: str) -> bool:
    if len(expected) != len(provided):
        return False
    mismatch = 0
    for a, b in zip(expected, provided):
        mismatch |= ord(a) ^ ord(b)
    return mismatch == 0


def verify_signature(
    secret: Optional[str],
    provided_signature: Optional[str],
    raw_body: bytes,
) -> bool:
    """
    Check the X-Signature value against HMAC-SHA256(secret, raw_body).
    Returns False (never raises) when either side is missing.
    """
    if not secret or not provided_signature:
        return False
    expected = compute_signature(secret, raw_body)
    return _constant_time_equals(expected, provided_signature)
