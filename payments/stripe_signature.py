"""Verification of the ``Stripe-Signature`` webhook header."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import List, Optional, Tuple

DEFAULT_TOLERANCE_SEC = 300
SIGNATURE_SCHEME = "v1"


class InvalidSignature(ValueError):
    """Raised when a webhook payload cannot be authenticated."""


def _parse_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignature("malformed timestamp in signature header") from None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value.strip())
    return timestamp, signatures


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, *, timestamp: Optional[int] = None) -> str:
    """Build a header value for ``payload``, as the processor would send it."""

    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(payload, secret, ts)}"


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str],
    *,
    tolerance: int = DEFAULT_TOLERANCE_SEC,
    now: Optional[float] = None,
) -> int:
    """Check ``header`` against ``payload`` and return the signed timestamp.

    Any ``v1`` entry may match, so rotated secrets keep working during the
    overlap window. A ``tolerance`` of zero disables the replay check.
    """

    if not secret:
        raise InvalidSignature("webhook secret is not configured")
    if not header:
        raise InvalidSignature("missing signature header")

    timestamp, signatures = _parse_header(header)
    if timestamp is None:
        raise InvalidSignature("no timestamp in signature header")
    if not signatures:
        raise InvalidSignature(f"no {SIGNATURE_SCHEME} signatures in header")

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignature("signature mismatch")

    if tolerance > 0:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance:
            raise InvalidSignature("timestamp outside the tolerance zone")
    return timestamp


__all__ = [
    "DEFAULT_TOLERANCE_SEC",
    "InvalidSignature",
    "compute_signature",
    "sign_payload",
    "verify_signature",
]
