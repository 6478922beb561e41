"""Short-lived processing locks for webhook deliveries."""

from __future__ import annotations

import logging
from typing import Optional

from redis_utils import acquire_ttl_lock, release_ttl_lock

log = logging.getLogger("payments.stripe.storage")

_LOCK_TTL = 30


def _lock_name(payment_intent_id: str) -> str:
    return f"stripe:lock:{payment_intent_id}"


def acquire_payment_lock(payment_intent_id: str, ttl: int = _LOCK_TTL) -> Optional[str]:
    """Return the owner token, or ``None`` while another delivery holds the lock."""

    token = acquire_ttl_lock(_lock_name(payment_intent_id), ttl)
    if token is None:
        log.info("payments.lock.busy", extra={"meta": {"payment_intent_id": payment_intent_id}})
    return token


def release_payment_lock(payment_intent_id: str, token: str) -> None:
    release_ttl_lock(_lock_name(payment_intent_id), token)


__all__ = ["acquire_payment_lock", "release_payment_lock"]
