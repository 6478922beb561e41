import logging
import time
import uuid
from threading import Lock
from typing import Dict, Optional, Tuple

import redis

from settings import REDIS_PREFIX, REDIS_URL

_logger = logging.getLogger("redis-utils")

_r = redis.from_url(REDIS_URL) if REDIS_URL else None
rds = _r
_PFX = REDIS_PREFIX

_memory_store: Dict[str, Tuple[float, str]] = {}
_memory_lock = Lock()

if not REDIS_URL:
    _logger.warning(
        "REDIS_URL is not configured; falling back to in-memory lock store"
    )


def prefixed(name: str) -> str:
    return f"{_PFX}:{name}"


_RELEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _memory_delete_if_owner(key: str, token: str) -> None:
    with _memory_lock:
        entry = _memory_store.get(key)
        if entry and entry[1] == token:
            _memory_store.pop(key, None)


def _memory_set_if_absent(key: str, value: str, ttl: int) -> bool:
    now = time.time()
    expires_at = now + max(ttl, 1)
    with _memory_lock:
        entry = _memory_store.get(key)
        if entry:
            expires, _ = entry
            if expires > now:
                return False
        _memory_store[key] = (expires_at, value)
        return True


def acquire_ttl_lock(name: str, ttl: int) -> Optional[str]:
    """Take a short-lived named lock.

    Returns the owner token to pass to :func:`release_ttl_lock`, or ``None``
    when someone else holds the lock.
    """

    key = prefixed(name)
    token = uuid.uuid4().hex
    if _r:
        try:
            return token if _r.set(key, token, nx=True, ex=max(ttl, 1)) else None
        except Exception as exc:
            _logger.warning("lock.acquire.error | key=%s err=%s", key, exc)
    return token if _memory_set_if_absent(key, token, ttl) else None


def release_ttl_lock(name: str, token: str) -> None:
    """Release the lock only while ``token`` still owns it."""

    key = prefixed(name)
    if _r:
        try:
            _r.eval(_RELEASE_LUA, 1, key, token)
        except Exception as exc:
            _logger.warning("lock.release.error | key=%s err=%s", key, exc)
    _memory_delete_if_owner(key, token)


def ping() -> bool:
    if not _r:
        return True
    try:
        return bool(_r.ping())
    except Exception as exc:
        _logger.warning("redis.ping.error | err=%s", exc)
        return False


__all__ = [
    "rds",
    "prefixed",
    "acquire_ttl_lock",
    "release_ttl_lock",
    "ping",
]
