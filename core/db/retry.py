"""Retry helpers for transient PostgreSQL errors."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import psycopg
from psycopg import errors as pg_errors

T = TypeVar("T")

RETRYABLE_MESSAGES = (
    "SSL connection has been closed unexpectedly",
    "Connection reset by peer",
    "server closed the connection unexpectedly",
    "terminating connection due to administrator command",
    "connection already closed",
)


def is_retryable_db_error(exc: BaseException) -> bool:
    if isinstance(exc, pg_errors.SerializationFailure):
        return True
    message = str(exc)
    return isinstance(exc, psycopg.OperationalError) and any(
        fragment in message for fragment in RETRYABLE_MESSAGES
    )


def with_db_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: float = 0.2,
    logger: Optional[logging.Logger] = None,
    context: Optional[Dict[str, Any]] = None,
) -> T:
    """Execute ``fn`` retrying on transient PostgreSQL failures."""

    context_meta: Dict[str, Any] = dict(context or {})
    attempts = max(int(attempts), 1)
    for attempt in range(1, attempts + 1):
        try:
            result = fn()
        except Exception as exc:  # noqa: BLE001 - classified below, re-raised when not transient
            if not is_retryable_db_error(exc) or attempt == attempts:
                if logger and isinstance(exc, psycopg.Error):
                    logger.error(
                        "DB_RETRY_GIVEUP",
                        extra={"meta": {"err": str(exc), "attempt": attempt, **context_meta}},
                    )
                raise
            if logger:
                logger.warning(
                    "DB_RETRY",
                    extra={"meta": {"err": str(exc), "attempt": attempt, **context_meta}},
                )
            time.sleep(min(backoff * attempt, 1.0))
            continue
        if logger and attempt > 1:
            logger.info("DB_RETRY_OK", extra={"meta": {"attempt": attempt, **context_meta}})
        return result
    raise RuntimeError("with_db_retries exhausted without result")  # pragma: no cover
