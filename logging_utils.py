"""JSON log formatting for the ledger service.

Every record becomes one JSON object with the structured ``meta`` passed via
``extra={"meta": {...}}``. Credentials (configured secrets, Stripe keys,
webhook signatures and bearer tokens) are masked before anything is written.
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from core.settings import settings

MAX_IN_LOG_BODY = int(settings.MAX_IN_LOG_BODY)
_MASK = "***"

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_CREDENTIAL_PATTERNS = (
    re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"(?<=\bv1=)[0-9a-f]{16,}"),
    re.compile(r"(?<=Bearer )[A-Za-z0-9\-_.]+"),
    re.compile(r"(?<=token=)[^&\s]+", re.IGNORECASE),
)

_SECRET_SETTINGS = ("DATABASE_URL", "REDIS_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "AUTH_JWT_SECRET")

_secrets_lock = threading.Lock()
_known_secrets: set[str] = set()


def _collect_secrets() -> Iterable[str]:
    for name in _SECRET_SETTINGS:
        value = getattr(settings, name, None)
        if value:
            yield str(value)
    for name, value in os.environ.items():
        if value and (name in _SECRET_SETTINGS or name.upper().endswith(("_KEY", "_SECRET", "_TOKEN"))):
            yield value


def refresh_secret_cache() -> None:
    """Re-read configured secrets so later log lines mask them."""

    collected = {value for value in _collect_secrets() if len(value) >= 4}
    with _secrets_lock:
        _known_secrets.clear()
        _known_secrets.update(collected)


refresh_secret_cache()


def bind_request_id(request_id: Optional[str] = None) -> Token:
    """Attach a request id to every record logged from the current context."""

    return _request_id_var.set(request_id or uuid.uuid4().hex[:16])


def reset_request_id(token: Token) -> None:
    _request_id_var.reset(token)


def current_request_id() -> Optional[str]:
    return _request_id_var.get()


def _redact(text: str) -> str:
    if not text:
        return text
    with _secrets_lock:
        secrets = sorted(_known_secrets, key=len, reverse=True)
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, _MASK)
    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(_MASK, text)
    return text


def _clip(text: str) -> str:
    if len(text) <= MAX_IN_LOG_BODY:
        return text
    return f"{text[:MAX_IN_LOG_BODY]}…(truncated)"


def _scrub(value: Any) -> Any:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return _clip(_redact(value))
    if isinstance(value, Mapping):
        return {str(key): _scrub(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_scrub(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        extra_meta = getattr(record, "meta", None)
        if isinstance(extra_meta, Mapping):
            meta: dict[str, Any] = _scrub(dict(extra_meta))
        elif extra_meta is None:
            meta = {}
        else:
            meta = {"extra": _scrub(extra_meta)}

        request_id = _request_id_var.get()
        if request_id:
            meta.setdefault("request_id", request_id)
        meta.setdefault("logger", record.name)
        meta.setdefault("module", record.module)
        meta.setdefault("pid", os.getpid())
        if record.exc_info:
            meta["exc_info"] = _clip(_redact(self.formatException(record.exc_info)))

        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": _clip(_redact(record.getMessage())),
            "meta": meta,
        }
        return json.dumps(payload, ensure_ascii=False, default=str)


_configured = False
_configure_lock = threading.Lock()

_QUIET_LOGGERS = ("httpx", "urllib3", "uvicorn.access", "psycopg.pool", "pydantic")


def init_logging(app_name: str, level: str | None = None, *, json_logs: bool | None = None) -> None:
    """Install the root handler once and log the masked configuration."""

    level_name = (level or settings.LOG_LEVEL or "INFO").strip().upper()
    effective_level = logging.getLevelName(level_name)
    if not isinstance(effective_level, int):
        effective_level = logging.INFO
    use_json = settings.LOG_JSON if json_logs is None else json_logs

    global _configured
    with _configure_lock:
        root = logging.getLogger()
        if not _configured:
            handler = logging.StreamHandler()
            handler.setFormatter(
                JsonFormatter()
                if use_json
                else logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
            )
            root.handlers.clear()
            root.addHandler(handler)
            logging.captureWarnings(True)
            for name in _QUIET_LOGGERS:
                logging.getLogger(name).setLevel(logging.WARNING)
            _configured = True
        root.setLevel(effective_level)

    logging.getLogger(app_name).info(
        "configuration summary",
        extra={"meta": {**settings.configuration_summary(), "critical": dict(settings.critical_variables())}},
    )


__all__ = [
    "JsonFormatter",
    "bind_request_id",
    "current_request_id",
    "init_logging",
    "refresh_secret_cache",
    "reset_request_id",
]
