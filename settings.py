"""Compatibility layer exporting configuration attributes."""

from __future__ import annotations

from core.settings import reload_settings as _reload_core_settings

settings = _reload_core_settings()


def _populate_from_settings() -> None:
    g = globals()

    g["APP_ENV"] = settings.APP_ENV
    g["LOG_LEVEL"] = settings.LOG_LEVEL
    g["LOG_JSON"] = bool(settings.LOG_JSON)
    g["MAX_IN_LOG_BODY"] = int(settings.MAX_IN_LOG_BODY)

    g["DATABASE_URL"] = settings.DATABASE_URL or ""
    g["LEDGER_BACKEND"] = settings.LEDGER_BACKEND_EFFECTIVE
    g["PG_POOL_MIN"] = int(settings.PG_POOL_MIN)
    g["PG_POOL_MAX"] = int(settings.PG_POOL_MAX)

    g["REDIS_URL"] = settings.REDIS_URL or ""
    g["REDIS_PREFIX"] = settings.REDIS_PREFIX

    g["STRIPE_SECRET_KEY"] = settings.STRIPE_SECRET_KEY
    g["STRIPE_WEBHOOK_SECRET"] = settings.STRIPE_WEBHOOK_SECRET
    g["STRIPE_WEBHOOK_TOLERANCE_SEC"] = int(settings.STRIPE_WEBHOOK_TOLERANCE_SEC)
    g["STRIPE_API_BASE"] = settings.STRIPE_API_BASE
    g["STRIPE_CURRENCY"] = settings.STRIPE_CURRENCY
    g["STRIPE_READY"] = bool(settings.STRIPE_READY)

    g["PUBLIC_BASE_URL"] = settings.PUBLIC_BASE_URL
    g["PORT"] = int(settings.PORT)

    g["AUTH_JWT_SECRET"] = settings.AUTH_JWT_SECRET
    g["AUTH_JWT_ISSUER"] = settings.AUTH_JWT_ISSUER
    g["AUTH_JWT_AUDIENCE"] = settings.AUTH_JWT_AUDIENCE

    g["HTTP_TIMEOUT_CONNECT"] = float(settings.HTTP_TIMEOUT_CONNECT)
    g["HTTP_TIMEOUT_READ"] = float(settings.HTTP_TIMEOUT_READ)

    g["_EXPORTED_NAMES"] = [
        name
        for name in g
        if name.isupper()
    ]


def reload_settings():
    global settings
    settings = _reload_core_settings()
    _populate_from_settings()
    return settings


_populate_from_settings()

__all__ = sorted(_EXPORTED_NAMES) + [
    "settings",
    "reload_settings",
]
