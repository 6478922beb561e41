"""Centralised application configuration and environment validation."""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("settings")


_SECRET_FIELDS = {
    "DATABASE_URL",
    "REDIS_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "AUTH_JWT_SECRET",
}

_LEDGER_BACKENDS = {"postgres", "memory"}


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip()
    if len(text) <= 4:
        return text
    return f"***{text[-4:]}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = Field(default="prod")
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    MAX_IN_LOG_BODY: int = Field(default=2048, ge=256, le=65536)

    DATABASE_URL: Optional[str] = Field(default=None)
    LEDGER_BACKEND: str = Field(default="postgres")
    PG_POOL_MIN: int = Field(default=1, ge=1, le=100)
    PG_POOL_MAX: int = Field(default=10, ge=1, le=200)

    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_PREFIX: str = Field(default="influencerhub:prod")

    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_TOLERANCE_SEC: int = Field(default=300, ge=0, le=86400)
    STRIPE_API_BASE: str = Field(default="https://api.stripe.com")
    STRIPE_CURRENCY: str = Field(default="usd")

    PUBLIC_BASE_URL: str = Field(default="http://localhost:3000")
    PORT: int = Field(default=8000, ge=1, le=65535)

    AUTH_JWT_SECRET: Optional[str] = Field(default=None)
    AUTH_JWT_ISSUER: Optional[str] = Field(default=None)
    AUTH_JWT_AUDIENCE: Optional[str] = Field(default=None)

    HTTP_TIMEOUT_CONNECT: float = Field(default=10.0, ge=0.1, le=300.0)
    HTTP_TIMEOUT_READ: float = Field(default=30.0, ge=1.0, le=600.0)

    # Runtime/computed attributes populated in ``_post_init``
    LEDGER_BACKEND_EFFECTIVE: str = Field(default="postgres", exclude=True)
    STRIPE_READY: bool = Field(default=False, exclude=True)

    @field_validator(
        "DATABASE_URL",
        "REDIS_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "AUTH_JWT_SECRET",
        "AUTH_JWT_ISSUER",
        "AUTH_JWT_AUDIENCE",
        mode="before",
    )
    def _strip_optional(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("LOG_LEVEL", mode="before")
    def _normalize_level(cls, value: Any) -> str:
        if value is None:
            return "INFO"
        text = str(value).strip().upper()
        if text not in logging._nameToLevel:  # type: ignore[attr-defined]
            return "INFO"
        return text

    @field_validator("LEDGER_BACKEND", mode="before")
    def _normalize_backend(cls, value: Any) -> str:
        text = str(value or "postgres").strip().lower()
        if text not in _LEDGER_BACKENDS:
            raise ValueError(f"LEDGER_BACKEND must be one of {sorted(_LEDGER_BACKENDS)}")
        return text

    @field_validator("STRIPE_CURRENCY", mode="before")
    def _normalize_currency(cls, value: Any) -> str:
        text = str(value or "usd").strip().lower()
        return text or "usd"

    @model_validator(mode="after")
    def _post_init(self) -> "Settings":
        self.STRIPE_API_BASE = self.STRIPE_API_BASE.rstrip("/")
        self.PUBLIC_BASE_URL = self.PUBLIC_BASE_URL.rstrip("/")
        if self.PG_POOL_MAX < self.PG_POOL_MIN:
            self.PG_POOL_MAX = self.PG_POOL_MIN

        backend = self.LEDGER_BACKEND
        if backend == "postgres" and not self.DATABASE_URL:
            logger.warning("DATABASE_URL is not configured; using the memory ledger backend")
            backend = "memory"
        self.LEDGER_BACKEND_EFFECTIVE = backend

        self.STRIPE_READY = bool(self.STRIPE_SECRET_KEY and self.STRIPE_WEBHOOK_SECRET)
        return self

    def configuration_summary(self) -> Mapping[str, Any]:
        keys: MutableMapping[str, Any] = {
            "APP_ENV": self.APP_ENV,
            "LEDGER_BACKEND": self.LEDGER_BACKEND_EFFECTIVE,
            "REDIS_PREFIX": self.REDIS_PREFIX,
            "STRIPE_API_BASE": self.STRIPE_API_BASE,
            "STRIPE_READY": self.STRIPE_READY,
            "PUBLIC_BASE_URL": self.PUBLIC_BASE_URL,
        }
        for secret in sorted(_SECRET_FIELDS):
            value = getattr(self, secret, None)
            keys[secret] = _mask(value)
        return keys

    def critical_variables(self) -> Mapping[str, str]:
        data: MutableMapping[str, str] = {}
        for field in ("DATABASE_URL", "STRIPE_WEBHOOK_SECRET", "AUTH_JWT_SECRET"):
            value = getattr(self, field, "") or ""
            data[field] = _mask(value) if field in _SECRET_FIELDS else str(value)
        return data


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:  # pragma: no cover - fail fast
        errors = []
        for entry in exc.errors():
            loc = "::".join(str(part) for part in entry.get("loc", ()))
            msg = entry.get("msg", "invalid value")
            errors.append(f"{loc}: {msg}")
        message = "Invalid configuration: " + ", ".join(errors)
        logger.error(message)
        raise RuntimeError(message) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    """Reload settings from the environment and update module globals."""

    global settings
    settings = _load_settings()
    return settings


__all__ = [
    "Settings",
    "settings",
    "reload_settings",
]
