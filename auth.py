"""Bearer-token authentication for the HTTP API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jwt
from fastapi import Header, HTTPException

import settings as app_settings
from texts import common_text

log = logging.getLogger("auth")

ALGO = "HS256"
ROLES = {"business", "influencer"}


class AuthError(RuntimeError):
    """Raised when a bearer token is missing or cannot be verified."""


@dataclass(frozen=True)
class AuthenticatedAccount:
    account_id: str
    email: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)


def _secret() -> str:
    secret = app_settings.AUTH_JWT_SECRET
    if not secret:
        raise AuthError("AUTH_JWT_SECRET is not configured")
    return secret


def mint_token(sub: str, claims: Optional[Dict[str, Any]] = None, *, ttl: int = 3600) -> str:
    """Issue a token for ``sub``; used by internal tooling and tests."""

    now = int(time.time())
    payload: Dict[str, Any] = {"sub": sub, "iat": now, "exp": now + ttl, **(claims or {})}
    if app_settings.AUTH_JWT_ISSUER:
        payload.setdefault("iss", app_settings.AUTH_JWT_ISSUER)
    if app_settings.AUTH_JWT_AUDIENCE:
        payload.setdefault("aud", app_settings.AUTH_JWT_AUDIENCE)
    return jwt.encode(payload, _secret(), algorithm=ALGO)


def verify_token(token: str) -> Dict[str, Any]:
    options = {"require": ["exp", "iat", "sub"]}
    try:
        return jwt.decode(
            token,
            _secret(),
            algorithms=[ALGO],
            audience=app_settings.AUTH_JWT_AUDIENCE or None,
            issuer=app_settings.AUTH_JWT_ISSUER or None,
            options=options,
        )
    except jwt.PyJWTError as exc:
        raise AuthError(str(exc)) from exc


def authenticate(authorization: Optional[str]) -> AuthenticatedAccount:
    if not authorization:
        raise AuthError("missing Authorization header")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("expected a Bearer token")

    claims = verify_token(token.strip())
    account_id = str(claims.get("sub") or "").strip()
    if not account_id:
        raise AuthError("token has an empty subject")

    role = claims.get("role")
    if role is not None and role not in ROLES:
        raise AuthError(f"unsupported role: {role}")

    return AuthenticatedAccount(
        account_id=account_id,
        email=claims.get("email"),
        role=role,
        name=claims.get("name"),
        claims=dict(claims),
    )


def current_account(authorization: Optional[str] = Header(default=None)) -> AuthenticatedAccount:
    """FastAPI dependency resolving the caller from the ``Authorization`` header."""

    try:
        return authenticate(authorization)
    except AuthError as exc:
        log.info("auth.rejected", extra={"meta": {"reason": str(exc)}})
        detail = common_text("auth.required") if not authorization else common_text("auth.invalid")
        raise HTTPException(
            status_code=401,
            detail={"error": detail},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


__all__ = [
    "AuthError",
    "AuthenticatedAccount",
    "authenticate",
    "current_account",
    "mint_token",
    "verify_token",
]
