"""Stripe Checkout sessions for token package purchases."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import requests

from settings import (
    HTTP_TIMEOUT_CONNECT,
    HTTP_TIMEOUT_READ,
    PUBLIC_BASE_URL,
    STRIPE_API_BASE,
    STRIPE_CURRENCY,
    STRIPE_SECRET_KEY,
)

log = logging.getLogger("payments.stripe.checkout")

_SESSIONS_PATH = "/v1/checkout/sessions"
_RETRY_DELAYS = (0.0, 1.0, 3.0)


@dataclass(frozen=True)
class TokenPackage:
    package_id: str
    name: str
    tokens: int
    price_cents: int

    @property
    def product_name(self) -> str:
        return f"{self.name} - {self.tokens:,} Tokens"

    @property
    def product_description(self) -> str:
        return f"Purchase {self.tokens:,} tokens for your marketing campaigns"


@dataclass
class CheckoutSession:
    session_id: str
    url: str
    amount: int
    tokens: int
    package_id: str
    package_name: str
    account_id: str
    idempotency_key: str
    created_at: float

    def to_response(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "url": self.url,
            "amount": self.amount,
            "tokens": self.tokens,
            "packageName": self.package_name,
        }


class CheckoutError(RuntimeError):
    """Raised when a checkout session cannot be created."""

    def __init__(self, message: str, *, retryable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class UnknownPackage(CheckoutError):
    def __init__(self, package_id: str):
        super().__init__(f"Unknown token package: {package_id}")
        self.package_id = package_id


TOKEN_PACKAGES: Dict[str, TokenPackage] = {
    "small": TokenPackage("small", "Small Package", 1000, 9900),
    "medium": TokenPackage("medium", "Medium Package", 2500, 19900),
    "large": TokenPackage("large", "Large Package", 5000, 34900),
}

# Cheapest first for the store page.
TOKEN_PACKAGES_ORDER: List[TokenPackage] = sorted(TOKEN_PACKAGES.values(), key=lambda pack: pack.price_cents)


def list_packages() -> Iterable[TokenPackage]:
    return list(TOKEN_PACKAGES_ORDER)


def get_package(package_id: str) -> Optional[TokenPackage]:
    return TOKEN_PACKAGES.get((package_id or "").strip())


def _make_session() -> requests.Session:
    session = requests.Session()
    adapter = requests.adapters.HTTPAdapter(pool_connections=10, pool_maxsize=10)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


_SESSION = _make_session()


def _request_timeout() -> tuple[float, float]:
    connect = max(0.5, float(HTTP_TIMEOUT_CONNECT))
    read = max(1.0, float(HTTP_TIMEOUT_READ))
    return connect, read


def encode_form(payload: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested mappings and lists into Stripe's bracketed form keys."""

    pairs: List[Tuple[str, str]] = []
    for key, value in payload.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, Mapping):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        elif value is not None:
            pairs.append((name, str(value)))
    return pairs


def build_session_payload(account_id: str, package: TokenPackage) -> Dict[str, Any]:
    base_url = PUBLIC_BASE_URL.rstrip("/")
    return {
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": STRIPE_CURRENCY or "usd",
                    "product_data": {
                        "name": package.product_name,
                        "description": package.product_description,
                    },
                    "unit_amount": package.price_cents,
                },
                "quantity": 1,
            }
        ],
        "mode": "payment",
        "success_url": f"{base_url}/store?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/store?canceled=true",
        "client_reference_id": account_id,
        "metadata": {
            "userId": account_id,
            "packageId": package.package_id,
            "tokenCount": str(package.tokens),
            "packageName": package.name,
        },
    }


def create_checkout_session(account_id: str, package_id: str) -> CheckoutSession:
    """Create a hosted checkout session selling ``package_id`` to ``account_id``."""

    package = get_package(package_id)
    if not package:
        raise UnknownPackage(package_id)
    if not STRIPE_SECRET_KEY:
        raise CheckoutError("Payment system not configured")

    idempotency_key = f"checkout:{account_id}:{package.package_id}:{uuid.uuid4()}"
    headers = {
        "Authorization": f"Bearer {STRIPE_SECRET_KEY}",
        "Content-Type": "application/x-www-form-urlencoded",
        "Idempotency-Key": idempotency_key,
    }
    form = encode_form(build_session_payload(account_id, package))
    connect, read = _request_timeout()
    url = f"{STRIPE_API_BASE.rstrip('/')}{_SESSIONS_PATH}"
    meta = {"account_id": account_id, "package_id": package.package_id}

    for attempt, delay in enumerate(_RETRY_DELAYS, start=1):
        if delay:
            time.sleep(delay)
        try:
            response = _SESSION.post(url, data=form, headers=headers, timeout=(connect, read))
        except requests.RequestException as exc:
            log.warning(
                "payments.checkout.network",
                extra={"meta": {**meta, "attempt": attempt, "err": str(exc)}},
            )
            if attempt == len(_RETRY_DELAYS):
                raise CheckoutError("Could not reach the payment processor", retryable=True) from exc
            continue

        if response.status_code >= 500 and attempt < len(_RETRY_DELAYS):
            log.warning(
                "payments.checkout.retry",
                extra={"meta": {**meta, "status": response.status_code, "attempt": attempt}},
            )
            continue

        if response.status_code >= 400:
            log.error(
                "payments.checkout.failed",
                extra={"meta": {**meta, "status": response.status_code, "body": response.text[:400]}},
            )
            raise CheckoutError(
                f"Payment processor responded with status {response.status_code}",
                retryable=response.status_code >= 500,
                status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:  # pragma: no cover - invalid JSON
            log.error("payments.checkout.invalid_json", extra={"meta": {**meta, "status": response.status_code}})
            raise CheckoutError("Payment processor returned invalid JSON", retryable=True) from exc

        session_id = body.get("id")
        session_url = body.get("url")
        if not session_id or not session_url:
            log.error("payments.checkout.malformed", extra={"meta": {**meta, "body": body}})
            raise CheckoutError("Payment processor response missing session details")

        session = CheckoutSession(
            session_id=str(session_id),
            url=str(session_url),
            amount=package.price_cents,
            tokens=package.tokens,
            package_id=package.package_id,
            package_name=package.name,
            account_id=account_id,
            idempotency_key=idempotency_key,
            created_at=time.time(),
        )
        log.info("payments.checkout.created", extra={"meta": {**meta, "session_id": session.session_id}})
        return session

    raise CheckoutError("Could not create the checkout session", retryable=True)


__all__ = [
    "CheckoutError",
    "CheckoutSession",
    "TOKEN_PACKAGES",
    "TOKEN_PACKAGES_ORDER",
    "TokenPackage",
    "UnknownPackage",
    "build_session_payload",
    "create_checkout_session",
    "encode_form",
    "get_package",
    "list_packages",
]
