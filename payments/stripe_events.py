"""Typed views over the webhook events the ledger reacts to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class MissingMetadata(ValueError):
    """Raised when an event lacks the metadata needed to credit an account."""

    def __init__(self, event_id: str, missing: tuple[str, ...]):
        super().__init__(f"event {event_id} is missing metadata: {', '.join(missing)}")
        self.event_id = event_id
        self.missing = missing


class MalformedEvent(ValueError):
    """Raised when a verified payload is not a well-formed event."""


@dataclass(frozen=True)
class PurchaseDetails:
    account_id: str
    package_id: str
    tokens: int
    payment_intent_id: str
    package_name: Optional[str] = None


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckoutSessionObject(_StripeModel):
    id: str
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentIntentObject(_StripeModel):
    id: str
    amount: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_payment_error: Optional[Dict[str, Any]] = None


class _CheckoutData(_StripeModel):
    object: CheckoutSessionObject


class _PaymentIntentData(_StripeModel):
    object: PaymentIntentObject


class _BaseEvent(_StripeModel):
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False


def _metadata_value(metadata: Mapping[str, Any], key: str) -> Optional[str]:
    value = metadata.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _purchase_from_metadata(
    event_id: str, metadata: Mapping[str, Any], payment_intent_id: str
) -> PurchaseDetails:
    account_id = _metadata_value(metadata, "userId")
    package_id = _metadata_value(metadata, "packageId")
    raw_tokens = _metadata_value(metadata, "tokenCount")

    missing = tuple(
        name
        for name, value in (("userId", account_id), ("packageId", package_id), ("tokenCount", raw_tokens))
        if value is None
    )
    if missing:
        raise MissingMetadata(event_id, missing)

    try:
        tokens = int(raw_tokens or "")
    except ValueError:
        raise MissingMetadata(event_id, ("tokenCount",)) from None
    if tokens <= 0:
        raise MissingMetadata(event_id, ("tokenCount",))

    return PurchaseDetails(
        account_id=str(account_id),
        package_id=str(package_id),
        tokens=tokens,
        payment_intent_id=payment_intent_id,
        package_name=_metadata_value(metadata, "packageName"),
    )


class CheckoutCompleted(_BaseEvent):
    type: Literal["checkout.session.completed"]
    data: _CheckoutData

    @property
    def payment_intent_id(self) -> str:
        session = self.data.object
        return session.payment_intent or session.id

    @property
    def is_paid(self) -> bool:
        return self.data.object.payment_status in (None, "paid", "no_payment_required")

    def purchase(self) -> PurchaseDetails:
        return _purchase_from_metadata(self.id, self.data.object.metadata, self.payment_intent_id)


class PaymentSucceeded(_BaseEvent):
    type: Literal["payment_intent.succeeded"]
    data: _PaymentIntentData

    @property
    def payment_intent_id(self) -> str:
        return self.data.object.id

    def purchase(self) -> PurchaseDetails:
        return _purchase_from_metadata(self.id, self.data.object.metadata, self.payment_intent_id)


class PaymentFailed(_BaseEvent):
    type: Literal["payment_intent.payment_failed"]
    data: _PaymentIntentData

    @property
    def payment_intent_id(self) -> str:
        return self.data.object.id

    @property
    def account_id(self) -> Optional[str]:
        return _metadata_value(self.data.object.metadata, "userId")

    @property
    def package_id(self) -> Optional[str]:
        return _metadata_value(self.data.object.metadata, "packageId")

    @property
    def failure_message(self) -> Optional[str]:
        error = self.data.object.last_payment_error or {}
        message = error.get("message")
        return str(message) if message else None


class UnknownEvent(_BaseEvent):
    pass


WebhookEvent = Union[CheckoutCompleted, PaymentSucceeded, PaymentFailed, UnknownEvent]

_EVENT_MODELS: Dict[str, type[_BaseEvent]] = {
    CHECKOUT_COMPLETED: CheckoutCompleted,
    PAYMENT_SUCCEEDED: PaymentSucceeded,
    PAYMENT_FAILED: PaymentFailed,
}


def parse_event(data: Any) -> WebhookEvent:
    """Validate a decoded webhook body into the matching event model."""

    if not isinstance(data, Mapping):
        raise MalformedEvent("event payload must be a JSON object")
    event_type = str(data.get("type") or "")
    model = _EVENT_MODELS.get(event_type, UnknownEvent)
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as exc:
        raise MalformedEvent(f"invalid {event_type or 'unknown'} event: {exc.error_count()} errors") from exc


__all__ = [
    "CHECKOUT_COMPLETED",
    "CheckoutCompleted",
    "MalformedEvent",
    "MissingMetadata",
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "PaymentFailed",
    "PaymentSucceeded",
    "PurchaseDetails",
    "UnknownEvent",
    "WebhookEvent",
    "parse_event",
]
