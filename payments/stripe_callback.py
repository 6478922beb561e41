"""Webhook processing for Stripe payment events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from ledger import get_ledger_storage
from marketplace import NOTIFY_TOKEN_UPDATE, get_marketplace_storage
from metrics import record_webhook
from texts import common_text

from .stripe_events import (
    CheckoutCompleted,
    MalformedEvent,
    MissingMetadata,
    PaymentFailed,
    PaymentSucceeded,
    WebhookEvent,
    parse_event,
)
from .stripe_signature import DEFAULT_TOLERANCE_SEC, verify_signature
from .stripe_storage import acquire_payment_lock, release_payment_lock

log = logging.getLogger("payments.stripe.callback")


def _notify_credit(marketplace: Any, account_id: str, tokens: int, payment_intent_id: str) -> None:
    try:
        target = marketplace if marketplace is not None else get_marketplace_storage()
        target.create_notification(
            account_id,
            common_text("notify.added.title"),
            common_text("notify.added.message", amount=tokens),
            NOTIFY_TOKEN_UPDATE,
            payment_intent_id,
        )
    except Exception:
        log.exception(
            "payments.webhook.notify_failed",
            extra={"meta": {"account_id": account_id, "payment_intent_id": payment_intent_id}},
        )


def _credit(event: CheckoutCompleted | PaymentSucceeded, ledger: Any, marketplace: Any) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"event_id": event.id, "event": event.type}
    try:
        purchase = event.purchase()
    except MissingMetadata as exc:
        log.error("payments.webhook.missing_metadata", extra={"meta": {**meta, "missing": list(exc.missing)}})
        return {"status": "missing_metadata", "missing": list(exc.missing)}

    payment_intent_id = purchase.payment_intent_id
    meta.update(
        {
            "payment_intent_id": payment_intent_id,
            "account_id": purchase.account_id,
            "package_id": purchase.package_id,
            "tokens": purchase.tokens,
        }
    )

    lock_token = acquire_payment_lock(payment_intent_id)
    if not lock_token:
        log.info("payments.webhook.locked", extra={"meta": meta})
        return {"status": "locked"}

    try:
        result = ledger.credit_purchase(
            purchase.account_id,
            purchase.tokens,
            payment_intent_id=payment_intent_id,
            package_id=purchase.package_id,
            meta={"event_id": event.id, "event": event.type, "package_name": purchase.package_name},
        )
        if result.duplicate:
            log.info("payments.webhook.duplicate", extra={"meta": meta})
            return {"status": "duplicate", "balance": int(result.balance)}

        balance = int(result.balance)
        log.info("payments.webhook.credited", extra={"meta": {**meta, "balance": balance}})
        _notify_credit(marketplace, purchase.account_id, purchase.tokens, payment_intent_id)
        return {"status": "success", "balance": balance}
    except Exception as exc:
        log.exception("payments.webhook.credit_failed", extra={"meta": {**meta, "error": str(exc)}})
        return {"status": "error", "error": str(exc)}
    finally:
        release_payment_lock(payment_intent_id, lock_token)


def _record_failure(event: PaymentFailed, ledger: Any) -> Dict[str, Any]:
    meta = {
        "event_id": event.id,
        "payment_intent_id": event.payment_intent_id,
        "account_id": event.account_id,
        "package_id": event.package_id,
        "reason": event.failure_message,
    }
    log.warning("payments.webhook.payment_failed", extra={"meta": meta})

    account_id = event.account_id
    if not account_id:
        log.error("payments.webhook.missing_metadata", extra={"meta": {**meta, "missing": ["userId"]}})
        return {"status": "missing_metadata", "missing": ["userId"]}

    try:
        result = ledger.record_failed_payment(
            account_id,
            payment_intent_id=event.payment_intent_id,
            package_id=event.package_id,
            meta={"event_id": event.id, "reason": event.failure_message},
        )
    except Exception as exc:
        log.exception("payments.webhook.failure_record_failed", extra={"meta": {**meta, "error": str(exc)}})
        return {"status": "error", "error": str(exc)}
    return {"status": "duplicate" if result.duplicate else "failed_recorded"}


def process_event(event: WebhookEvent, *, ledger: Any = None, marketplace: Any = None) -> Dict[str, Any]:
    """Apply an already-authenticated event to the ledger."""

    log.info(
        "payments.webhook.event",
        extra={"meta": {"event_id": event.id, "event": event.type, "livemode": event.livemode}},
    )
    storage = ledger if ledger is not None else get_ledger_storage()

    if isinstance(event, CheckoutCompleted):
        if not event.is_paid:
            log.info(
                "payments.webhook.unpaid_session",
                extra={"meta": {"event_id": event.id, "payment_status": event.data.object.payment_status}},
            )
            return {"status": "pending"}
        return _credit(event, storage, marketplace)
    if isinstance(event, PaymentSucceeded):
        return _credit(event, storage, marketplace)
    if isinstance(event, PaymentFailed):
        return _record_failure(event, storage)

    log.info("payments.webhook.ignored", extra={"meta": {"event_id": event.id, "event": event.type}})
    return {"status": "ignored"}


def handle_webhook(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    *,
    ledger: Any = None,
    marketplace: Any = None,
    tolerance: int = DEFAULT_TOLERANCE_SEC,
) -> Dict[str, Any]:
    """Authenticate and process one webhook delivery.

    Raises :class:`payments.stripe_signature.InvalidSignature` before
    anything is parsed. Once the signature checks out every outcome is
    reported through the returned ``status`` so the processor receives an
    acknowledgement.
    """

    try:
        verify_signature(payload, signature_header, secret, tolerance=tolerance)
    except Exception:
        record_webhook("unverified", "invalid_signature")
        raise

    try:
        event = parse_event(json.loads(payload.decode("utf-8")))
    except (UnicodeDecodeError, ValueError, MalformedEvent) as exc:
        log.error("payments.webhook.malformed", extra={"meta": {"error": str(exc)}})
        record_webhook("unknown", "malformed")
        return {"status": "malformed"}

    result = process_event(event, ledger=ledger, marketplace=marketplace)
    record_webhook(event.type, str(result.get("status")))
    return result


__all__ = ["handle_webhook", "process_event"]
