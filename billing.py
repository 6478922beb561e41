"""Token-spending flows: contacting influencers and purchasing boosts."""

from __future__ import annotations

import asyncio
import contextvars
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ledger import (
    TX_BOOST,
    TX_INFLUENCER_CONTACT,
    TX_REFUND,
    InsufficientBalance,
    LedgerOpResult,
    StorageFailure,
)
from marketplace import NOTIFY_CONTACT, NOTIFY_TOKEN_UPDATE
from metrics import record_spend
from pricing import contact_cost, get_boost
from texts import common_text

logger = logging.getLogger(__name__)

FLOW_CONTACT = "contact"
FLOW_BOOST = "boost"


class BillingError(RuntimeError):
    """Base error for billing operations."""


class UnknownTarget(BillingError):
    """Raised when the influencer or boost being paid for does not exist."""

    def __init__(self, kind: str, target_id: str):
        super().__init__(f"unknown {kind}: {target_id}")
        self.kind = kind
        self.target_id = target_id


class BoostNotAllowed(BillingError):
    """Raised when a boost is not offered to the caller's account type."""

    def __init__(self, boost_id: str, role: Optional[str], audience: str):
        super().__init__(f"boost {boost_id} is for {audience} accounts, not {role}")
        self.boost_id = boost_id
        self.role = role
        self.audience = audience


class IdempotencyConflict(BillingError):
    """Raised when an operation id is replayed for a different target."""

    def __init__(self, op_id: str, target_id: str, original_target_id: Optional[str]):
        super().__init__(f"operation {op_id} was used for {original_target_id}, not {target_id}")
        self.op_id = op_id
        self.target_id = target_id
        self.original_target_id = original_target_id


@dataclass(frozen=True)
class SpendReceipt:
    flow: str
    account_id: str
    target_id: str
    cost: int
    balance: int
    op_id: str
    duplicate: bool = False
    expires_at: Optional[datetime] = None


async def _run_in_executor(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    return await loop.run_in_executor(None, lambda: ctx.run(func, *args, **kwargs))


def _spend(
    flow: str,
    ledger: Any,
    account_id: str,
    cost: int,
    description: str,
    tx_type: str,
    target_id: str,
    op_id: Optional[str],
) -> LedgerOpResult:
    try:
        return ledger.spend(
            account_id,
            cost,
            description,
            tx_type,
            reference_id=target_id,
            op_id=op_id,
            meta={"flow": flow},
        )
    except InsufficientBalance as exc:
        record_spend(flow, "insufficient")
        logger.info(
            "billing.%s.insufficient",
            flow,
            extra={
                "meta": {
                    "account_id": account_id,
                    "target": target_id,
                    "required": exc.required,
                    "balance": exc.balance,
                }
            },
        )
        raise
    except StorageFailure:
        record_spend(flow, "storage_error")
        raise


def _debit(
    flow: str,
    ledger: Any,
    account_id: str,
    cost: int,
    description: str,
    tx_type: str,
    target_id: str,
    op_id: Optional[str],
) -> LedgerOpResult:
    """Debit once per ``op_id``.

    A replayed ``op_id`` must name the same target. When the earlier debit was
    refunded its side effect never happened, so the charge is taken again under
    ``<op_id>:retry:<n>``.
    """

    attempt_op_id = op_id
    retry = 0
    while True:
        result = _spend(flow, ledger, account_id, cost, description, tx_type, target_id, attempt_op_id)
        if not result.duplicate:
            return result

        original = ledger.get_transaction(result.op_id)
        if original is not None and (original.account_id != account_id or original.reference_id != target_id):
            record_spend(flow, "conflict")
            logger.warning(
                "billing.%s.conflict",
                flow,
                extra={
                    "meta": {
                        "account_id": account_id,
                        "target": target_id,
                        "op_id": result.op_id,
                        "original_target": original.reference_id,
                    }
                },
            )
            raise IdempotencyConflict(result.op_id, target_id, original.reference_id)

        if ledger.get_transaction(f"refund:{result.op_id}") is None:
            logger.info(
                "billing.%s.duplicate",
                flow,
                extra={"meta": {"account_id": account_id, "target": target_id, "op_id": result.op_id}},
            )
            return result

        retry += 1
        attempt_op_id = f"{op_id}:retry:{retry}"
        logger.info(
            "billing.%s.retry_after_refund",
            flow,
            extra={"meta": {"account_id": account_id, "target": target_id, "op_id": attempt_op_id}},
        )


def _compensate(
    flow: str,
    ledger: Any,
    account_id: str,
    cost: int,
    description: str,
    target_id: str,
    spend_op_id: str,
    error: BaseException,
) -> None:
    """Credit back a debit whose follow-up write failed."""

    refund_op_id = f"refund:{spend_op_id}"
    try:
        ledger.credit(
            account_id,
            cost,
            common_text("tx.refund", description=description),
            TX_REFUND,
            op_id=refund_op_id,
            reference_id=target_id,
            meta={"flow": flow, "error": str(error)},
        )
    except Exception:
        record_spend(flow, "refund_failed")
        logger.exception(
            "billing.%s.refund_failed",
            flow,
            extra={"meta": {"account_id": account_id, "op_id": refund_op_id, "amount": cost}},
        )
        raise
    record_spend(flow, "refunded")
    logger.warning(
        "billing.%s.refunded",
        flow,
        extra={"meta": {"account_id": account_id, "op_id": refund_op_id, "amount": cost, "error": str(error)}},
    )


def _notify(marketplace: Any, account_id: str, title: str, message: str, kind: str, related_id: Optional[str]) -> None:
    try:
        marketplace.create_notification(account_id, title, message, kind, related_id)
    except Exception:
        logger.exception(
            "billing.notify.failed",
            extra={"meta": {"account_id": account_id, "title": title}},
        )


def contact_influencer(
    account_id: str,
    influencer_id: str,
    *,
    ledger: Any,
    marketplace: Any,
    business_name: Optional[str] = None,
    op_id: Optional[str] = None,
) -> SpendReceipt:
    """Charge a business for contacting an influencer and record the contact.

    The price is always derived here from the stored follower count. Raises
    :class:`UnknownTarget` for unknown influencers and lets
    :class:`ledger.InsufficientBalance` propagate unchanged.
    """

    influencer = marketplace.get_influencer(influencer_id)
    if influencer is None:
        record_spend(FLOW_CONTACT, "unknown_target")
        raise UnknownTarget("influencer", influencer_id)

    cost = contact_cost(influencer.followers)
    description = common_text("tx.contact", name=influencer.display_name or influencer_id)
    result = _debit(
        FLOW_CONTACT, ledger, account_id, cost, description, TX_INFLUENCER_CONTACT, influencer_id, op_id
    )

    try:
        marketplace.record_contact(account_id, influencer_id, cost, op_id=result.op_id)
    except Exception as exc:
        _compensate(FLOW_CONTACT, ledger, account_id, cost, description, influencer_id, result.op_id, exc)
        raise StorageFailure("contact", str(exc)) from exc

    if not result.duplicate:
        _notify(
            marketplace,
            influencer_id,
            common_text("notify.contact.title"),
            common_text("notify.contact.message", business_name=business_name or "A business"),
            NOTIFY_CONTACT,
            account_id,
        )
        _notify(
            marketplace,
            account_id,
            common_text("notify.spent.title"),
            common_text("notify.spent.message", amount=cost, description=description),
            NOTIFY_TOKEN_UPDATE,
            influencer_id,
        )

    record_spend(FLOW_CONTACT, "duplicate" if result.duplicate else "ok")
    return SpendReceipt(
        FLOW_CONTACT, account_id, influencer_id, cost, result.balance, result.op_id, result.duplicate
    )


def purchase_boost(
    account_id: str,
    boost_id: str,
    *,
    ledger: Any,
    marketplace: Any,
    role: Optional[str] = None,
    op_id: Optional[str] = None,
) -> SpendReceipt:
    """Charge the flat boost price and record the boost with its expiry."""

    boost = get_boost(boost_id)
    if boost is None:
        record_spend(FLOW_BOOST, "unknown_target")
        raise UnknownTarget("boost", boost_id)
    if role is not None and role != boost.audience:
        record_spend(FLOW_BOOST, "not_allowed")
        raise BoostNotAllowed(boost.boost_id, role, boost.audience)

    description = common_text("tx.boost", name=boost.name)
    result = _debit(FLOW_BOOST, ledger, account_id, boost.price, description, TX_BOOST, boost.boost_id, op_id)

    try:
        purchase = marketplace.record_boost(account_id, boost, op_id=result.op_id)
    except Exception as exc:
        _compensate(FLOW_BOOST, ledger, account_id, boost.price, description, boost.boost_id, result.op_id, exc)
        raise StorageFailure("boost", str(exc)) from exc

    if not result.duplicate:
        _notify(
            marketplace,
            account_id,
            common_text("notify.spent.title"),
            common_text("notify.spent.message", amount=boost.price, description=description),
            NOTIFY_TOKEN_UPDATE,
            boost.boost_id,
        )

    record_spend(FLOW_BOOST, "duplicate" if result.duplicate else "ok")
    return SpendReceipt(
        FLOW_BOOST,
        account_id,
        boost.boost_id,
        boost.price,
        result.balance,
        result.op_id,
        result.duplicate,
        purchase.expires_at,
    )


async def acontact_influencer(account_id: str, influencer_id: str, **kwargs: Any) -> SpendReceipt:
    return await _run_in_executor(contact_influencer, account_id, influencer_id, **kwargs)


async def apurchase_boost(account_id: str, boost_id: str, **kwargs: Any) -> SpendReceipt:
    return await _run_in_executor(purchase_boost, account_id, boost_id, **kwargs)


__all__ = [
    "BillingError",
    "BoostNotAllowed",
    "IdempotencyConflict",
    "SpendReceipt",
    "UnknownTarget",
    "acontact_influencer",
    "apurchase_boost",
    "contact_influencer",
    "purchase_boost",
]
