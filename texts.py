from __future__ import annotations

from typing import Any

COMMON_TEXTS_EN = {
    "balance.insufficient": "Not enough tokens: {need} required, {have} on balance.",
    "balance.storage_unavailable": "The ledger is temporarily unavailable. Please try again; no tokens were spent.",
    "contact.success": "Contact request sent. {cost} tokens spent, {balance} remaining.",
    "contact.unknown": "Influencer not found.",
    "boost.success": "{name} activated for {days} days. {cost} tokens spent, {balance} remaining.",
    "boost.unknown": "Boost not found.",
    "boost.not_allowed": "This boost is not available for your account type.",
    "idempotency.conflict": "This Idempotency-Key was already used for a different request. Use a new key.",
    "checkout.invalid_package": "Invalid package ID. Must be one of: {packages}",
    "checkout.failed": "Could not create the checkout session. Please try again.",
    "auth.required": "Authentication required.",
    "auth.invalid": "Invalid or expired credentials.",
    "webhook.missing_signature": "Missing stripe-signature header",
    "webhook.invalid_signature": "Invalid signature",
    "notify.contact.title": "New Business Contact",
    "notify.contact.message": "{business_name} has contacted you and is interested in working with you.",
    "notify.spent.title": "Tokens Spent",
    "notify.spent.message": "{amount} tokens have been spent: {description}",
    "notify.added.title": "Tokens Added",
    "notify.added.message": "{amount} tokens have been added to your account.",
    "tx.contact": "Contacted influencer {name}",
    "tx.boost": "Purchased {name}",
    "tx.refund": "Refund: {description}",
}


def common_text(key: str, /, **kwargs: Any) -> str:
    value = COMMON_TEXTS_EN.get(key, key)
    if kwargs:
        try:
            return value.format(**kwargs)
        except (KeyError, IndexError, ValueError):
            return value
    return value


__all__ = ["COMMON_TEXTS_EN", "common_text"]
