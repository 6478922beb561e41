import os
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("LEDGER_BACKEND", "memory")

from ledger import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    TX_INFLUENCER_CONTACT,
    TX_PURCHASE,
    InsufficientBalance,
    LedgerStorage,
)


def _ledger() -> LedgerStorage:
    return LedgerStorage(None, backend="memory")


def _consistent(ledger: LedgerStorage, account_id: str) -> bool:
    page = ledger.list_transactions(account_id, limit=200)
    return ledger.get_balance(account_id) == sum(tx.amount for tx in page.transactions)


def test_get_balance_unknown_account_is_zero_and_not_provisioned():
    ledger = _ledger()
    assert ledger.backend == "memory"
    assert ledger.get_balance("nobody") == 0
    assert ledger.list_transactions("nobody").total == 0


def test_credit_purchase_then_redelivery_is_duplicate():
    ledger = _ledger()

    first = ledger.credit_purchase("acct-1", 1000, payment_intent_id="pi_1", package_id="small")
    assert first.applied is True
    assert first.balance == 1000
    assert first.old_balance == 0

    second = ledger.credit_purchase("acct-1", 1000, payment_intent_id="pi_1", package_id="small")
    assert second.applied is False
    assert second.duplicate is True
    assert second.balance == 1000

    page = ledger.list_transactions("acct-1")
    assert page.total == 1
    tx = page.transactions[0]
    assert tx.amount == 1000
    assert tx.type == TX_PURCHASE
    assert tx.status == STATUS_COMPLETED
    assert tx.payment_intent_id == "pi_1"
    assert tx.package_id == "small"
    assert _consistent(ledger, "acct-1")


def test_spend_records_signed_debit():
    ledger = _ledger()
    ledger.credit_purchase("acct-2", 150, payment_intent_id="pi_2", package_id="small")

    result = ledger.spend("acct-2", 105, "Contacted influencer", TX_INFLUENCER_CONTACT, reference_id="inf-9")

    assert result.applied is True
    assert result.balance == 45
    assert result.old_balance == 150
    newest = ledger.list_transactions("acct-2").transactions[0]
    assert newest.amount == -105
    assert newest.reference_id == "inf-9"
    assert newest.type == TX_INFLUENCER_CONTACT
    assert _consistent(ledger, "acct-2")


def test_spend_insufficient_leaves_no_trace():
    ledger = _ledger()
    ledger.credit_purchase("acct-3", 50, payment_intent_id="pi_3", package_id="small")

    with pytest.raises(InsufficientBalance) as excinfo:
        ledger.spend("acct-3", 105, "Contacted influencer", TX_INFLUENCER_CONTACT)

    assert excinfo.value.balance == 50
    assert excinfo.value.required == 105
    assert excinfo.value.shortfall == 55
    assert ledger.get_balance("acct-3") == 50
    assert ledger.list_transactions("acct-3").total == 1


@pytest.mark.parametrize("amount", [0, -5])
def test_spend_rejects_non_positive_amount(amount):
    ledger = _ledger()
    with pytest.raises(ValueError):
        ledger.spend("acct-4", amount, "bad", TX_INFLUENCER_CONTACT)


def test_spend_with_same_op_id_is_applied_once():
    ledger = _ledger()
    ledger.credit_purchase("acct-5", 100, payment_intent_id="pi_5", package_id="small")

    first = ledger.spend("acct-5", 30, "boost", "boost", op_id="boost:acct-5:key-1")
    again = ledger.spend("acct-5", 30, "boost", "boost", op_id="boost:acct-5:key-1")

    assert first.applied is True
    assert again.duplicate is True
    assert ledger.get_balance("acct-5") == 70


def test_concurrent_spends_exactly_one_succeeds():
    ledger = _ledger()
    ledger.credit_purchase("acct-6", 100, payment_intent_id="pi_6", package_id="small")

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            ledger.spend("acct-6", 80, "contact", TX_INFLUENCER_CONTACT)
        except InsufficientBalance:
            with lock:
                outcomes.append("insufficient")
        else:
            with lock:
                outcomes.append("ok")

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["insufficient", "ok"]
    assert ledger.get_balance("acct-6") == 20
    debits = [tx for tx in ledger.list_transactions("acct-6").transactions if tx.amount < 0]
    assert len(debits) == 1


def test_concurrent_mixed_operations_keep_ledger_consistent():
    ledger = _ledger()
    ledger.credit_purchase("acct-7", 500, payment_intent_id="pi_seed", package_id="small")

    def spender() -> None:
        for _ in range(20):
            try:
                ledger.spend("acct-7", 7, "contact", TX_INFLUENCER_CONTACT)
            except InsufficientBalance:
                pass

    def crediter(offset: int) -> None:
        for index in range(10):
            ledger.credit_purchase(
                "acct-7", 5, payment_intent_id=f"pi_{offset}_{index % 5}", package_id="small"
            )

    threads = [threading.Thread(target=spender) for _ in range(4)]
    threads += [threading.Thread(target=crediter, args=(n,)) for n in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.get_balance("acct-7") >= 0
    assert _consistent(ledger, "acct-7")
    purchases = [
        tx for tx in ledger.list_transactions("acct-7", limit=200).transactions if tx.type == TX_PURCHASE
    ]
    assert len(purchases) == 1 + 2 * 5


def test_record_failed_payment_is_zero_amount_and_idempotent():
    ledger = _ledger()

    first = ledger.record_failed_payment("acct-8", payment_intent_id="pi_f", package_id="large")
    second = ledger.record_failed_payment("acct-8", payment_intent_id="pi_f", package_id="large")

    assert first.applied is True
    assert second.duplicate is True
    page = ledger.list_transactions("acct-8")
    assert page.total == 1
    assert page.transactions[0].status == STATUS_FAILED
    assert page.transactions[0].amount == 0
    assert ledger.get_balance("acct-8") == 0


def test_refund_credit_is_separate_offsetting_row():
    ledger = _ledger()
    ledger.credit_purchase("acct-9", 200, payment_intent_id="pi_9", package_id="small")
    spent = ledger.spend("acct-9", 120, "boost", "boost")

    refund = ledger.credit("acct-9", 120, "Refund: boost", "refund", op_id=f"refund:{spent.op_id}")
    repeat = ledger.credit("acct-9", 120, "Refund: boost", "refund", op_id=f"refund:{spent.op_id}")

    assert refund.applied is True
    assert repeat.duplicate is True
    assert ledger.get_balance("acct-9") == 200
    assert ledger.list_transactions("acct-9").total == 3


def test_list_transactions_pagination_newest_first():
    ledger = _ledger()
    for index in range(5):
        ledger.credit_purchase("acct-10", 10, payment_intent_id=f"pi_p{index}", package_id="small")

    page = ledger.list_transactions("acct-10", limit=2, offset=1)
    assert page.total == 5
    assert page.limit == 2
    assert page.offset == 1
    ids = [tx.id for tx in page.transactions]
    assert ids == sorted(ids, reverse=True)
    assert len(ids) == 2

    clamped = ledger.list_transactions("acct-10", limit=10_000, offset=-3)
    assert clamped.limit == 200
    assert clamped.offset == 0


def test_recalc_balance_repairs_drift():
    ledger = _ledger()
    ledger.credit_purchase("acct-11", 300, payment_intent_id="pi_11", package_id="small")
    ledger._impl._accounts["acct-11"]["tokens"] = 999  # type: ignore[attr-defined]

    result = ledger.recalc_balance("acct-11")

    assert result.previous == 999
    assert result.calculated == 300
    assert result.updated is True
    assert ledger.get_balance("acct-11") == 300
    assert ledger.recalc_balance("acct-11").updated is False


def test_postgres_backend_requires_dsn():
    with pytest.raises(RuntimeError):
        LedgerStorage(None, backend="postgres")


def test_get_transaction_by_op_id():
    ledger = _ledger()
    ledger.credit_purchase("acct", 500, payment_intent_id="pi_lookup", package_id="small")
    ledger.spend("acct", 105, "Contacted Ava", "influencer_contact", reference_id="inf-1", op_id="contact:acct:k")

    tx = ledger.get_transaction("contact:acct:k")

    assert tx is not None
    assert tx.amount == -105
    assert tx.reference_id == "inf-1"
    assert ledger.get_transaction("contact:acct:missing") is None
