# -*- coding: utf-8 -*-
"""Persistent token ledger: cached balances plus an append-only transaction log."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import ConnectionPool

from core.db.postgres import create_connection_pool, mask_dsn
from core.db.retry import with_db_retries
from metrics import record_ledger_op

log = logging.getLogger(__name__)

T = TypeVar("T")

TX_PURCHASE = "purchase"
TX_INFLUENCER_CONTACT = "influencer_contact"
TX_BOOST = "boost"
TX_REFUND = "refund"

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"

MAX_PAGE_SIZE = 200


@dataclass
class LedgerOpResult:
    """Result of a balance operation."""

    applied: bool
    balance: int
    op_id: str
    reason: str
    old_balance: int
    duplicate: bool = False
    transaction_id: Optional[int] = None


@dataclass
class BalanceRecalcResult:
    """Result of recalculating a balance from the transaction log."""

    previous: int
    calculated: int
    updated: bool


@dataclass(frozen=True)
class Transaction:
    id: int
    account_id: str
    amount: int
    status: str
    type: str
    description: str
    op_id: str
    reference_id: Optional[str] = None
    package_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass(frozen=True)
class TransactionPage:
    transactions: List[Transaction]
    total: int
    limit: int
    offset: int


class LedgerError(RuntimeError):
    """Base error for ledger operations."""


class InsufficientBalance(LedgerError):
    """Raised when a debit would make the balance negative."""

    def __init__(self, balance: int, required: int):
        super().__init__(f"insufficient balance: have {balance}, need {required}")
        self.balance = balance
        self.required = required

    @property
    def shortfall(self) -> int:
        return max(self.required - self.balance, 0)


class StorageFailure(LedgerError):
    """Raised when the underlying store cannot complete an operation."""

    def __init__(self, op: str, detail: str = ""):
        message = f"ledger storage failure during {op}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.op = op


def _clamp_page(limit: int, offset: int) -> tuple[int, int]:
    try:
        limit_value = int(limit)
    except (TypeError, ValueError):
        limit_value = 50
    try:
        offset_value = int(offset)
    except (TypeError, ValueError):
        offset_value = 0
    return min(max(limit_value, 1), MAX_PAGE_SIZE), max(offset_value, 0)


def _require_positive(amount: Any) -> int:
    value = int(amount)
    if value <= 0:
        raise ValueError("amount must be a positive integer")
    return value


def _purchase_op_id(payment_intent_id: str) -> str:
    return f"stripe:{payment_intent_id}"


def _failed_payment_op_id(payment_intent_id: str) -> str:
    return f"stripe:failed:{payment_intent_id}"


class _LedgerHelpers:
    """Utility helpers shared by ledger backends."""

    @staticmethod
    def _json_meta(meta: Optional[Dict[str, Any]]) -> Optional[str]:
        if not meta:
            return None
        return json.dumps(meta, ensure_ascii=False, sort_keys=True, default=str)

    @staticmethod
    def _new_op_id(prefix: str) -> str:
        return f"{prefix}:{uuid.uuid4().hex}"

    @staticmethod
    def _observe(op: str, result: str, started: float) -> None:
        record_ledger_op(op, result, time.perf_counter() - started)

    @staticmethod
    def _log_operation(
        op_type: str,
        account_id: str,
        op_id: str,
        amount: int,
        reason: str,
        old_balance: int,
        new_balance: int,
        meta: Optional[Dict[str, Any]],
    ) -> None:
        log.info(
            "ledger.%s",
            op_type,
            extra={
                "meta": {
                    "account_id": account_id,
                    "op_id": op_id,
                    "amount": amount,
                    "reason": reason,
                    "old": old_balance,
                    "new": new_balance,
                    "ctx": dict(meta or {}),
                }
            },
        )


_DDL_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    email TEXT,
    role TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_DDL_BALANCES = """
CREATE TABLE IF NOT EXISTS balances (
    account_id TEXT PRIMARY KEY REFERENCES accounts(account_id),
    tokens BIGINT NOT NULL DEFAULT 0 CHECK (tokens >= 0),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_DDL_TRANSACTIONS = """
CREATE TABLE IF NOT EXISTS token_transactions (
    id BIGSERIAL PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(account_id),
    amount BIGINT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('completed', 'failed', 'pending')),
    type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    reference_id TEXT,
    package_id TEXT,
    payment_intent_id TEXT,
    op_id TEXT NOT NULL UNIQUE,
    meta JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_DDL_TRANSACTIONS_IDX = """
CREATE INDEX IF NOT EXISTS idx_token_transactions_account_created_at
    ON token_transactions(account_id, created_at DESC, id DESC)
"""

_DDL_PURCHASE_UNIQUE = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_token_transactions_purchase_intent
    ON token_transactions(payment_intent_id)
 WHERE type = 'purchase' AND status = 'completed' AND payment_intent_id IS NOT NULL
"""

_DDL_APPEND_ONLY_FN = """
CREATE OR REPLACE FUNCTION token_transactions_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'token_transactions is append-only';
END;
$$ LANGUAGE plpgsql
"""

_DDL_APPEND_ONLY_TRIGGER = [
    "DROP TRIGGER IF EXISTS trg_token_transactions_append_only ON token_transactions",
    """
    CREATE TRIGGER trg_token_transactions_append_only
        BEFORE UPDATE OR DELETE ON token_transactions
        FOR EACH ROW EXECUTE FUNCTION token_transactions_append_only()
    """,
]

_TX_COLUMNS = (
    "id, account_id, amount, status, type, description, op_id, "
    "reference_id, package_id, payment_intent_id, created_at"
)


def _row_to_transaction(row: Any) -> Transaction:
    created_at = row[10]
    if isinstance(created_at, datetime) and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Transaction(
        id=int(row[0]),
        account_id=str(row[1]),
        amount=int(row[2]),
        status=str(row[3]),
        type=str(row[4]),
        description=str(row[5] or ""),
        op_id=str(row[6]),
        reference_id=row[7],
        package_id=row[8],
        payment_intent_id=row[9],
        created_at=created_at,
    )


class _PostgresLedgerStorage(_LedgerHelpers):
    """Ledger-backed balance storage with atomic operations."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10):
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for ledger storage")
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self.log = log
        self._pool: Optional[ConnectionPool] = None
        self._pool_lock = threading.RLock()
        self._default_retries = 3

    # ------------------------------------------------------------------
    #   Lifecycle helpers
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                return
            pool = create_connection_pool(
                self._dsn,
                application_name="influencerhub-ledger",
                min_size=self._min_size,
                max_size=self._max_size,
            )
            self._pool = pool
        self.log.info("ledger.pool.started", extra={"meta": {"dsn": mask_dsn(self._dsn)}})
        self._prepare()

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
        if not pool:
            return
        try:
            pool.close()
        except Exception as exc:  # pragma: no cover - shutdown path
            self.log.warning("ledger.pool.close_failed", extra={"meta": {"error": str(exc)}})
        else:
            self.log.info("ledger.pool.closed")

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _ensure_pool(self) -> ConnectionPool:
        if self._pool is None:
            self.start()
        if self._pool is None:
            raise RuntimeError("Postgres connection pool is not available")
        return self._pool

    def _with_connection(
        self,
        fn: Callable[[psycopg.Connection], T],
        *,
        op: str,
        retries: Optional[int] = None,
        **ctx: Any,
    ) -> T:
        def attempt() -> T:
            pool = self._ensure_pool()
            with pool.connection() as conn:
                return fn(conn)

        try:
            return with_db_retries(
                attempt,
                attempts=retries or self._default_retries,
                logger=self.log,
                context={"op": op, **ctx},
            )
        except psycopg.Error as exc:
            raise StorageFailure(op, str(exc)) from exc

    def _prepare(self) -> None:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(_DDL_ACCOUNTS)
                    cur.execute(_DDL_BALANCES)
                    cur.execute(_DDL_TRANSACTIONS)
                    cur.execute(_DDL_TRANSACTIONS_IDX)
                    cur.execute(_DDL_PURCHASE_UNIQUE)
                    cur.execute(_DDL_APPEND_ONLY_FN)
                    for statement in _DDL_APPEND_ONLY_TRIGGER:
                        cur.execute(statement)

        self._with_connection(operation, op="prepare")

    @staticmethod
    def _ensure_account(
        cur: psycopg.Cursor[Any],
        account_id: str,
        *,
        email: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        cur.execute(
            """
            INSERT INTO accounts (account_id, email, role)
            VALUES (%s, %s, %s)
            ON CONFLICT (account_id) DO UPDATE
               SET email = COALESCE(EXCLUDED.email, accounts.email),
                   role = COALESCE(accounts.role, EXCLUDED.role),
                   updated_at = now()
            """,
            (account_id, email, role),
        )
        cur.execute(
            "INSERT INTO balances (account_id) VALUES (%s) ON CONFLICT DO NOTHING",
            (account_id,),
        )

    @staticmethod
    def _lock_balance(cur: psycopg.Cursor[Any], account_id: str) -> int:
        cur.execute(
            "SELECT tokens FROM balances WHERE account_id=%s FOR UPDATE",
            (account_id,),
        )
        row = cur.fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _find_op(cur: psycopg.Cursor[Any], op_id: str) -> Optional[int]:
        cur.execute("SELECT id FROM token_transactions WHERE op_id=%s", (op_id,))
        row = cur.fetchone()
        return int(row[0]) if row else None

    @staticmethod
    def _insert_transaction(
        cur: psycopg.Cursor[Any],
        account_id: str,
        amount: int,
        status: str,
        tx_type: str,
        description: str,
        op_id: str,
        *,
        reference_id: Optional[str] = None,
        package_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        meta_json: Optional[str] = None,
    ) -> int:
        cur.execute(
            """
            INSERT INTO token_transactions
                (account_id, amount, status, type, description, reference_id,
                 package_id, payment_intent_id, op_id, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s::jsonb, '{}'::jsonb))
            RETURNING id
            """,
            (
                account_id,
                amount,
                status,
                tx_type,
                description,
                reference_id,
                package_id,
                payment_intent_id,
                op_id,
                meta_json,
            ),
        )
        row = cur.fetchone()
        return int(row[0]) if row else 0

    def _apply_credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        tx_type: str,
        op_id: str,
        *,
        op: str,
        reference_id: Optional[str] = None,
        package_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        meta_json = self._json_meta(meta)
        state: Dict[str, int] = {"old": 0}

        def operation(conn: psycopg.Connection) -> LedgerOpResult:
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        self._ensure_account(cur, account_id)
                        old_balance = self._lock_balance(cur, account_id)
                        state["old"] = old_balance

                        existing = self._find_op(cur, op_id)
                        if existing is not None:
                            return LedgerOpResult(
                                False, old_balance, op_id, description, old_balance,
                                duplicate=True, transaction_id=existing,
                            )

                        cur.execute(
                            """
                            UPDATE balances
                               SET tokens = tokens + %s,
                                   updated_at = now()
                             WHERE account_id = %s
                            RETURNING tokens
                            """,
                            (amount, account_id),
                        )
                        new_balance_row = cur.fetchone()
                        new_balance = int(new_balance_row[0]) if new_balance_row else old_balance + amount

                        tx_id = self._insert_transaction(
                            cur,
                            account_id,
                            amount,
                            STATUS_COMPLETED,
                            tx_type,
                            description,
                            op_id,
                            reference_id=reference_id,
                            package_id=package_id,
                            payment_intent_id=payment_intent_id,
                            meta_json=meta_json,
                        )
                        return LedgerOpResult(
                            True, new_balance, op_id, description, old_balance, transaction_id=tx_id
                        )
            except pg_errors.UniqueViolation:
                self.log.warning(
                    "ledger.credit.conflict",
                    extra={"meta": {"account_id": account_id, "op_id": op_id}},
                )
                old_balance = state["old"]
                return LedgerOpResult(
                    False, old_balance, op_id, description, old_balance, duplicate=True
                )

        started = time.perf_counter()
        try:
            result = self._with_connection(
                operation, op=op, account_id=account_id, op_id=op_id, amount=amount
            )
        except StorageFailure:
            self._observe(op, "error", started)
            raise
        self._observe(op, "duplicate" if result.duplicate else "ok", started)
        if result.applied:
            self._log_operation(
                "credit", account_id, op_id, amount, description, result.old_balance, result.balance, meta
            )
        return result

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()

        try:
            self._with_connection(operation, op="ping", retries=1)
            return True
        except Exception:
            log.exception("ledger ping failed")
            return False

    def ensure_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_account(cur, account_id, email=email, role=role)

        self._with_connection(operation, op="ensure_account", account_id=account_id)

    def get_balance(self, account_id: str) -> int:
        def operation(conn: psycopg.Connection) -> int:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("SELECT tokens FROM balances WHERE account_id=%s", (account_id,))
                    row = cur.fetchone()
                    return int(row[0]) if row else 0

        return self._with_connection(operation, op="get_balance", account_id=account_id)

    def spend(
        self,
        account_id: str,
        amount: int,
        description: str,
        tx_type: str,
        *,
        reference_id: Optional[str] = None,
        op_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        amount = _require_positive(amount)
        op_id = op_id or self._new_op_id(f"spend:{tx_type}")
        meta_json = self._json_meta(meta)

        def operation(conn: psycopg.Connection) -> LedgerOpResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_account(cur, account_id)
                    old_balance = self._lock_balance(cur, account_id)

                    existing = self._find_op(cur, op_id)
                    if existing is not None:
                        return LedgerOpResult(
                            False, old_balance, op_id, description, old_balance,
                            duplicate=True, transaction_id=existing,
                        )

                    if old_balance < amount:
                        raise InsufficientBalance(old_balance, amount)

                    cur.execute(
                        """
                        UPDATE balances
                           SET tokens = tokens - %s,
                               updated_at = now()
                         WHERE account_id = %s
                           AND tokens >= %s
                        RETURNING tokens
                        """,
                        (amount, account_id, amount),
                    )
                    new_balance_row = cur.fetchone()
                    if not new_balance_row:
                        raise InsufficientBalance(old_balance, amount)
                    new_balance = int(new_balance_row[0])

                    tx_id = self._insert_transaction(
                        cur,
                        account_id,
                        -amount,
                        STATUS_COMPLETED,
                        tx_type,
                        description,
                        op_id,
                        reference_id=reference_id,
                        meta_json=meta_json,
                    )
                    return LedgerOpResult(
                        True, new_balance, op_id, description, old_balance, transaction_id=tx_id
                    )

        started = time.perf_counter()
        try:
            result = self._with_connection(
                operation, op="spend", account_id=account_id, op_id=op_id, amount=amount
            )
        except InsufficientBalance:
            self._observe("spend", "insufficient", started)
            raise
        except StorageFailure:
            self._observe("spend", "error", started)
            raise
        self._observe("spend", "duplicate" if result.duplicate else "ok", started)
        if result.applied:
            self._log_operation(
                "spend", account_id, op_id, -amount, description, result.old_balance, result.balance, meta
            )
        return result

    def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        tx_type: str,
        *,
        op_id: str,
        reference_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        return self._apply_credit(
            account_id,
            _require_positive(amount),
            description,
            tx_type,
            op_id,
            op="credit",
            reference_id=reference_id,
            meta=meta,
        )

    def credit_purchase(
        self,
        account_id: str,
        tokens: int,
        *,
        payment_intent_id: str,
        package_id: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        tokens = _require_positive(tokens)
        op_id = _purchase_op_id(payment_intent_id)

        def lookup(conn: psycopg.Connection) -> Optional[int]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT id FROM token_transactions
                         WHERE payment_intent_id = %s
                           AND type = 'purchase'
                           AND status = 'completed'
                        """,
                        (payment_intent_id,),
                    )
                    row = cur.fetchone()
                    return int(row[0]) if row else None

        existing = self._with_connection(lookup, op="credit_purchase.lookup", payment_intent_id=payment_intent_id)
        if existing is not None:
            balance = self.get_balance(account_id)
            record_ledger_op("credit_purchase", "duplicate")
            return LedgerOpResult(
                False, balance, op_id, "token purchase", balance, duplicate=True, transaction_id=existing
            )

        return self._apply_credit(
            account_id,
            tokens,
            f"Purchased {tokens} tokens ({package_id})",
            TX_PURCHASE,
            op_id,
            op="credit_purchase",
            reference_id=payment_intent_id,
            package_id=package_id,
            payment_intent_id=payment_intent_id,
            meta=meta,
        )

    def record_failed_payment(
        self,
        account_id: str,
        *,
        payment_intent_id: str,
        package_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        op_id = _failed_payment_op_id(payment_intent_id)
        meta_json = self._json_meta(meta)
        description = "Payment failed"

        def operation(conn: psycopg.Connection) -> LedgerOpResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_account(cur, account_id)
                    cur.execute("SELECT tokens FROM balances WHERE account_id=%s", (account_id,))
                    row = cur.fetchone()
                    balance = int(row[0]) if row else 0
                    existing = self._find_op(cur, op_id)
                    if existing is not None:
                        return LedgerOpResult(
                            False, balance, op_id, description, balance,
                            duplicate=True, transaction_id=existing,
                        )
                    tx_id = self._insert_transaction(
                        cur,
                        account_id,
                        0,
                        STATUS_FAILED,
                        TX_PURCHASE,
                        description,
                        op_id,
                        reference_id=payment_intent_id,
                        package_id=package_id,
                        payment_intent_id=payment_intent_id,
                        meta_json=meta_json,
                    )
                    return LedgerOpResult(True, balance, op_id, description, balance, transaction_id=tx_id)

        result = self._with_connection(
            operation, op="record_failed_payment", account_id=account_id, op_id=op_id
        )
        record_ledger_op("record_failed_payment", "duplicate" if result.duplicate else "ok")
        return result

    def list_transactions(self, account_id: str, *, limit: int = 50, offset: int = 0) -> TransactionPage:
        limit, offset = _clamp_page(limit, offset)

        def operation(conn: psycopg.Connection) -> TransactionPage:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        SELECT {_TX_COLUMNS}
                          FROM token_transactions
                         WHERE account_id = %s
                         ORDER BY created_at DESC, id DESC
                         LIMIT %s OFFSET %s
                        """,
                        (account_id, limit, offset),
                    )
                    rows = cur.fetchall()
                    cur.execute(
                        "SELECT COUNT(*) FROM token_transactions WHERE account_id = %s",
                        (account_id,),
                    )
                    count_row = cur.fetchone()
                    total = int(count_row[0]) if count_row else 0
                    return TransactionPage(
                        transactions=[_row_to_transaction(row) for row in rows],
                        total=total,
                        limit=limit,
                        offset=offset,
                    )

        return self._with_connection(operation, op="list_transactions", account_id=account_id)

    def get_transaction(self, op_id: str) -> Optional[Transaction]:
        """Return the transaction recorded under ``op_id``, if any."""

        def operation(conn: psycopg.Connection) -> Optional[Transaction]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {_TX_COLUMNS} FROM token_transactions WHERE op_id = %s",
                        (op_id,),
                    )
                    row = cur.fetchone()
                    return _row_to_transaction(row) if row else None

        return self._with_connection(operation, op="get_transaction", op_id=op_id)

    def recalc_balance(self, account_id: str) -> BalanceRecalcResult:
        def operation(conn: psycopg.Connection) -> BalanceRecalcResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_account(cur, account_id)
                    previous = self._lock_balance(cur, account_id)

                    cur.execute(
                        "SELECT COALESCE(SUM(amount), 0) FROM token_transactions WHERE account_id = %s",
                        (account_id,),
                    )
                    calc_row = cur.fetchone()
                    calculated = int(calc_row[0]) if calc_row else 0

                    updated = calculated != previous
                    if updated:
                        cur.execute(
                            "UPDATE balances SET tokens = %s, updated_at = now() WHERE account_id = %s",
                            (calculated, account_id),
                        )

                    return BalanceRecalcResult(
                        previous=previous, calculated=calculated, updated=updated
                    )

        result = self._with_connection(operation, op="recalc_balance", account_id=account_id)
        if result.updated:
            log.warning(
                "ledger.recalc.drift",
                extra={
                    "meta": {
                        "account_id": account_id,
                        "previous": result.previous,
                        "calculated": result.calculated,
                    }
                },
            )
        return result


class _MemoryLedgerStorage(_LedgerHelpers):
    """In-memory ledger implementation for environments without Postgres."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: Dict[str, Dict[str, Any]] = {}
        self._transactions: List[Transaction] = []
        self._by_op: Dict[str, Transaction] = {}
        self._purchases: Dict[str, Transaction] = {}
        self._next_id = 1

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _ensure_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Dict[str, Any]:
        account = self._accounts.setdefault(
            account_id,
            {"tokens": 0, "email": None, "role": None, "updated_at": datetime.now(timezone.utc)},
        )
        if email is not None:
            account["email"] = email
        if account.get("role") is None and role is not None:
            account["role"] = role
        return account

    def _append(
        self,
        account_id: str,
        amount: int,
        status: str,
        tx_type: str,
        description: str,
        op_id: str,
        *,
        reference_id: Optional[str] = None,
        package_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Transaction:
        tx = Transaction(
            id=self._next_id,
            account_id=account_id,
            amount=amount,
            status=status,
            type=tx_type,
            description=description,
            op_id=op_id,
            reference_id=reference_id,
            package_id=package_id,
            payment_intent_id=payment_intent_id,
        )
        self._next_id += 1
        self._transactions.append(tx)
        self._by_op[op_id] = tx
        return tx

    def _credit_locked(
        self,
        account_id: str,
        amount: int,
        description: str,
        tx_type: str,
        op_id: str,
        **refs: Optional[str],
    ) -> LedgerOpResult:
        account = self._ensure_account(account_id)
        old_balance = int(account["tokens"])
        existing = self._by_op.get(op_id)
        if existing is not None:
            return LedgerOpResult(
                False, old_balance, op_id, description, old_balance,
                duplicate=True, transaction_id=existing.id,
            )
        new_balance = old_balance + amount
        account["tokens"] = new_balance
        account["updated_at"] = datetime.now(timezone.utc)
        tx = self._append(account_id, amount, STATUS_COMPLETED, tx_type, description, op_id, **refs)
        return LedgerOpResult(True, new_balance, op_id, description, old_balance, transaction_id=tx.id)

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        return True

    def start(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def stop(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def ensure_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._ensure_account(account_id, email=email, role=role)

    def get_balance(self, account_id: str) -> int:
        with self._lock:
            account = self._accounts.get(account_id)
            return int(account["tokens"]) if account else 0

    def spend(
        self,
        account_id: str,
        amount: int,
        description: str,
        tx_type: str,
        *,
        reference_id: Optional[str] = None,
        op_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        amount = _require_positive(amount)
        op_id = op_id or self._new_op_id(f"spend:{tx_type}")
        started = time.perf_counter()
        with self._lock:
            account = self._accounts.get(account_id)
            old_balance = int(account["tokens"]) if account else 0

            existing = self._by_op.get(op_id)
            if existing is not None:
                self._observe("spend", "duplicate", started)
                return LedgerOpResult(
                    False, old_balance, op_id, description, old_balance,
                    duplicate=True, transaction_id=existing.id,
                )

            if old_balance < amount:
                self._observe("spend", "insufficient", started)
                raise InsufficientBalance(old_balance, amount)

            account = self._ensure_account(account_id)
            new_balance = old_balance - amount
            account["tokens"] = new_balance
            account["updated_at"] = datetime.now(timezone.utc)
            tx = self._append(
                account_id,
                -amount,
                STATUS_COMPLETED,
                tx_type,
                description,
                op_id,
                reference_id=reference_id,
            )

        self._observe("spend", "ok", started)
        self._log_operation("spend", account_id, op_id, -amount, description, old_balance, new_balance, meta)
        return LedgerOpResult(True, new_balance, op_id, description, old_balance, transaction_id=tx.id)

    def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        tx_type: str,
        *,
        op_id: str,
        reference_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        amount = _require_positive(amount)
        started = time.perf_counter()
        with self._lock:
            result = self._credit_locked(
                account_id, amount, description, tx_type, op_id, reference_id=reference_id
            )
        self._observe("credit", "duplicate" if result.duplicate else "ok", started)
        if result.applied:
            self._log_operation(
                "credit", account_id, op_id, amount, description, result.old_balance, result.balance, meta
            )
        return result

    def credit_purchase(
        self,
        account_id: str,
        tokens: int,
        *,
        payment_intent_id: str,
        package_id: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        tokens = _require_positive(tokens)
        op_id = _purchase_op_id(payment_intent_id)
        description = f"Purchased {tokens} tokens ({package_id})"
        started = time.perf_counter()
        with self._lock:
            existing = self._purchases.get(payment_intent_id)
            if existing is not None:
                balance = self.get_balance(account_id)
                self._observe("credit_purchase", "duplicate", started)
                return LedgerOpResult(
                    False, balance, op_id, description, balance,
                    duplicate=True, transaction_id=existing.id,
                )
            result = self._credit_locked(
                account_id,
                tokens,
                description,
                TX_PURCHASE,
                op_id,
                reference_id=payment_intent_id,
                package_id=package_id,
                payment_intent_id=payment_intent_id,
            )
            if result.applied:
                self._purchases[payment_intent_id] = self._by_op[op_id]

        self._observe("credit_purchase", "duplicate" if result.duplicate else "ok", started)
        if result.applied:
            self._log_operation(
                "credit", account_id, op_id, tokens, description, result.old_balance, result.balance, meta
            )
        return result

    def record_failed_payment(
        self,
        account_id: str,
        *,
        payment_intent_id: str,
        package_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        op_id = _failed_payment_op_id(payment_intent_id)
        description = "Payment failed"
        with self._lock:
            account = self._ensure_account(account_id)
            balance = int(account["tokens"])
            existing = self._by_op.get(op_id)
            if existing is not None:
                record_ledger_op("record_failed_payment", "duplicate")
                return LedgerOpResult(
                    False, balance, op_id, description, balance,
                    duplicate=True, transaction_id=existing.id,
                )
            tx = self._append(
                account_id,
                0,
                STATUS_FAILED,
                TX_PURCHASE,
                description,
                op_id,
                reference_id=payment_intent_id,
                package_id=package_id,
                payment_intent_id=payment_intent_id,
            )
        record_ledger_op("record_failed_payment", "ok")
        return LedgerOpResult(True, balance, op_id, description, balance, transaction_id=tx.id)

    def list_transactions(self, account_id: str, *, limit: int = 50, offset: int = 0) -> TransactionPage:
        limit, offset = _clamp_page(limit, offset)
        with self._lock:
            entries = [tx for tx in self._transactions if tx.account_id == account_id]
        entries.sort(key=lambda tx: (tx.created_at, tx.id), reverse=True)
        return TransactionPage(
            transactions=entries[offset : offset + limit],
            total=len(entries),
            limit=limit,
            offset=offset,
        )

    def get_transaction(self, op_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._by_op.get(op_id)

    def recalc_balance(self, account_id: str) -> BalanceRecalcResult:
        with self._lock:
            account = self._ensure_account(account_id)
            previous = int(account["tokens"])
            calculated = sum(tx.amount for tx in self._transactions if tx.account_id == account_id)
            updated = calculated != previous
            if updated:
                account["tokens"] = calculated

        if updated:
            log.warning(
                "ledger.recalc.drift",
                extra={"meta": {"account_id": account_id, "previous": previous, "calculated": calculated}},
            )
        return BalanceRecalcResult(previous=previous, calculated=calculated, updated=updated)


class LedgerStorage:
    """Facade that selects the appropriate ledger backend."""

    def __init__(
        self,
        dsn: Optional[str],
        *,
        backend: str = "postgres",
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        backend = (backend or "postgres").lower()
        self.backend = backend

        if backend == "memory":
            self._impl: Any = _MemoryLedgerStorage()
            self._started = True
        else:
            if not dsn:
                raise RuntimeError(
                    "DATABASE_URL must be set for persistent ledger storage"
                )
            self._impl = _PostgresLedgerStorage(dsn, min_size=min_size, max_size=max_size)
            self._started = False

    def start(self) -> None:
        if hasattr(self._impl, "start"):
            self._impl.start()
        self._started = True

    def stop(self) -> None:
        try:
            if hasattr(self._impl, "stop"):
                self._impl.stop()
        finally:
            self._started = False

    def __getattr__(self, name: str) -> Any:
        if not getattr(self, "_started", False) and hasattr(self._impl, "start"):
            self.start()
        return getattr(self._impl, name)


_ledger_instance: Optional[LedgerStorage] = None
_ledger_lock = threading.Lock()


def get_ledger_storage() -> LedgerStorage:
    """Return the process-wide ledger built from configuration."""

    global _ledger_instance
    if _ledger_instance is None:
        with _ledger_lock:
            if _ledger_instance is None:
                from settings import DATABASE_URL, LEDGER_BACKEND, PG_POOL_MAX, PG_POOL_MIN

                _ledger_instance = LedgerStorage(
                    DATABASE_URL,
                    backend=LEDGER_BACKEND,
                    min_size=PG_POOL_MIN,
                    max_size=PG_POOL_MAX,
                )
    return _ledger_instance


def set_ledger_storage(storage: Optional[LedgerStorage]) -> None:
    global _ledger_instance
    _ledger_instance = storage


__all__ = [
    "BalanceRecalcResult",
    "InsufficientBalance",
    "LedgerError",
    "LedgerOpResult",
    "LedgerStorage",
    "StorageFailure",
    "Transaction",
    "TransactionPage",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "TX_BOOST",
    "TX_INFLUENCER_CONTACT",
    "TX_PURCHASE",
    "TX_REFUND",
    "get_ledger_storage",
    "set_ledger_storage",
]
