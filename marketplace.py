"""Marketplace records written alongside ledger debits: contacts, boosts and notifications."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

import psycopg
from psycopg_pool import ConnectionPool

from core.db.postgres import create_connection_pool, mask_dsn
from core.db.retry import with_db_retries
from ledger import StorageFailure
from pricing import Boost

log = logging.getLogger(__name__)

T = TypeVar("T")

NOTIFY_CONTACT = "contact"
NOTIFY_TOKEN_UPDATE = "token_update"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Influencer:
    influencer_id: str
    display_name: str
    followers: int


@dataclass(frozen=True)
class ContactRecord:
    id: int
    business_id: str
    influencer_id: str
    tokens_spent: int
    op_id: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BoostPurchase:
    id: int
    account_id: str
    boost_id: str
    tokens_spent: int
    expires_at: datetime
    op_id: str
    created_at: datetime = field(default_factory=_utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or _utcnow())


@dataclass(frozen=True)
class Notification:
    id: int
    account_id: str
    title: str
    message: str
    type: str
    related_id: Optional[str] = None
    read: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


_DDL = [
    """
    CREATE TABLE IF NOT EXISTS influencers (
        influencer_id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL DEFAULT '',
        followers BIGINT NOT NULL DEFAULT 0 CHECK (followers >= 0),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS influencer_contacts (
        id BIGSERIAL PRIMARY KEY,
        business_id TEXT NOT NULL,
        influencer_id TEXT NOT NULL REFERENCES influencers(influencer_id),
        tokens_spent BIGINT NOT NULL,
        op_id TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS boost_purchases (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL,
        boost_id TEXT NOT NULL,
        tokens_spent BIGINT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        op_id TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        type TEXT NOT NULL,
        related_id TEXT,
        read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notifications_account ON notifications(account_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_boost_purchases_account ON boost_purchases(account_id, expires_at DESC)",
]


class _PostgresMarketplaceStorage:
    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5):
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for marketplace storage")
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[ConnectionPool] = None
        self._pool_lock = threading.RLock()

    def start(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                return
            self._pool = create_connection_pool(
                self._dsn,
                application_name="influencerhub-marketplace",
                min_size=self._min_size,
                max_size=self._max_size,
            )
        log.info("marketplace.pool.started", extra={"meta": {"dsn": mask_dsn(self._dsn)}})

        def prepare(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    for statement in _DDL:
                        cur.execute(statement)

        self._with_connection(prepare, op="prepare")

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
        if pool:
            pool.close()
            log.info("marketplace.pool.closed")

    def _with_connection(self, fn: Callable[[psycopg.Connection], T], *, op: str, **ctx: Any) -> T:
        def attempt() -> T:
            if self._pool is None:
                self.start()
            assert self._pool is not None
            with self._pool.connection() as conn:
                return fn(conn)

        try:
            return with_db_retries(attempt, logger=log, context={"op": f"marketplace.{op}", **ctx})
        except psycopg.Error as exc:
            raise StorageFailure(f"marketplace.{op}", str(exc)) from exc

    def ping(self) -> bool:
        def operation(conn: psycopg.Connection) -> None:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")

        try:
            self._with_connection(operation, op="ping")
            return True
        except Exception:
            log.exception("marketplace ping failed")
            return False

    def upsert_influencer(self, influencer_id: str, *, display_name: str, followers: int) -> Influencer:
        followers = max(int(followers), 0)

        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO influencers (influencer_id, display_name, followers)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (influencer_id) DO UPDATE
                           SET display_name = EXCLUDED.display_name,
                               followers = EXCLUDED.followers,
                               updated_at = now()
                        """,
                        (influencer_id, display_name, followers),
                    )

        self._with_connection(operation, op="upsert_influencer", influencer_id=influencer_id)
        return Influencer(influencer_id, display_name, followers)

    def get_influencer(self, influencer_id: str) -> Optional[Influencer]:
        def operation(conn: psycopg.Connection) -> Optional[Influencer]:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT influencer_id, display_name, followers FROM influencers WHERE influencer_id = %s",
                    (influencer_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return Influencer(str(row[0]), str(row[1] or ""), int(row[2] or 0))

        return self._with_connection(operation, op="get_influencer", influencer_id=influencer_id)

    def record_contact(
        self, business_id: str, influencer_id: str, tokens_spent: int, *, op_id: str
    ) -> ContactRecord:
        def operation(conn: psycopg.Connection) -> ContactRecord:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO influencer_contacts (business_id, influencer_id, tokens_spent, op_id)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (op_id) DO UPDATE SET op_id = EXCLUDED.op_id
                        RETURNING id, business_id, influencer_id, tokens_spent, op_id, created_at
                        """,
                        (business_id, influencer_id, tokens_spent, op_id),
                    )
                    row = cur.fetchone()
                    return ContactRecord(
                        int(row[0]), str(row[1]), str(row[2]), int(row[3]), str(row[4]), row[5]
                    )

        return self._with_connection(operation, op="record_contact", op_id=op_id)

    def record_boost(
        self, account_id: str, boost: Boost, *, op_id: str, now: Optional[datetime] = None
    ) -> BoostPurchase:
        expires_at = (now or _utcnow()) + boost.duration

        def operation(conn: psycopg.Connection) -> BoostPurchase:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO boost_purchases (account_id, boost_id, tokens_spent, expires_at, op_id)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (op_id) DO UPDATE SET op_id = EXCLUDED.op_id
                        RETURNING id, account_id, boost_id, tokens_spent, expires_at, op_id, created_at
                        """,
                        (account_id, boost.boost_id, boost.price, expires_at, op_id),
                    )
                    row = cur.fetchone()
                    return BoostPurchase(
                        int(row[0]), str(row[1]), str(row[2]), int(row[3]), row[4], str(row[5]), row[6]
                    )

        return self._with_connection(operation, op="record_boost", op_id=op_id)

    def active_boosts(self, account_id: str, *, now: Optional[datetime] = None) -> List[BoostPurchase]:
        moment = now or _utcnow()

        def operation(conn: psycopg.Connection) -> List[BoostPurchase]:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, account_id, boost_id, tokens_spent, expires_at, op_id, created_at
                      FROM boost_purchases
                     WHERE account_id = %s AND expires_at > %s
                     ORDER BY expires_at DESC
                    """,
                    (account_id, moment),
                )
                return [
                    BoostPurchase(int(r[0]), str(r[1]), str(r[2]), int(r[3]), r[4], str(r[5]), r[6])
                    for r in cur.fetchall()
                ]

        return self._with_connection(operation, op="active_boosts", account_id=account_id)

    def create_notification(
        self,
        account_id: str,
        title: str,
        message: str,
        type: str,
        related_id: Optional[str] = None,
    ) -> Notification:
        def operation(conn: psycopg.Connection) -> Notification:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO notifications (account_id, title, message, type, related_id)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING id, created_at
                        """,
                        (account_id, title, message, type, related_id),
                    )
                    row = cur.fetchone()
                    return Notification(
                        int(row[0]), account_id, title, message, type, related_id, False, row[1]
                    )

        return self._with_connection(operation, op="create_notification", account_id=account_id)

    def list_notifications(self, account_id: str, *, limit: int = 50) -> List[Notification]:
        def operation(conn: psycopg.Connection) -> List[Notification]:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, account_id, title, message, type, related_id, read, created_at
                      FROM notifications
                     WHERE account_id = %s
                     ORDER BY created_at DESC, id DESC
                     LIMIT %s
                    """,
                    (account_id, max(int(limit), 1)),
                )
                return [
                    Notification(int(r[0]), str(r[1]), str(r[2]), str(r[3]), str(r[4]), r[5], bool(r[6]), r[7])
                    for r in cur.fetchall()
                ]

        return self._with_connection(operation, op="list_notifications", account_id=account_id)


class _MemoryMarketplaceStorage:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._influencers: Dict[str, Influencer] = {}
        self._contacts: Dict[str, ContactRecord] = {}
        self._boosts: Dict[str, BoostPurchase] = {}
        self._notifications: List[Notification] = []
        self._next_id = 1

    def _allocate_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def start(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def stop(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def ping(self) -> bool:
        return True

    def upsert_influencer(self, influencer_id: str, *, display_name: str, followers: int) -> Influencer:
        record = Influencer(influencer_id, display_name, max(int(followers), 0))
        with self._lock:
            self._influencers[influencer_id] = record
        return record

    def get_influencer(self, influencer_id: str) -> Optional[Influencer]:
        with self._lock:
            return self._influencers.get(influencer_id)

    def record_contact(
        self, business_id: str, influencer_id: str, tokens_spent: int, *, op_id: str
    ) -> ContactRecord:
        with self._lock:
            existing = self._contacts.get(op_id)
            if existing is not None:
                return existing
            record = ContactRecord(self._allocate_id(), business_id, influencer_id, int(tokens_spent), op_id)
            self._contacts[op_id] = record
            return record

    def record_boost(
        self, account_id: str, boost: Boost, *, op_id: str, now: Optional[datetime] = None
    ) -> BoostPurchase:
        moment = now or _utcnow()
        with self._lock:
            existing = self._boosts.get(op_id)
            if existing is not None:
                return existing
            record = BoostPurchase(
                self._allocate_id(),
                account_id,
                boost.boost_id,
                boost.price,
                moment + boost.duration,
                op_id,
                moment,
            )
            self._boosts[op_id] = record
            return record

    def active_boosts(self, account_id: str, *, now: Optional[datetime] = None) -> List[BoostPurchase]:
        moment = now or _utcnow()
        with self._lock:
            items = [b for b in self._boosts.values() if b.account_id == account_id and b.is_active(moment)]
        return sorted(items, key=lambda b: b.expires_at, reverse=True)

    def create_notification(
        self,
        account_id: str,
        title: str,
        message: str,
        type: str,
        related_id: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            record = Notification(self._allocate_id(), account_id, title, message, type, related_id)
            self._notifications.append(record)
            return record

    def list_notifications(self, account_id: str, *, limit: int = 50) -> List[Notification]:
        with self._lock:
            items = [n for n in self._notifications if n.account_id == account_id]
        items.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return items[: max(int(limit), 1)]


class MarketplaceStorage:
    """Facade over the Postgres and in-memory marketplace backends."""

    def __init__(
        self,
        dsn: Optional[str],
        *,
        backend: str = "postgres",
        min_size: int = 1,
        max_size: int = 5,
    ) -> None:
        backend = (backend or "postgres").lower()
        self.backend = backend
        if backend == "memory":
            self._impl: Any = _MemoryMarketplaceStorage()
            self._started = True
        else:
            if not dsn:
                raise RuntimeError("DATABASE_URL must be set for persistent marketplace storage")
            self._impl = _PostgresMarketplaceStorage(dsn, min_size=min_size, max_size=max_size)
            self._started = False

    def start(self) -> None:
        self._impl.start()
        self._started = True

    def stop(self) -> None:
        try:
            self._impl.stop()
        finally:
            self._started = False

    def __getattr__(self, name: str) -> Any:
        if not getattr(self, "_started", False):
            self.start()
        return getattr(self._impl, name)


_marketplace_instance: Optional[MarketplaceStorage] = None
_marketplace_lock = threading.Lock()


def get_marketplace_storage() -> MarketplaceStorage:
    global _marketplace_instance
    if _marketplace_instance is None:
        with _marketplace_lock:
            if _marketplace_instance is None:
                from settings import DATABASE_URL, LEDGER_BACKEND

                _marketplace_instance = MarketplaceStorage(DATABASE_URL, backend=LEDGER_BACKEND)
    return _marketplace_instance


def set_marketplace_storage(storage: Optional[MarketplaceStorage]) -> None:
    global _marketplace_instance
    _marketplace_instance = storage


__all__ = [
    "BoostPurchase",
    "ContactRecord",
    "Influencer",
    "MarketplaceStorage",
    "NOTIFY_CONTACT",
    "NOTIFY_TOKEN_UPDATE",
    "Notification",
    "get_marketplace_storage",
    "set_marketplace_storage",
]
