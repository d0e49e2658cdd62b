"""
Repository pattern for data access.

Defines the store contract for subscriptions and the usage ledger, and its
SQLite implementation. Every state transition on a subscription is a
conditional write so that concurrent writers (other requests, other
processes) cannot produce an inconsistent balance.
"""

import asyncio
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Dict, List, Optional

from access_guard.core.errors import StoreUnavailable
from access_guard.core.plans import Feature, SubscriptionPlan

from .db import DEFAULT_DB_PATH, get_connection
from .models import TokenUsageRecord, UserSubscription


class DebitOutcome(Enum):
    """Result of a conditional debit."""
    APPLIED = auto()
    INSUFFICIENT = auto()  # Balance too low for the cost
    STALE = auto()         # Period changed or is due for renewal
    INACTIVE = auto()      # Subscription deactivated
    MISSING = auto()       # No subscription row


@dataclass(frozen=True)
class DebitResult:
    outcome: DebitOutcome
    subscription: Optional[UserSubscription] = None

    @property
    def applied(self) -> bool:
        return self.outcome == DebitOutcome.APPLIED


def _ts(value: datetime) -> str:
    """Fixed-width UTC text form so stored timestamps compare lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SubscriptionStore(ABC):
    """Row-level access to ``user_subscription`` and ``token_usage``.

    Conditional methods return ``None`` (or a non-applied ``DebitResult``)
    when their precondition does not hold, and raise ``StoreUnavailable``
    when the backing database fails. A failed call leaves no partial write.
    """

    @abstractmethod
    def get_subscription(self, user_id: str) -> Optional[UserSubscription]:
        """Fetch the subscription row for a user."""
        pass

    @abstractmethod
    def create_subscription(self, subscription: UserSubscription) -> UserSubscription:
        """Insert a subscription unless one exists; return the stored row."""
        pass

    @abstractmethod
    def debit(
        self,
        user_id: str,
        cost: int,
        expected_reset_at: datetime,
        now: datetime,
        record: TokenUsageRecord,
    ) -> DebitResult:
        """Decrement-if-sufficient plus ledger append, in one transaction."""
        pass

    @abstractmethod
    def renew(
        self,
        user_id: str,
        expected_reset_at: datetime,
        now: datetime,
        next_reset_at: datetime,
    ) -> Optional[UserSubscription]:
        """Reset the balance if the observed period is still current and due."""
        pass

    @abstractmethod
    def credit(self, user_id: str, tokens: int) -> Optional[UserSubscription]:
        """Add purchased tokens to the current period."""
        pass

    @abstractmethod
    def change_plan(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        now: datetime,
        next_reset_at: datetime,
    ) -> Optional[UserSubscription]:
        """Switch plan and start a fresh period."""
        pass

    @abstractmethod
    def insert_usage(self, record: TokenUsageRecord) -> TokenUsageRecord:
        """Append a ledger row on its own."""
        pass

    @abstractmethod
    def usage_history(self, user_id: str, limit: int) -> List[TokenUsageRecord]:
        """Most recent ledger rows first."""
        pass

    @abstractmethod
    def usage_summary(self, user_id: str, since: Optional[datetime] = None) -> Dict[Feature, int]:
        """Total tokens per feature, optionally since a point in time."""
        pass

    @abstractmethod
    def due_for_renewal(self, now: datetime) -> List[str]:
        """User ids whose period has ended."""
        pass

    # ---------- Async wrappers (default: run sync in a thread) ----------
    async def get_subscription_a(self, user_id: str) -> Optional[UserSubscription]:
        return await asyncio.to_thread(self.get_subscription, user_id)

    async def create_subscription_a(self, subscription: UserSubscription) -> UserSubscription:
        return await asyncio.to_thread(self.create_subscription, subscription)

    async def debit_a(self, user_id, cost, expected_reset_at, now, record) -> DebitResult:
        return await asyncio.to_thread(self.debit, user_id, cost, expected_reset_at, now, record)

    async def renew_a(self, user_id, expected_reset_at, now, next_reset_at) -> Optional[UserSubscription]:
        return await asyncio.to_thread(self.renew, user_id, expected_reset_at, now, next_reset_at)

    async def credit_a(self, user_id: str, tokens: int) -> Optional[UserSubscription]:
        return await asyncio.to_thread(self.credit, user_id, tokens)

    async def change_plan_a(self, user_id, plan, now, next_reset_at) -> Optional[UserSubscription]:
        return await asyncio.to_thread(self.change_plan, user_id, plan, now, next_reset_at)

    async def insert_usage_a(self, record: TokenUsageRecord) -> TokenUsageRecord:
        return await asyncio.to_thread(self.insert_usage, record)

    async def usage_history_a(self, user_id: str, limit: int) -> List[TokenUsageRecord]:
        return await asyncio.to_thread(self.usage_history, user_id, limit)

    async def usage_summary_a(self, user_id: str, since: Optional[datetime] = None) -> Dict[Feature, int]:
        return await asyncio.to_thread(self.usage_summary, user_id, since)

    async def due_for_renewal_a(self, now: datetime) -> List[str]:
        return await asyncio.to_thread(self.due_for_renewal, now)


_SUBSCRIPTION_COLUMNS = """
    user_id, plan, tokens_remaining, tokens_used, tokens_purchased,
    last_reset_at, next_reset_at, is_active
"""

_USAGE_COLUMNS = "id, user_id, feature, tokens_used, document_name, created_at"


def _row_to_subscription(row) -> UserSubscription:
    return UserSubscription(
        user_id=row[0],
        plan=SubscriptionPlan(row[1]),
        tokens_remaining=row[2],
        tokens_used=row[3],
        tokens_purchased=row[4],
        last_reset_at=datetime.fromisoformat(row[5]),
        next_reset_at=datetime.fromisoformat(row[6]),
        is_active=bool(row[7]),
    )


def _row_to_usage(row) -> TokenUsageRecord:
    return TokenUsageRecord(
        id=row[0],
        user_id=row[1],
        feature=Feature(row[2]),
        tokens_used=row[3],
        document_name=row[4],
        created_at=datetime.fromisoformat(row[5]),
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the subscription and usage tables if they don't exist.

    ``token_usage`` is an append-only ledger. No UPDATE or DELETE
    operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_subscription (
                user_id TEXT PRIMARY KEY,
                plan TEXT NOT NULL,
                tokens_remaining INTEGER NOT NULL CHECK (tokens_remaining >= 0),
                tokens_used INTEGER NOT NULL CHECK (tokens_used >= 0),
                tokens_purchased INTEGER NOT NULL DEFAULT 0,
                last_reset_at TEXT NOT NULL,
                next_reset_at TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS token_usage (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES user_subscription (user_id),
                feature TEXT NOT NULL,
                tokens_used INTEGER NOT NULL,
                document_name TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_token_usage_user_created
            ON token_usage (user_id, created_at)
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteSubscriptionStore(SubscriptionStore):
    """SQLite-backed store.

    Each call opens its own connection, so calls are safe to run from
    worker threads. Writes take the database write lock up front with
    ``BEGIN IMMEDIATE``, which makes each conditional write a single
    serialized check-and-update.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open database {self.db_path}: {e}") from e

    def _select(self, conn: sqlite3.Connection, user_id: str) -> Optional[UserSubscription]:
        row = conn.execute(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM user_subscription WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def _read(self, func, *args):
        conn = self._connect()
        try:
            return func(conn, *args)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Read failed: {e}") from e
        finally:
            conn.close()

    def _write(self, func, *args):
        """Run ``func`` inside one write transaction, rolling back on any error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            result = func(conn, *args)
            conn.commit()
            return result
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValueError(f"Constraint violated: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailable(f"Write failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_subscription(self, user_id: str) -> Optional[UserSubscription]:
        return self._read(self._select, user_id)

    def create_subscription(self, subscription: UserSubscription) -> UserSubscription:
        def _create(conn):
            conn.execute(
                f"""
                INSERT OR IGNORE INTO user_subscription ({_SUBSCRIPTION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.user_id,
                    subscription.plan.value,
                    subscription.tokens_remaining,
                    subscription.tokens_used,
                    subscription.tokens_purchased,
                    _ts(subscription.last_reset_at),
                    _ts(subscription.next_reset_at),
                    int(subscription.is_active),
                ),
            )
            return self._select(conn, subscription.user_id)

        return self._write(_create)

    def debit(self, user_id, cost, expected_reset_at, now, record) -> DebitResult:
        def _debit(conn):
            cursor = conn.execute(
                """
                UPDATE user_subscription
                SET tokens_remaining = tokens_remaining - ?,
                    tokens_used = tokens_used + ?
                WHERE user_id = ?
                  AND is_active = 1
                  AND tokens_remaining >= ?
                  AND last_reset_at = ?
                  AND next_reset_at > ?
                """,
                (cost, cost, user_id, cost, _ts(expected_reset_at), _ts(now)),
            )
            if cursor.rowcount == 0:
                current = self._select(conn, user_id)
                return DebitResult(classify_failed_debit(current, cost, expected_reset_at, now), current)

            conn.execute(
                f"INSERT INTO token_usage ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    record.feature.value,
                    record.tokens_used,
                    record.document_name,
                    _ts(record.created_at),
                ),
            )
            return DebitResult(DebitOutcome.APPLIED, self._select(conn, user_id))

        return self._write(_debit)

    def renew(self, user_id, expected_reset_at, now, next_reset_at) -> Optional[UserSubscription]:
        def _renew(conn):
            current = self._select(conn, user_id)
            if current is None:
                return None
            cursor = conn.execute(
                """
                UPDATE user_subscription
                SET tokens_remaining = ?,
                    tokens_used = 0,
                    tokens_purchased = 0,
                    last_reset_at = ?,
                    next_reset_at = ?
                WHERE user_id = ?
                  AND last_reset_at = ?
                  AND next_reset_at <= ?
                """,
                (
                    current.plan.total_tokens,
                    _ts(now),
                    _ts(next_reset_at),
                    user_id,
                    _ts(expected_reset_at),
                    _ts(now),
                ),
            )
            if cursor.rowcount == 0:
                return None
            return self._select(conn, user_id)

        return self._write(_renew)

    def credit(self, user_id: str, tokens: int) -> Optional[UserSubscription]:
        if tokens <= 0:
            raise ValueError("tokens must be > 0")

        def _credit(conn):
            cursor = conn.execute(
                """
                UPDATE user_subscription
                SET tokens_remaining = tokens_remaining + ?,
                    tokens_purchased = tokens_purchased + ?
                WHERE user_id = ?
                """,
                (tokens, tokens, user_id),
            )
            if cursor.rowcount == 0:
                return None
            return self._select(conn, user_id)

        return self._write(_credit)

    def change_plan(self, user_id, plan, now, next_reset_at) -> Optional[UserSubscription]:
        def _change(conn):
            cursor = conn.execute(
                """
                UPDATE user_subscription
                SET plan = ?,
                    tokens_remaining = ?,
                    tokens_used = 0,
                    tokens_purchased = 0,
                    last_reset_at = ?,
                    next_reset_at = ?,
                    is_active = 1
                WHERE user_id = ?
                """,
                (plan.value, plan.total_tokens, _ts(now), _ts(next_reset_at), user_id),
            )
            if cursor.rowcount == 0:
                return None
            return self._select(conn, user_id)

        return self._write(_change)

    def insert_usage(self, record: TokenUsageRecord) -> TokenUsageRecord:
        def _insert(conn):
            conn.execute(
                f"INSERT INTO token_usage ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    record.feature.value,
                    record.tokens_used,
                    record.document_name,
                    _ts(record.created_at),
                ),
            )
            return record

        return self._write(_insert)

    def usage_history(self, user_id: str, limit: int) -> List[TokenUsageRecord]:
        def _history(conn):
            cursor = conn.execute(
                f"""
                SELECT {_USAGE_COLUMNS} FROM token_usage
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            return [_row_to_usage(row) for row in cursor.fetchall()]

        return self._read(_history)

    def usage_summary(self, user_id: str, since: Optional[datetime] = None) -> Dict[Feature, int]:
        def _summary(conn):
            query = "SELECT feature, SUM(tokens_used) FROM token_usage WHERE user_id = ?"
            params = [user_id]
            if since is not None:
                query += " AND created_at >= ?"
                params.append(_ts(since))
            query += " GROUP BY feature"
            cursor = conn.execute(query, params)
            return {Feature(row[0]): int(row[1] or 0) for row in cursor.fetchall()}

        return self._read(_summary)

    def due_for_renewal(self, now: datetime) -> List[str]:
        def _due(conn):
            cursor = conn.execute(
                "SELECT user_id FROM user_subscription WHERE next_reset_at <= ? ORDER BY user_id",
                (_ts(now),),
            )
            return [row[0] for row in cursor.fetchall()]

        return self._read(_due)


def classify_failed_debit(
    current: Optional[UserSubscription],
    cost: int,
    expected_reset_at: datetime,
    now: datetime,
) -> DebitOutcome:
    """Explain why a conditional debit matched no row."""
    if current is None:
        return DebitOutcome.MISSING
    if not current.is_active:
        return DebitOutcome.INACTIVE
    if current.last_reset_at != expected_reset_at or current.is_due(now):
        return DebitOutcome.STALE
    return DebitOutcome.INSUFFICIENT
