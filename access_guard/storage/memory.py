"""
In-memory store.

Same contract as the SQLite store, held in process memory. Used when the
configuration asks for it and as the degraded-mode fallback when the
database cannot be reached.
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from access_guard.core.plans import Feature, SubscriptionPlan

from .models import TokenUsageRecord, UserSubscription
from .repository import DebitOutcome, DebitResult, SubscriptionStore, classify_failed_debit


class InMemorySubscriptionStore(SubscriptionStore):
    """Dictionary-backed store guarded by one lock."""

    def __init__(self):
        self._subscriptions: Dict[str, UserSubscription] = {}
        self._usage: List[TokenUsageRecord] = []
        self._lock = threading.Lock()

    def get_subscription(self, user_id: str) -> Optional[UserSubscription]:
        with self._lock:
            return self._subscriptions.get(user_id)

    def create_subscription(self, subscription: UserSubscription) -> UserSubscription:
        with self._lock:
            return self._subscriptions.setdefault(subscription.user_id, subscription)

    def debit(self, user_id, cost, expected_reset_at, now, record) -> DebitResult:
        with self._lock:
            current = self._subscriptions.get(user_id)
            if (
                current is None
                or not current.is_active
                or current.tokens_remaining < cost
                or current.last_reset_at != expected_reset_at
                or current.is_due(now)
            ):
                return DebitResult(classify_failed_debit(current, cost, expected_reset_at, now), current)

            updated = current.with_changes(
                tokens_remaining=current.tokens_remaining - cost,
                tokens_used=current.tokens_used + cost,
            )
            self._usage.append(record)
            self._subscriptions[user_id] = updated
            return DebitResult(DebitOutcome.APPLIED, updated)

    def renew(self, user_id, expected_reset_at, now, next_reset_at) -> Optional[UserSubscription]:
        with self._lock:
            current = self._subscriptions.get(user_id)
            if current is None or current.last_reset_at != expected_reset_at or not current.is_due(now):
                return None
            updated = current.with_changes(
                tokens_remaining=current.plan.total_tokens,
                tokens_used=0,
                tokens_purchased=0,
                last_reset_at=now,
                next_reset_at=next_reset_at,
            )
            self._subscriptions[user_id] = updated
            return updated

    def credit(self, user_id: str, tokens: int) -> Optional[UserSubscription]:
        if tokens <= 0:
            raise ValueError("tokens must be > 0")
        with self._lock:
            current = self._subscriptions.get(user_id)
            if current is None:
                return None
            updated = current.with_changes(
                tokens_remaining=current.tokens_remaining + tokens,
                tokens_purchased=current.tokens_purchased + tokens,
            )
            self._subscriptions[user_id] = updated
            return updated

    def change_plan(self, user_id: str, plan: SubscriptionPlan, now: datetime,
                    next_reset_at: datetime) -> Optional[UserSubscription]:
        with self._lock:
            current = self._subscriptions.get(user_id)
            if current is None:
                return None
            updated = current.with_changes(
                plan=plan,
                tokens_remaining=plan.total_tokens,
                tokens_used=0,
                tokens_purchased=0,
                last_reset_at=now,
                next_reset_at=next_reset_at,
                is_active=True,
            )
            self._subscriptions[user_id] = updated
            return updated

    def insert_usage(self, record: TokenUsageRecord) -> TokenUsageRecord:
        with self._lock:
            if record.user_id not in self._subscriptions:
                raise ValueError(f"Constraint violated: no subscription for {record.user_id}")
            self._usage.append(record)
            return record

    def usage_history(self, user_id: str, limit: int) -> List[TokenUsageRecord]:
        with self._lock:
            rows = [record for record in self._usage if record.user_id == user_id]
        # Stable sort keeps insertion order reversed for equal timestamps
        rows.reverse()
        rows.sort(key=lambda record: record.created_at, reverse=True)
        return rows[:limit]

    def usage_summary(self, user_id: str, since: Optional[datetime] = None) -> Dict[Feature, int]:
        totals: Dict[Feature, int] = defaultdict(int)
        with self._lock:
            for record in self._usage:
                if record.user_id != user_id:
                    continue
                if since is not None and record.created_at < since:
                    continue
                totals[record.feature] += record.tokens_used
        return dict(totals)

    def due_for_renewal(self, now: datetime) -> List[str]:
        with self._lock:
            return sorted(
                user_id for user_id, subscription in self._subscriptions.items()
                if subscription.is_due(now)
            )
