"""
Data models for storage layer.

Defines the two persisted shapes: a user's subscription row and the
append-only token usage ledger.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from access_guard.core.plans import Feature, SubscriptionPlan


@dataclass(frozen=True)
class UserSubscription:
    """One user's active plan instance.

    Instances are snapshots of the stored row. Every change goes through
    the store, which hands back a fresh snapshot.
    """
    user_id: str
    plan: SubscriptionPlan
    tokens_remaining: int
    tokens_used: int
    last_reset_at: datetime
    next_reset_at: datetime
    is_active: bool = True
    tokens_purchased: int = 0

    def __post_init__(self):
        """Validate counters are non-negative."""
        if self.tokens_remaining < 0:
            raise ValueError("tokens_remaining cannot be negative")
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")
        if self.tokens_purchased < 0:
            raise ValueError("tokens_purchased cannot be negative")

    @property
    def allotment(self) -> int:
        """Tokens granted for the current period (plan plus top-ups)."""
        return self.plan.total_tokens + self.tokens_purchased

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_reset_at

    def with_changes(self, **changes) -> "UserSubscription":
        return replace(self, **changes)


@dataclass(frozen=True)
class TokenUsageRecord:
    """Immutable record of a successful debit.

    Append-only rows that form an auditable ledger of token spend.
    Once written, these records must never be modified.
    """
    id: str
    user_id: str
    feature: Feature
    tokens_used: int
    created_at: datetime
    document_name: Optional[str] = None
