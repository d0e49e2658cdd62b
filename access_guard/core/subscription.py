"""
Subscription and token balance management.

Owns each user's plan instance: creation, plan gating, cost checks, atomic
debits, periodic renewal, top-ups and plan changes.

State per user:
1. NO_SUBSCRIPTION - no row yet; the first authenticated access creates FREE
2. ACTIVE - balance available
3. EXHAUSTED - the last debit was refused for lack of tokens
4. FOR_RENEWAL - the period has ended; the next access or sweep renews it

The store's conditional writes are the source of truth. The manager only
keeps the last snapshot the store confirmed, for display.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol, Set

from access_guard.storage.memory import InMemorySubscriptionStore
from access_guard.storage.models import TokenUsageRecord, UserSubscription
from access_guard.storage.repository import DebitOutcome, DebitResult, SubscriptionStore

from .clock import Clock, utc_now
from .errors import ErrorCode, StoreUnavailable
from .ledger import DEFAULT_HISTORY_LIMIT, QuotaLedger
from .plans import (
    TOKEN_COSTS,
    Feature,
    SubscriptionPlan,
    TokenCostTable,
    TokenPackage,
    get_token_package,
    is_feature_enabled,
)

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_PERIOD = timedelta(days=30)
DEFAULT_LOW_BALANCE_THRESHOLD = 0.10


class SubscriptionState(Enum):
    NO_SUBSCRIPTION = "no_subscription"
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    FOR_RENEWAL = "for_renewal"


@dataclass(frozen=True)
class PurchaseResult:
    success: bool
    error: Optional[str] = None


class PaymentProvider(Protocol):
    """Opaque payment call; True means the charge went through."""

    async def charge(self, user_id: str, package: TokenPackage) -> bool:
        ...


class ApprovingPaymentProvider:
    """Payment provider that approves every charge."""

    async def charge(self, user_id: str, package: TokenPackage) -> bool:
        return True


class SubscriptionManager:
    """Single entry point for plan state and token accounting.

    Args:
        store: Backing store (SQLite or in-memory)
        costs: Feature cost table
        payments: Payment provider used by ``purchase_tokens``
        clock: Time source
        renewal_period: Length of one allotment period
        low_balance_threshold: Fraction of the plan allotment below which a
            balance counts as low
    """

    def __init__(
        self,
        store: SubscriptionStore,
        costs: TokenCostTable = TOKEN_COSTS,
        payments: Optional[PaymentProvider] = None,
        clock: Clock = utc_now,
        renewal_period: timedelta = DEFAULT_RENEWAL_PERIOD,
        low_balance_threshold: float = DEFAULT_LOW_BALANCE_THRESHOLD,
    ):
        if renewal_period <= timedelta(0):
            raise ValueError("renewal_period must be positive")
        if not 0 < low_balance_threshold < 1:
            raise ValueError("low_balance_threshold must be between 0 and 1")
        self.store = store
        self.costs = costs
        self.payments = payments or ApprovingPaymentProvider()
        self.renewal_period = renewal_period
        self.low_balance_threshold = low_balance_threshold
        self._clock = clock
        self.ledger = QuotaLedger(store, costs, clock)

        # Degraded mode: users whose subscription lives in the local fallback
        self._fallback_store: Optional[InMemorySubscriptionStore] = None
        self._fallback_ledger: Optional[QuotaLedger] = None
        self._fallback_users: Set[str] = set()
        self.last_error: Optional[ErrorCode] = None

        self._views: Dict[str, UserSubscription] = {}
        self._exhausted: Set[str] = set()

    # ---------- store selection ----------

    @property
    def degraded(self) -> bool:
        """True once any user has been moved to the local fallback store."""
        return bool(self._fallback_users)

    def is_degraded(self, user_id: str) -> bool:
        return user_id in self._fallback_users

    def _store_for(self, user_id: str) -> SubscriptionStore:
        if user_id in self._fallback_users:
            return self._fallback_store
        return self.store

    def ledger_for(self, user_id: str) -> QuotaLedger:
        if user_id in self._fallback_users:
            return self._fallback_ledger
        return self.ledger

    def _enter_degraded_mode(self, user_id: str, error: StoreUnavailable) -> SubscriptionStore:
        if self._fallback_store is None:
            self._fallback_store = InMemorySubscriptionStore()
            self._fallback_ledger = QuotaLedger(self._fallback_store, self.costs, self._clock)
        self._fallback_users.add(user_id)
        self.last_error = ErrorCode.STORE_UNAVAILABLE
        logger.warning(
            "Subscription store unavailable (%s); using a local FREE subscription for user %s",
            error, user_id,
        )
        return self._fallback_store

    def _remember(self, subscription: UserSubscription) -> UserSubscription:
        self._views[subscription.user_id] = subscription
        return subscription

    def cached(self, user_id: str) -> Optional[UserSubscription]:
        """Last snapshot confirmed by the store, if any."""
        return self._views.get(user_id)

    # ---------- lifecycle ----------

    def _new_free_subscription(self, user_id: str) -> UserSubscription:
        now = self._clock()
        return UserSubscription(
            user_id=user_id,
            plan=SubscriptionPlan.FREE,
            tokens_remaining=SubscriptionPlan.FREE.total_tokens,
            tokens_used=0,
            last_reset_at=now,
            next_reset_at=now + self.renewal_period,
            is_active=True,
        )

    def _store_ok(self, user_id: str) -> None:
        """Clear the error state after a successful primary store round-trip."""
        if user_id not in self._fallback_users:
            self.last_error = None

    async def _load_or_create(self, user_id: str) -> UserSubscription:
        """Load or create the row.

        The local fallback is only used for users this manager has never
        loaded. A known user's failure propagates, so no quota is granted
        outside the store.
        """
        store = self._store_for(user_id)
        try:
            subscription = await store.get_subscription_a(user_id)
            if subscription is None:
                subscription = await store.create_subscription_a(self._new_free_subscription(user_id))
                logger.info("Created %s subscription for user %s", subscription.plan.value, user_id)
        except StoreUnavailable as e:
            if store is not self.store or user_id in self._views:
                self.last_error = ErrorCode.STORE_UNAVAILABLE
                raise
            store = self._enter_degraded_mode(user_id, e)
            subscription = await store.create_subscription_a(self._new_free_subscription(user_id))
        self._store_ok(user_id)
        return subscription

    async def get_or_create(self, user_id: str) -> UserSubscription:
        """Fetch a user's subscription, creating FREE on first access.

        A subscription whose period has ended is renewed before returning.
        """
        if not user_id:
            raise ValueError("user_id is required")
        subscription = await self._load_or_create(user_id)
        if subscription.is_due(self._clock()):
            subscription = await self._renew(subscription)
        return self._remember(subscription)

    async def state(self, user_id: str) -> SubscriptionState:
        subscription = await self._store_for(user_id).get_subscription_a(user_id)
        if subscription is None:
            return SubscriptionState.NO_SUBSCRIPTION
        if subscription.is_due(self._clock()):
            return SubscriptionState.FOR_RENEWAL
        if user_id in self._exhausted:
            return SubscriptionState.EXHAUSTED
        return SubscriptionState.ACTIVE

    async def _try_renew(self, subscription: UserSubscription) -> Optional[UserSubscription]:
        """Conditional renewal of the observed period; None if it did not apply."""
        now = self._clock()
        renewed = await self._store_for(subscription.user_id).renew_a(
            subscription.user_id,
            subscription.last_reset_at,
            now,
            now + self.renewal_period,
        )
        if renewed is None:
            return None

        self._exhausted.discard(subscription.user_id)
        logger.info(
            "Renewed %s allotment for user %s (%d tokens)",
            renewed.plan.value, renewed.user_id, renewed.tokens_remaining,
        )
        return renewed

    async def _renew(self, subscription: UserSubscription) -> UserSubscription:
        renewed = await self._try_renew(subscription)
        if renewed is not None:
            return renewed
        # Someone else renewed (or changed plan) first
        current = await self._store_for(subscription.user_id).get_subscription_a(subscription.user_id)
        return current if current is not None else subscription

    async def renew_if_due(self, user_id: str) -> bool:
        """Run the renewal transition for one user if the period has ended.

        Returns:
            True if this call performed the renewal
        """
        subscription = await self._store_for(user_id).get_subscription_a(user_id)
        if subscription is None or not subscription.is_due(self._clock()):
            return False
        renewed = await self._try_renew(subscription)
        if renewed is None:
            return False
        self._remember(renewed)
        return True

    async def renew_due(self) -> int:
        """Scheduled sweep: renew every subscription whose period has ended.

        Returns:
            Number of subscriptions renewed by this sweep
        """
        user_ids = await self.store.due_for_renewal_a(self._clock())
        renewed = 0
        for user_id in user_ids:
            if await self.renew_if_due(user_id):
                renewed += 1
        return renewed

    # ---------- checks ----------

    @staticmethod
    def plan_allows(subscription: UserSubscription, feature: Feature) -> bool:
        return subscription.is_active and is_feature_enabled(subscription.plan, feature)

    def covers_cost(self, subscription: UserSubscription, feature: Feature) -> bool:
        return subscription.is_active and subscription.tokens_remaining >= self.costs.cost_of(feature)

    async def is_feature_available(self, user_id: str, feature: Feature) -> bool:
        """Plan gate, checked before and independently of the balance."""
        return self.plan_allows(await self.get_or_create(user_id), feature)

    async def has_enough_tokens(self, user_id: str, feature: Feature) -> bool:
        return self.covers_cost(await self.get_or_create(user_id), feature)

    # ---------- debits ----------

    async def debit(
        self,
        user_id: str,
        feature: Feature,
        document_name: Optional[str] = None,
    ) -> DebitResult:
        """Atomically charge ``feature`` to the user's balance.

        The store applies decrement-if-sufficient and the ledger append in
        one transaction keyed on the period version. If a renewal slipped
        in between the read and the write, the debit is retried once
        against the renewed period.

        Raises:
            StoreUnavailable: If the store fails; nothing was charged
        """
        cost = self.costs.cost_of(feature)
        result = DebitResult(DebitOutcome.MISSING)
        for _ in range(2):
            subscription = await self.get_or_create(user_id)
            store = self._store_for(user_id)
            record = self.ledger_for(user_id).new_record(user_id, feature, document_name)
            # A started debit always runs to completion or rolls back
            result = await asyncio.shield(store.debit_a(
                user_id, cost, subscription.last_reset_at, self._clock(), record,
            ))
            if result.outcome != DebitOutcome.STALE:
                break

        self._store_ok(user_id)
        if result.subscription is not None:
            self._remember(result.subscription)
        if result.applied:
            self._exhausted.discard(user_id)
            logger.debug("Debited %d tokens from user %s for %s", cost, user_id, feature.value)
        elif result.outcome == DebitOutcome.INSUFFICIENT:
            self._exhausted.add(user_id)
            logger.info("User %s has insufficient tokens for %s", user_id, feature.value)
        return result

    async def deduct_tokens(
        self,
        user_id: str,
        feature: Feature,
        document_name: Optional[str] = None,
    ) -> bool:
        """Charge a feature use; False means nothing was charged."""
        try:
            result = await self.debit(user_id, feature, document_name)
        except StoreUnavailable as e:
            self.last_error = ErrorCode.STORE_UNAVAILABLE
            logger.error("Debit for user %s failed and was rolled back: %s", user_id, e)
            return False
        return result.applied

    # ---------- balance reporting ----------

    async def get_usage_percentage(self, user_id: str) -> int:
        """Share of the plan allotment used, 0..100."""
        subscription = await self.get_or_create(user_id)
        percent = Decimal(100 * subscription.tokens_used) / Decimal(subscription.plan.total_tokens)
        return min(100, int(percent.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    async def is_low_on_tokens(self, user_id: str) -> bool:
        subscription = await self.get_or_create(user_id)
        return subscription.tokens_remaining / subscription.plan.total_tokens < self.low_balance_threshold

    async def get_usage_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[TokenUsageRecord]:
        return await self.ledger_for(user_id).history_for(user_id, limit)

    async def get_usage_summary(self, user_id: str) -> Dict[Feature, int]:
        """Tokens spent per feature in the current period."""
        subscription = await self.get_or_create(user_id)
        return await self.ledger_for(user_id).summary_by_feature(user_id, since=subscription.last_reset_at)

    # ---------- purchases and plan changes ----------

    async def purchase_tokens(self, user_id: str, package_id: str) -> PurchaseResult:
        """Top up the current period with a token package.

        Does not touch ``tokens_used`` or the renewal schedule.
        """
        package = get_token_package(package_id)
        if package is None:
            return PurchaseResult(success=False, error="Invalid token package")

        try:
            await self.get_or_create(user_id)
        except StoreUnavailable as e:
            logger.error("Token purchase for user %s failed before payment: %s", user_id, e)
            return PurchaseResult(success=False, error="Failed to update token balance")

        if not await self.payments.charge(user_id, package):
            return PurchaseResult(success=False, error="Payment was not completed")

        try:
            credited = await self._store_for(user_id).credit_a(user_id, package.tokens)
            failure = "no subscription row"
        except StoreUnavailable as e:
            self.last_error = ErrorCode.STORE_UNAVAILABLE
            credited, failure = None, str(e)

        if credited is None:
            # Paid but not credited: needs manual reconciliation
            logger.error(
                "User %s was charged for package %s but %d tokens were not credited: %s",
                user_id, package.id, package.tokens, failure,
            )
            return PurchaseResult(success=False, error="Failed to update token balance")

        self._store_ok(user_id)
        self._remember(credited)
        self._exhausted.discard(user_id)
        logger.info("User %s purchased %d tokens (%s)", user_id, package.tokens, package.id)
        return PurchaseResult(success=True)

    async def change_plan(self, user_id: str, plan: SubscriptionPlan) -> UserSubscription:
        """Move a user to ``plan`` with a fresh allotment and schedule.

        Raises:
            StoreUnavailable: If the store fails
        """
        previous = await self.get_or_create(user_id)
        now = self._clock()
        changed = await self._store_for(user_id).change_plan_a(user_id, plan, now, now + self.renewal_period)
        if changed is None:
            raise ValueError(f"No subscription for user {user_id}")
        self._store_ok(user_id)
        self._exhausted.discard(user_id)
        logger.info("User %s changed plan from %s to %s", user_id, previous.plan.value, plan.value)
        return self._remember(changed)
