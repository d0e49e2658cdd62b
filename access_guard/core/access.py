"""
Feature access authorization.

Answers "may this user invoke feature X right now" and charges the feature
in the same step.

Check order:
1. Session - an expired session that cannot be refreshed ends the request
2. Plan gate - features outside the user's plan are refused
3. Token balance - the feature cost must be covered
4. Debit - the atomic store write that makes the decision final
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Optional

from access_guard.storage.models import UserSubscription
from access_guard.storage.repository import DebitOutcome

from .errors import ErrorCode, StoreUnavailable
from .plans import Feature
from .session import SessionValidator
from .subscription import SubscriptionManager

logger = logging.getLogger(__name__)

DENIAL_MESSAGES = {
    ErrorCode.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorCode.PLAN_RESTRICTED: "This feature is not included in your plan. Upgrade to use it.",
    ErrorCode.INSUFFICIENT_TOKENS: "You don't have enough tokens for this feature. Buy tokens or upgrade your plan.",
    ErrorCode.STORE_UNAVAILABLE: "We couldn't record this request. Please try again shortly.",
}


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of an authorization request."""
    allowed: bool
    reason: Optional[ErrorCode] = None
    subscription: Optional[UserSubscription] = None

    @property
    def message(self) -> str:
        if self.allowed:
            return ""
        return DENIAL_MESSAGES.get(self.reason, "Access denied.")

    @classmethod
    def allow(cls, subscription: UserSubscription) -> "AuthDecision":
        return cls(allowed=True, subscription=subscription)

    @classmethod
    def deny(cls, reason: ErrorCode, subscription: Optional[UserSubscription] = None) -> "AuthDecision":
        return cls(allowed=False, reason=reason, subscription=subscription)


class AccessGuard:
    """Combines session validation and subscription checks.

    Requests for the same user are handled one at a time within this
    process; across processes the store's conditional debit decides.
    """

    def __init__(self, sessions: SessionValidator, subscriptions: SubscriptionManager):
        self.sessions = sessions
        self.subscriptions = subscriptions
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def authorize(
        self,
        user_id: str,
        feature: Feature,
        document_name: Optional[str] = None,
    ) -> AuthDecision:
        """Authorize and charge one use of ``feature``.

        An allowed decision means the tokens are already debited. Any
        denial means nothing was charged.
        """
        lock = self._lock_for(user_id)
        async with lock:
            return await self._authorize(user_id, feature, document_name)

    async def _authorize(self, user_id: str, feature: Feature, document_name: Optional[str]) -> AuthDecision:
        session = await self.sessions.get_valid_session(user_id)
        if session is None:
            logger.info("Denied %s for user %s: session expired", feature.value, user_id)
            return AuthDecision.deny(ErrorCode.SESSION_EXPIRED)

        subscriptions = self.subscriptions
        try:
            subscription = await subscriptions.get_or_create(user_id)
            if not subscriptions.plan_allows(subscription, feature):
                logger.info(
                    "Denied %s for user %s: not available on %s plan",
                    feature.value, user_id, subscription.plan.value,
                )
                return AuthDecision.deny(ErrorCode.PLAN_RESTRICTED, subscription)

            if not subscriptions.covers_cost(subscription, feature):
                logger.info("Denied %s for user %s: insufficient tokens", feature.value, user_id)
                return AuthDecision.deny(ErrorCode.INSUFFICIENT_TOKENS, subscription)

            result = await subscriptions.debit(user_id, feature, document_name)
        except StoreUnavailable as e:
            subscriptions.last_error = ErrorCode.STORE_UNAVAILABLE
            logger.error("Denied %s for user %s: store unavailable (%s)", feature.value, user_id, e)
            return AuthDecision.deny(ErrorCode.STORE_UNAVAILABLE)

        if result.applied:
            return AuthDecision.allow(result.subscription)
        if result.outcome == DebitOutcome.INACTIVE:
            return AuthDecision.deny(ErrorCode.PLAN_RESTRICTED, result.subscription)
        if result.outcome == DebitOutcome.INSUFFICIENT:
            return AuthDecision.deny(ErrorCode.INSUFFICIENT_TOKENS, result.subscription)
        # Period kept changing under us, or the row vanished
        logger.error(
            "Denied %s for user %s: debit could not be applied (%s)",
            feature.value, user_id, result.outcome.name,
        )
        return AuthDecision.deny(ErrorCode.STORE_UNAVAILABLE, result.subscription)
