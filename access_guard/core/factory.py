"""
Service construction.

Builds one explicitly owned instance of every service from configuration.
Callers create the bundle at process start and pass it where needed.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from access_guard.config.loader import AccessConfig, StoreKind
from access_guard.storage.memory import InMemorySubscriptionStore
from access_guard.storage.repository import SqliteSubscriptionStore, SubscriptionStore, initialize_schema
from access_guard.sdk.auth_client import GuardedAuthClient

from .access import AccessGuard
from .clock import Clock, utc_now
from .rate_limiter import RateLimiter
from .session import IdentityProvider, SessionValidator
from .subscription import PaymentProvider, SubscriptionManager

logger = logging.getLogger(__name__)


@dataclass
class AccessServices:
    rate_limiter: RateLimiter
    sessions: SessionValidator
    subscriptions: SubscriptionManager
    guard: AccessGuard
    auth: GuardedAuthClient


def build_store(config: AccessConfig) -> SubscriptionStore:
    """Create the configured store, preparing the schema for SQLite."""
    if config.subscription.store == StoreKind.MEMORY:
        return InMemorySubscriptionStore()
    try:
        initialize_schema(config.subscription.db_path)
    except sqlite3.Error as e:
        # Requests fall back to degraded mode until the database is reachable
        logger.warning("Could not prepare database %s: %s", config.subscription.db_path, e)
    return SqliteSubscriptionStore(config.subscription.db_path)


def build_services(
    config: AccessConfig,
    provider: IdentityProvider,
    payments: Optional[PaymentProvider] = None,
    store: Optional[SubscriptionStore] = None,
    clock: Clock = utc_now,
) -> AccessServices:
    """Wire the services together from configuration.

    Args:
        config: Loaded configuration
        provider: Identity provider used for sign-in and refresh
        payments: Payment provider for token purchases
        store: Store to use instead of the configured one
        clock: Time source shared by every service
    """
    rate_limiter = RateLimiter(
        window=config.rate_limit.window,
        max_attempts=config.rate_limit.max_attempts,
        clock=clock,
    )
    sessions = SessionValidator(
        provider,
        clock=clock,
        refresh_skew=timedelta(seconds=config.session.refresh_skew_seconds),
        revalidate_interval=timedelta(seconds=config.session.revalidate_interval_seconds),
    )
    subscriptions = SubscriptionManager(
        store if store is not None else build_store(config),
        costs=config.token_costs,
        payments=payments,
        clock=clock,
        renewal_period=timedelta(days=config.subscription.renewal_days),
        low_balance_threshold=config.subscription.low_balance_threshold,
    )
    return AccessServices(
        rate_limiter=rate_limiter,
        sessions=sessions,
        subscriptions=subscriptions,
        guard=AccessGuard(sessions, subscriptions),
        auth=GuardedAuthClient(provider, rate_limiter, sessions),
    )
