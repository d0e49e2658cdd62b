"""
Unit tests for the token usage ledger.
"""

from datetime import timedelta

import pytest

from access_guard.core.ledger import QuotaLedger
from access_guard.core.plans import TOKEN_COSTS, Feature, SubscriptionPlan
from access_guard.storage.memory import InMemorySubscriptionStore
from access_guard.storage.models import UserSubscription
from access_guard.storage.repository import SqliteSubscriptionStore


@pytest.fixture
def store(db_path, clock):
    store = SqliteSubscriptionStore(db_path)
    store.create_subscription(UserSubscription(
        user_id="user-1",
        plan=SubscriptionPlan.FREE,
        tokens_remaining=50,
        tokens_used=0,
        last_reset_at=clock.now,
        next_reset_at=clock.now + timedelta(days=30),
    ))
    return store


class TestQuotaLedger:

    def test_new_record_uses_cost_table(self, store, clock):
        ledger = QuotaLedger(store, TOKEN_COSTS.with_overrides({Feature.DEEP_SEARCH: 12}), clock)
        record = ledger.new_record("user-1", Feature.DEEP_SEARCH, "brief.docx")

        assert record.tokens_used == 12
        assert record.created_at == clock.now
        assert record.document_name == "brief.docx"

    def test_record_ids_are_unique(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)
        ids = {ledger.new_record("user-1", Feature.DEEP_SEARCH).id for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_append_and_history(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)
        await ledger.append("user-1", Feature.CLAUSE_EXPLANATION)
        clock.advance(minutes=1)
        await ledger.append("user-1", Feature.DOCUMENT_ANALYSIS, "lease.pdf")

        history = await ledger.history_for("user-1")

        assert [record.feature for record in history] == [Feature.DOCUMENT_ANALYSIS, Feature.CLAUSE_EXPLANATION]
        assert history[0].document_name == "lease.pdf"

    @pytest.mark.asyncio
    async def test_history_rejects_non_positive_limit(self, store, clock):
        with pytest.raises(ValueError):
            await QuotaLedger(store, clock=clock).history_for("user-1", 0)

    @pytest.mark.asyncio
    async def test_summary_by_feature(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)
        await ledger.append("user-1", Feature.CLAUSE_EXPLANATION)
        await ledger.append("user-1", Feature.CLAUSE_EXPLANATION)
        since = clock.advance(days=1)
        await ledger.append("user-1", Feature.DEEP_SEARCH)

        assert await ledger.summary_by_feature("user-1") == {
            Feature.CLAUSE_EXPLANATION: 10,
            Feature.DEEP_SEARCH: 10,
        }
        assert await ledger.summary_by_feature("user-1", since=since) == {Feature.DEEP_SEARCH: 10}

    @pytest.mark.asyncio
    async def test_in_memory_store(self, clock):
        store = InMemorySubscriptionStore()
        store.create_subscription(UserSubscription(
            user_id="user-1",
            plan=SubscriptionPlan.FREE,
            tokens_remaining=50,
            tokens_used=0,
            last_reset_at=clock.now,
            next_reset_at=clock.now + timedelta(days=30),
        ))
        ledger = QuotaLedger(store, clock=clock)
        await ledger.append("user-1", Feature.DEEP_SEARCH)
        assert len(await ledger.history_for("user-1")) == 1

    @pytest.mark.asyncio
    async def test_append_does_not_touch_balance(self, store, clock):
        await QuotaLedger(store, clock=clock).append("user-1", Feature.DEEP_SEARCH)

        subscription = store.get_subscription("user-1")
        assert subscription.tokens_remaining == 50
        assert subscription.tokens_used == 0
