"""
Token usage ledger.

Append-only record of token debits per user and feature.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from access_guard.storage.models import TokenUsageRecord
from access_guard.storage.repository import SubscriptionStore

from .clock import Clock, utc_now
from .plans import TOKEN_COSTS, Feature, TokenCostTable

DEFAULT_HISTORY_LIMIT = 50


class QuotaLedger:
    """Reads and appends ledger rows through a store.

    Rows are never modified. When a row belongs to a debit it is written in
    the same store transaction as the balance change (see
    ``SubscriptionStore.debit``); ``append`` is for standalone entries.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        costs: TokenCostTable = TOKEN_COSTS,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.costs = costs
        self._clock = clock

    def new_record(
        self,
        user_id: str,
        feature: Feature,
        document_name: Optional[str] = None,
    ) -> TokenUsageRecord:
        """Build, but do not persist, a record for one use of ``feature``."""
        return TokenUsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            feature=feature,
            tokens_used=self.costs.cost_of(feature),
            document_name=document_name,
            created_at=self._clock(),
        )

    async def append(
        self,
        user_id: str,
        feature: Feature,
        document_name: Optional[str] = None,
    ) -> TokenUsageRecord:
        """Persist a record on its own and return it.

        Audit entries only: the balance is not touched, so a row written
        here is not part of ``tokens_used``. Charges go through
        ``SubscriptionManager.debit``, which writes the row and the balance
        change together.

        Raises:
            StoreUnavailable: If the write fails; nothing is recorded
        """
        record = self.new_record(user_id, feature, document_name)
        return await self.store.insert_usage_a(record)

    async def history_for(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[TokenUsageRecord]:
        """Most recent records first.

        Args:
            user_id: Owner of the records
            limit: Maximum number of records to return

        Returns:
            A finite list; call again for a fresh view
        """
        if limit <= 0:
            raise ValueError("limit must be > 0")
        return await self.store.usage_history_a(user_id, limit)

    async def summary_by_feature(self, user_id: str, since: Optional[datetime] = None) -> Dict[Feature, int]:
        """Tokens spent per feature, counted from ``since`` when given."""
        return await self.store.usage_summary_a(user_id, since)
