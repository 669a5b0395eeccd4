"""Duplicate receipt detection.

A receipt duplicates another when a *different* receipt of the same owner,
created inside the look-back window, has the same merchant, amount and date.
Callers decide what a match means: AI-processed receipts are only flagged,
manual entries are rejected.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from receipt_pipeline.records.models import Receipt, utcnow
from receipt_pipeline.records.store import RecordStore

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Looks up matching receipts in the record store."""

    def __init__(self, store: RecordStore, window_days: int = 90) -> None:
        self.store = store
        self.window_days = window_days

    async def find_duplicate(
        self,
        owner_id: int,
        merchant_name: str,
        amount: Decimal,
        receipt_date: date,
        exclude_id: int | None = None,
        now: datetime | None = None,
    ) -> Receipt | None:
        """Return the first matching receipt, or None."""
        since = (now or utcnow()) - timedelta(days=self.window_days)
        match = await self.store.find_matching_receipt(
            owner_id=owner_id,
            merchant_name=merchant_name,
            amount=amount,
            receipt_date=receipt_date,
            created_after=since,
            exclude_id=exclude_id,
        )
        if match is not None:
            logger.info(
                f"Receipt for owner {owner_id} ({merchant_name} {amount} {receipt_date}) "
                f"matches receipt {match.id}"
            )
        return match

    async def is_duplicate(
        self,
        owner_id: int,
        merchant_name: str,
        amount: Decimal,
        receipt_date: date,
        exclude_id: int | None = None,
    ) -> bool:
        """Advisory check: lookup failures are logged and reported as not duplicate."""
        try:
            match = await self.find_duplicate(
                owner_id, merchant_name, amount, receipt_date, exclude_id=exclude_id
            )
        except Exception as e:
            logger.warning(f"Duplicate lookup failed for owner {owner_id}: {e}")
            return False
        return match is not None
