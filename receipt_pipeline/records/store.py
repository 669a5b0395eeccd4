"""Record store interface and the in-memory implementation.

The store is the only durable shared resource in the pipeline. Writes are
scoped to one row, so implementations need exactly two atomic operations:
``find_or_create_receipt`` (one row per owner and upload, even under queue
redelivery) and ``update_batch`` (read-modify-write of a session's files).
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal

from receipt_pipeline.records.models import (
    REUSABLE_RECEIPT_STATUSES,
    BatchSession,
    Receipt,
)
from receipt_pipeline.shared.errors import NotFoundError

BatchMutation = Callable[[BatchSession], None]


class RecordStore(ABC):
    """CRUD over receipts and batch sessions."""

    @abstractmethod
    async def create_receipt(self, owner_id: int, file_url: str, file_name: str, **fields) -> Receipt:
        """Insert a new receipt row with a fresh id."""

    @abstractmethod
    async def get_receipt(self, receipt_id: int) -> Receipt | None:
        """Load a receipt by id."""

    @abstractmethod
    async def save_receipt(self, receipt: Receipt) -> Receipt:
        """Overwrite an existing receipt row (``updated_at`` is refreshed)."""

    @abstractmethod
    async def find_or_create_receipt(
        self, owner_id: int, file_url: str, file_name: str
    ) -> tuple[Receipt, bool]:
        """Return the reusable row for (owner, url) or create a pending one.

        Must be a single conditional operation: concurrent callers for the
        same upload all receive the same row.

        Returns:
            Tuple of (receipt, created)
        """

    @abstractmethod
    async def list_receipts(
        self, owner_id: int, created_after: datetime | None = None
    ) -> list[Receipt]:
        """List an owner's receipts, optionally only those created after a moment."""

    @abstractmethod
    async def create_batch(self, session: BatchSession) -> BatchSession:
        """Insert a new batch session."""

    @abstractmethod
    async def get_batch(self, session_id: str) -> BatchSession | None:
        """Load a batch session by its opaque id."""

    @abstractmethod
    async def update_batch(self, session_id: str, mutate: BatchMutation) -> BatchSession:
        """Atomically apply ``mutate`` to a stored session and persist it.

        Raises:
            NotFoundError: If the session does not exist
        """

    @abstractmethod
    async def list_batches(self, owner_id: int) -> list[BatchSession]:
        """List an owner's batch sessions."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backing store answers."""

    async def find_reusable_receipt(self, owner_id: int, file_url: str) -> Receipt | None:
        """Return the owner's pending/processing/completed receipt for ``file_url``."""
        for receipt in await self.list_receipts(owner_id):
            if receipt.file_url == file_url and receipt.status in REUSABLE_RECEIPT_STATUSES:
                return receipt
        return None

    async def find_matching_receipt(
        self,
        owner_id: int,
        merchant_name: str,
        amount: Decimal,
        receipt_date: date,
        created_after: datetime,
        exclude_id: int | None = None,
    ) -> Receipt | None:
        """Return a different receipt with identical merchant, amount and date."""
        for receipt in await self.list_receipts(owner_id, created_after=created_after):
            if receipt.id == exclude_id:
                continue
            if (
                receipt.merchant_name == merchant_name
                and receipt.amount == amount
                and receipt.receipt_date == receipt_date
            ):
                return receipt
        return None


class InMemoryRecordStore(RecordStore):
    """Process-local store for development and tests.

    A single ``asyncio.Lock`` serializes the conditional operations.
    """

    def __init__(self) -> None:
        self._receipts: dict[int, Receipt] = {}
        self._batches: dict[str, BatchSession] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create_receipt(self, owner_id: int, file_url: str, file_name: str, **fields) -> Receipt:
        async with self._lock:
            return self._insert(owner_id, file_url, file_name, **fields)

    def _insert(self, owner_id: int, file_url: str, file_name: str, **fields) -> Receipt:
        receipt = Receipt(
            id=next(self._ids),
            owner_id=owner_id,
            file_url=file_url,
            file_name=file_name,
            **fields,
        )
        self._receipts[receipt.id] = receipt.model_copy(deep=True)
        return receipt

    async def get_receipt(self, receipt_id: int) -> Receipt | None:
        receipt = self._receipts.get(receipt_id)
        return receipt.model_copy(deep=True) if receipt else None

    async def save_receipt(self, receipt: Receipt) -> Receipt:
        if receipt.id not in self._receipts:
            raise NotFoundError(f"Receipt {receipt.id} not found")
        receipt.touch()
        self._receipts[receipt.id] = receipt.model_copy(deep=True)
        return receipt

    async def find_or_create_receipt(
        self, owner_id: int, file_url: str, file_name: str
    ) -> tuple[Receipt, bool]:
        async with self._lock:
            for receipt in self._receipts.values():
                if (
                    receipt.owner_id == owner_id
                    and receipt.file_url == file_url
                    and receipt.status in REUSABLE_RECEIPT_STATUSES
                ):
                    return receipt.model_copy(deep=True), False
            return self._insert(owner_id, file_url, file_name), True

    async def list_receipts(
        self, owner_id: int, created_after: datetime | None = None
    ) -> list[Receipt]:
        return [
            receipt.model_copy(deep=True)
            for receipt in sorted(self._receipts.values(), key=lambda r: r.created_at)
            if receipt.owner_id == owner_id
            and (created_after is None or receipt.created_at > created_after)
        ]

    async def create_batch(self, session: BatchSession) -> BatchSession:
        async with self._lock:
            self._batches[session.session_id] = session.model_copy(deep=True)
        return session

    async def get_batch(self, session_id: str) -> BatchSession | None:
        session = self._batches.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def update_batch(self, session_id: str, mutate: BatchMutation) -> BatchSession:
        async with self._lock:
            stored = self._batches.get(session_id)
            if stored is None:
                raise NotFoundError(f"Batch session {session_id} not found")
            session = stored.model_copy(deep=True)
            mutate(session)
            session.touch()
            self._batches[session_id] = session.model_copy(deep=True)
            return session

    async def list_batches(self, owner_id: int) -> list[BatchSession]:
        return [
            session.model_copy(deep=True)
            for session in sorted(self._batches.values(), key=lambda s: s.created_at)
            if session.owner_id == owner_id
        ]

    async def ping(self) -> bool:
        return True
