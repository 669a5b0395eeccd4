"""Persisted records: receipts and batch sessions."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from receipt_pipeline.extraction.schema import Category, ExtractionResult

ReceiptStatus = Literal["pending", "processing", "completed", "failed"]
BatchStatus = Literal["pending", "processing", "completed", "failed"]
BatchFileStatus = Literal["uploading", "uploaded", "processing", "completed", "failed"]

# Rows in these states are reused instead of creating a second row for the same upload
REUSABLE_RECEIPT_STATUSES: frozenset[str] = frozenset({"pending", "processing", "completed"})
TERMINAL_FILE_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

PLACEHOLDER_MERCHANT = "Processing..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Receipt(BaseModel):
    """A receipt row.

    Created ``pending`` on upload (``completed`` for manual entry), moved to
    ``processing`` when queued and to ``completed`` or ``failed`` by the worker.
    """

    id: int
    owner_id: int
    team_id: int | None = None

    file_url: str
    file_name: str = ""

    merchant_name: str = PLACEHOLDER_MERCHANT
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    receipt_date: date = Field(default_factory=date.today)
    category: Category = "Other"
    note: str | None = None

    confidence_score: float | None = Field(None, ge=0, le=1)
    needs_review: bool = False
    is_duplicate: bool = False
    status: ReceiptStatus = "pending"

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


class BatchFile(BaseModel):
    """One document inside a batch session."""

    id: str
    url: str
    name: str
    status: BatchFileStatus = "uploaded"
    extracted_data: ExtractionResult | None = None
    confidence_score: float | None = None
    needs_review: bool | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FILE_STATUSES


class BatchSession(BaseModel):
    """Up to ``batch_max_files`` documents processed and exported together.

    ``files`` keeps upload order for display; workers may finish them in any order.
    """

    session_id: str
    owner_id: int
    status: BatchStatus = "pending"
    files: list[BatchFile] = Field(default_factory=list)
    payment_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def refresh_status(self) -> BatchStatus:
        """Recompute ``status`` from the files and return it."""
        self.status = derive_batch_status(self.files, self.status)
        return self.status


def derive_batch_status(files: list[BatchFile], current: BatchStatus) -> BatchStatus:
    """Aggregate per-file states into a session status.

    A session is ``completed`` exactly when every file is terminal, whatever
    mix of successes and failures that is. ``failed`` is reserved for a
    session whose enqueue step failed, and is sticky.
    """
    if current == "failed":
        return "failed"
    if files and all(f.is_terminal for f in files):
        return "completed"
    if current == "pending" and all(f.status in ("uploading", "uploaded") for f in files):
        return "pending"
    return "processing"
