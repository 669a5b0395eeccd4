"""Single-receipt job orchestration.

Per receipt: ``pending -> processing -> completed | failed``. The request side
validates, resolves the receipt row and enqueues a signed job; the worker side
extracts, checks for duplicates, scores and writes the terminal status.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from receipt_pipeline.api import metrics
from receipt_pipeline.extraction.engine import ExtractionEngine
from receipt_pipeline.extraction.schema import Category, ExtractionResult
from receipt_pipeline.normalization.currency import normalize_currency_code
from receipt_pipeline.orchestrator.scoring import confidence_score, needs_review
from receipt_pipeline.orchestrator.validation import (
    default_file_name,
    validate_document_url,
    validate_owner,
)
from receipt_pipeline.queue.payloads import ReceiptJob
from receipt_pipeline.queue.publisher import PROCESS_RECEIPT, JobQueue
from receipt_pipeline.records.duplicates import DuplicateDetector
from receipt_pipeline.records.models import Receipt, ReceiptStatus
from receipt_pipeline.records.store import RecordStore
from receipt_pipeline.shared.config import Settings
from receipt_pipeline.shared.errors import (
    DuplicateReceiptError,
    NotFoundError,
    QueueUnavailableError,
)

logger = logging.getLogger(__name__)


class SubmissionResponse(BaseModel):
    receipt_id: int
    status: ReceiptStatus


class ReceiptData(BaseModel):
    """Extracted fields returned once a receipt is completed."""

    merchant_name: str
    amount: Decimal
    currency: str
    receipt_date: date
    category: Category
    confidence_score: float | None = None
    needs_review: bool
    is_duplicate: bool
    notes: str | None = None

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "ReceiptData":
        return cls(
            merchant_name=receipt.merchant_name,
            amount=receipt.amount,
            currency=receipt.currency,
            receipt_date=receipt.receipt_date,
            category=receipt.category,
            confidence_score=receipt.confidence_score,
            needs_review=receipt.needs_review,
            is_duplicate=receipt.is_duplicate,
            notes=receipt.note,
        )


class ReceiptStatusView(BaseModel):
    """``{status, data?}``; ``data`` is present only when completed."""

    status: ReceiptStatus
    data: ReceiptData | None = None


class ManualReceiptInput(BaseModel):
    """Fields typed in by the owner when extraction is skipped or abandoned."""

    file_url: str = ""
    file_name: str = ""
    merchant_name: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0, decimal_places=2)
    currency: str = "USD"
    receipt_date: date
    category: Category = "Other"
    note: str | None = None

    @field_validator("merchant_name")
    @classmethod
    def _strip_merchant(cls, value: str) -> str:
        value = " ".join(value.split())
        if not value:
            raise ValueError("merchant_name must not be blank")
        return value


class ReceiptOrchestrator:
    """Coordinates submission, worker execution and status queries for receipts."""

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        queue: JobQueue | None = None,
        engine: ExtractionEngine | None = None,
        detector: DuplicateDetector | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            settings: Application settings (review threshold, duplicate window)
            store: Record store
            queue: Job queue, required for submission
            engine: Extraction engine, required for running jobs
            detector: Duplicate detector (built from the store when omitted)
        """
        self.settings = settings
        self.store = store
        self.queue = queue
        self.engine = engine
        self.detector = detector or DuplicateDetector(store, settings.duplicate_window_days)

    # Request side

    async def submit_receipt(
        self,
        owner_id: int,
        file_url: str,
        file_name: str | None = None,
        receipt_id: int | None = None,
    ) -> SubmissionResponse:
        """Validate and enqueue an extraction.

        Without ``receipt_id`` the reusable row for (owner, url) is found or
        created, and a row that is already queued or completed is returned as
        is. With ``receipt_id`` the job is re-enqueued unconditionally (explicit
        resend).

        Raises:
            SubmissionValidationError: Missing owner or malformed URL
            NotFoundError: ``receipt_id`` unknown or owned by someone else
            QueueUnavailableError: The queue refused the job
        """
        owner_id = validate_owner(owner_id)
        file_url = validate_document_url(file_url)
        file_name = default_file_name(file_url, file_name)

        if receipt_id is not None:
            receipt = await self._owned_receipt(receipt_id, owner_id)
        else:
            receipt, created = await self.store.find_or_create_receipt(owner_id, file_url, file_name)
            if not created and receipt.status in ("processing", "completed"):
                logger.info(f"Receipt {receipt.id} already {receipt.status}, not re-enqueueing")
                return SubmissionResponse(receipt_id=receipt.id, status=receipt.status)

        # Marked before enqueueing so a fast worker's terminal write is never overwritten
        receipt.status = "processing"
        receipt = await self.store.save_receipt(receipt)

        job = ReceiptJob(
            owner_id=owner_id, file_url=file_url, file_name=file_name, receipt_id=receipt.id
        )
        try:
            await self._require_queue().enqueue(PROCESS_RECEIPT, job.model_dump())
        except QueueUnavailableError as e:
            await self._mark_failed(receipt.id, f"Queueing failed: {e}")
            raise

        metrics.receipts_submitted_total.labels(mode="queued").inc()
        logger.info(f"Queued receipt {receipt.id} for owner {owner_id}")
        return SubmissionResponse(receipt_id=receipt.id, status=receipt.status)

    async def get_receipt_status(self, receipt_id: int, owner_id: int) -> ReceiptStatusView:
        receipt = await self._owned_receipt(receipt_id, owner_id)
        if receipt.status != "completed":
            return ReceiptStatusView(status=receipt.status)
        return ReceiptStatusView(status=receipt.status, data=ReceiptData.from_receipt(receipt))

    async def create_manual_receipt(self, owner_id: int, entry: ManualReceiptInput) -> Receipt:
        """Record a manually entered receipt as ``completed``.

        An existing pending/processing/completed row for the same upload is
        updated in place. Otherwise a matching receipt inside the duplicate
        window rejects the entry.

        Raises:
            DuplicateReceiptError: A matching receipt already exists
        """
        owner_id = validate_owner(owner_id)
        currency = normalize_currency_code(entry.currency)
        fields: dict[str, Any] = {
            "merchant_name": entry.merchant_name,
            "amount": entry.amount,
            "currency": currency,
            "receipt_date": entry.receipt_date,
            "category": entry.category,
            "note": entry.note,
            "needs_review": False,
            "status": "completed",
        }

        file_url = entry.file_url.strip()
        if file_url:
            existing = await self.store.find_reusable_receipt(owner_id, file_url)
            if existing is not None:
                for name, value in fields.items():
                    setattr(existing, name, value)
                receipt = await self.store.save_receipt(existing)
                metrics.receipts_submitted_total.labels(mode="manual").inc()
                logger.info(f"Manual entry completed existing receipt {receipt.id}")
                return receipt

        duplicate = await self.detector.find_duplicate(
            owner_id, entry.merchant_name, entry.amount, entry.receipt_date
        )
        if duplicate is not None:
            raise DuplicateReceiptError(
                f"A receipt from {entry.merchant_name} for {entry.amount} on "
                f"{entry.receipt_date} already exists",
                existing_id=duplicate.id,
            )

        receipt = await self.store.create_receipt(
            owner_id,
            file_url,
            entry.file_name or (default_file_name(file_url, None) if file_url else ""),
            **fields,
        )
        metrics.receipts_submitted_total.labels(mode="manual").inc()
        logger.info(f"Manual entry created receipt {receipt.id} for owner {owner_id}")
        return receipt

    # Worker side

    async def run_receipt_job(self, job: ReceiptJob) -> dict[str, Any]:
        """Run one extraction job to a terminal status.

        Never raises: any failure is written as ``failed`` on the row (when
        there is one) and reported in the returned outcome.
        """
        logger.info(f"Starting receipt job for owner {job.owner_id}: {job.file_url}")
        # Only a row this job resolved for its owner may be marked failed
        receipt_id: int | None = None

        try:
            receipt = await self._resolve_receipt(job)
            receipt_id = receipt.id

            result = await self._require_engine().extract(
                job.file_url, job.file_name or receipt.file_name
            )
            is_duplicate = await self.detector.is_duplicate(
                job.owner_id,
                result.merchant_name,
                result.amount,
                result.receipt_date,
                exclude_id=receipt.id,
            )
            self._apply_result(receipt, result, is_duplicate)
            await self.store.save_receipt(receipt)
        except Exception as e:
            logger.exception(f"Receipt job for {job.file_url} failed: {e}")
            metrics.jobs_processed_total.labels(kind="receipt", status="failed").inc()
            if receipt_id is not None:
                await self._mark_failed(receipt_id, f"Processing failed: {e}")
            return {"status": "failed", "receipt_id": receipt_id, "error": str(e)}

        metrics.jobs_processed_total.labels(kind="receipt", status="completed").inc()
        logger.info(
            f"Receipt {receipt.id} completed via {result.source_strategy} "
            f"(score={receipt.confidence_score}, duplicate={receipt.is_duplicate})"
        )
        return {
            "status": "completed",
            "receipt_id": receipt.id,
            "source_strategy": result.source_strategy,
            "needs_review": receipt.needs_review,
            "is_duplicate": receipt.is_duplicate,
        }

    async def _resolve_receipt(self, job: ReceiptJob) -> Receipt:
        if job.receipt_id is not None:
            return await self._owned_receipt(job.receipt_id, job.owner_id)
        receipt, created = await self.store.find_or_create_receipt(
            job.owner_id, job.file_url, default_file_name(job.file_url, job.file_name)
        )
        if created:
            logger.info(f"Created receipt {receipt.id} for redelivered job {job.file_url}")
        return receipt

    def _apply_result(self, receipt: Receipt, result: ExtractionResult, is_duplicate: bool) -> None:
        score = confidence_score(result.confidence_level)
        receipt.merchant_name = result.merchant_name
        receipt.amount = result.amount
        receipt.currency = result.currency
        receipt.receipt_date = result.receipt_date
        receipt.category = result.category
        receipt.note = result.notes
        receipt.confidence_score = score
        receipt.needs_review = needs_review(score, self.settings.review_threshold)
        receipt.is_duplicate = is_duplicate
        receipt.status = "completed"

    async def _mark_failed(self, receipt_id: int, note: str) -> None:
        """Durably record ``failed``, leaving the extracted fields untouched."""
        try:
            receipt = await self.store.get_receipt(receipt_id)
            if receipt is None:
                logger.critical(f"Cannot mark receipt {receipt_id} failed: row is missing")
                return
            receipt.status = "failed"
            receipt.note = note
            await self.store.save_receipt(receipt)
        except Exception as e:
            logger.critical(f"Failed to record failed status for receipt {receipt_id}: {e}")

    async def _owned_receipt(self, receipt_id: int, owner_id: int) -> Receipt:
        receipt = await self.store.get_receipt(receipt_id)
        if receipt is None or receipt.owner_id != owner_id:
            raise NotFoundError(f"Receipt {receipt_id} not found")
        return receipt

    def _require_queue(self) -> JobQueue:
        if self.queue is None:
            raise QueueUnavailableError("No job queue configured")
        return self.queue

    def _require_engine(self) -> ExtractionEngine:
        if self.engine is None:
            raise RuntimeError("No extraction engine configured")
        return self.engine
