"""Batch coordination: fan-out of up to ``batch_max_files`` documents per session.

Each file gets its own queued job. Workers write results into the session's
``files[i]`` entry and the session status is re-derived from the files after
every write. Individual file failures never fail the session; only a failed
enqueue does.
"""

import asyncio
import csv
import io
import logging
import secrets
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from receipt_pipeline.api import metrics
from receipt_pipeline.extraction.engine import ExtractionEngine
from receipt_pipeline.extraction.schema import ExtractionResult
from receipt_pipeline.orchestrator.scoring import confidence_score, needs_review
from receipt_pipeline.orchestrator.validation import (
    default_file_name,
    validate_document_url,
    validate_owner,
)
from receipt_pipeline.queue.payloads import BatchFileJob
from receipt_pipeline.queue.publisher import PROCESS_BATCH_FILE, JobQueue
from receipt_pipeline.records.models import BatchFile, BatchSession, BatchStatus, utcnow
from receipt_pipeline.records.store import BatchMutation, RecordStore
from receipt_pipeline.shared.collaborators import PaymentGateway, UnpaidGateway
from receipt_pipeline.shared.config import Settings
from receipt_pipeline.shared.errors import (
    ExportBlockedError,
    NotFoundError,
    QueueUnavailableError,
    SubmissionValidationError,
)

logger = logging.getLogger(__name__)

CSV_COLUMNS = ("file", "date", "merchant", "category", "amount", "currency", "notes")


class BatchFileInput(BaseModel):
    url: str
    name: str = ""


class BatchSubmissionResponse(BaseModel):
    session_id: str
    status: BatchStatus


class BatchStatusView(BaseModel):
    session_id: str
    status: BatchStatus
    files: list[BatchFile]
    payment_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_session(cls, session: BatchSession) -> "BatchStatusView":
        return cls(
            session_id=session.session_id,
            status=session.status,
            files=session.files,
            payment_id=session.payment_id,
            paid_at=session.paid_at,
            created_at=session.created_at,
        )


class BatchCoordinator:
    """Creates batch sessions, runs their per-file jobs and gates export."""

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        queue: JobQueue | None = None,
        engine: ExtractionEngine | None = None,
        payments: PaymentGateway | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.queue = queue
        self.engine = engine
        self.payments = payments or UnpaidGateway()

    async def submit_batch(self, owner_id: int, files: list[BatchFileInput]) -> BatchSubmissionResponse:
        """Create a session and enqueue one job per file.

        Raises:
            SubmissionValidationError: File count outside 1..batch_max_files or a bad URL
            QueueUnavailableError: Enqueueing failed; the session is left ``failed``
        """
        owner_id = validate_owner(owner_id)
        if not 1 <= len(files) <= self.settings.batch_max_files:
            raise SubmissionValidationError(
                f"A batch must contain between 1 and {self.settings.batch_max_files} files, "
                f"got {len(files)}"
            )

        batch_files = []
        for index, item in enumerate(files):
            url = validate_document_url(item.url)
            batch_files.append(
                BatchFile(id=f"file-{index}", url=url, name=default_file_name(url, item.name))
            )

        session = BatchSession(
            session_id=secrets.token_urlsafe(16), owner_id=owner_id, files=batch_files
        )
        await self.store.create_batch(session)
        logger.info(f"Created batch {session.session_id} with {len(batch_files)} files")

        try:
            queue = self._require_queue()
            for index, batch_file in enumerate(batch_files):
                job = BatchFileJob(
                    session_id=session.session_id,
                    owner_id=owner_id,
                    file_index=index,
                    file_url=batch_file.url,
                    file_name=batch_file.name,
                )
                await queue.enqueue(PROCESS_BATCH_FILE, job.model_dump())
                session = await self.store.update_batch(
                    session.session_id, _mark_file_queued(index)
                )
        except QueueUnavailableError:
            logger.exception(f"Enqueue failed for batch {session.session_id}")
            await self.store.update_batch(session.session_id, _fail_session)
            metrics.batches_submitted_total.labels(status="failed").inc()
            raise

        metrics.batches_submitted_total.labels(status=session.status).inc()
        return BatchSubmissionResponse(session_id=session.session_id, status=session.status)

    async def get_batch_status(self, session_id: str, owner_id: int) -> BatchStatusView:
        return BatchStatusView.from_session(await self._owned_session(session_id, owner_id))

    async def run_batch_file_job(self, job: BatchFileJob) -> dict[str, Any]:
        """Extract one batch file and write the result into the session.

        The document must be reachable: a fetch failure fails the file instead
        of falling back to a filename estimate.
        """
        logger.info(f"Starting batch file job {job.session_id}[{job.file_index}]")
        owned = False

        try:
            session = await self._owned_session(job.session_id, job.owner_id)
            owned = True
            if job.file_index >= len(session.files):
                raise NotFoundError(
                    f"Batch {job.session_id} has no file at index {job.file_index}"
                )
            result = await self._require_engine().extract(
                job.file_url, job.file_name, require_document=True
            )
        except asyncio.CancelledError:
            # Worker job timeout: the file must not be left processing
            logger.error(f"Batch file {job.session_id}[{job.file_index}] cancelled")
            metrics.jobs_processed_total.labels(kind="batch_file", status="failed").inc()
            if owned:
                await asyncio.shield(
                    self._record_file(job, _mark_file_failed(job.file_index, "Processing timed out"))
                )
            raise
        except Exception as e:
            logger.exception(f"Batch file {job.session_id}[{job.file_index}] failed: {e}")
            metrics.jobs_processed_total.labels(kind="batch_file", status="failed").inc()
            if owned:
                await self._record_file(job, _mark_file_failed(job.file_index, str(e)))
            return {
                "status": "failed",
                "session_id": job.session_id,
                "file_index": job.file_index,
                "error": str(e),
            }

        score = confidence_score(result.confidence_level)
        flagged = needs_review(score, self.settings.review_threshold)
        session = await self._record_file(
            job, _mark_file_completed(job.file_index, result, score, flagged)
        )
        metrics.jobs_processed_total.labels(kind="batch_file", status="completed").inc()
        return {
            "status": "completed",
            "session_id": job.session_id,
            "file_index": job.file_index,
            "session_status": session.status if session else None,
        }

    async def _record_file(self, job: BatchFileJob, mutate: BatchMutation) -> BatchSession | None:
        try:
            return await self.store.update_batch(job.session_id, mutate)
        except NotFoundError:
            logger.error(f"Batch {job.session_id} vanished before file {job.file_index} was recorded")
        except Exception as e:
            logger.critical(
                f"Failed to record batch file {job.session_id}[{job.file_index}]: {e}"
            )
        return None

    async def mark_batch_paid(self, session_id: str, payment_id: str) -> BatchStatusView:
        """Record a payment; the first recorded ``paid_at`` is kept."""

        def apply(session: BatchSession) -> None:
            session.payment_id = payment_id
            if session.paid_at is None:
                session.paid_at = utcnow()

        session = await self.store.update_batch(session_id, apply)
        logger.info(f"Batch {session_id} paid with payment {payment_id}")
        return BatchStatusView.from_session(session)

    async def export_csv(self, session_id: str, owner_id: int) -> str:
        """Render the completed files of a paid session as CSV.

        Raises:
            NotFoundError: Session missing or owned by someone else
            ExportBlockedError: No payment recorded and the payment collaborator says unpaid
        """
        session = await self._owned_session(session_id, owner_id)
        if session.paid_at is None:
            if not await self.payments.is_paid(session_id):
                raise ExportBlockedError(f"Batch {session_id} has not been paid for")
            await self.mark_batch_paid(session_id, session.payment_id or "external")

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for batch_file in session.files:
            data = batch_file.extracted_data
            if batch_file.status != "completed" or data is None:
                continue
            writer.writerow(
                [
                    batch_file.name,
                    data.receipt_date.isoformat(),
                    data.merchant_name,
                    data.category,
                    f"{data.amount:.2f}",
                    data.currency,
                    data.notes or "",
                ]
            )
        return buffer.getvalue()

    async def list_paid_batches(self, owner_id: int) -> list[BatchStatusView]:
        """The owner's paid sessions, most recently paid first."""
        sessions = [s for s in await self.store.list_batches(owner_id) if s.paid_at is not None]
        sessions.sort(key=lambda s: s.paid_at, reverse=True)
        return [BatchStatusView.from_session(s) for s in sessions]

    async def _owned_session(self, session_id: str, owner_id: int) -> BatchSession:
        session = await self.store.get_batch(session_id)
        if session is None or session.owner_id != owner_id:
            raise NotFoundError(f"Batch session {session_id} not found")
        return session

    def _require_queue(self) -> JobQueue:
        if self.queue is None:
            raise QueueUnavailableError("No job queue configured")
        return self.queue

    def _require_engine(self) -> ExtractionEngine:
        if self.engine is None:
            raise RuntimeError("No extraction engine configured")
        return self.engine


def _mark_file_queued(index: int):
    def apply(session: BatchSession) -> None:
        batch_file = session.files[index]
        # A fast worker may already have finished this file
        if batch_file.status in ("uploading", "uploaded"):
            batch_file.status = "processing"
        session.refresh_status()

    return apply


def _mark_file_failed(index: int, error: str):
    def apply(session: BatchSession) -> None:
        if index < len(session.files):
            batch_file = session.files[index]
            batch_file.status = "failed"
            batch_file.error = error
        session.refresh_status()

    return apply


def _mark_file_completed(index: int, result: ExtractionResult, score: float, flagged: bool):
    def apply(session: BatchSession) -> None:
        batch_file = session.files[index]
        batch_file.status = "completed"
        batch_file.extracted_data = result
        batch_file.confidence_score = score
        batch_file.needs_review = flagged
        batch_file.error = None
        session.refresh_status()

    return apply


def _fail_session(session: BatchSession) -> None:
    session.status = "failed"
