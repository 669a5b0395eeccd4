"""FastAPI application for receipt extraction.

Thin HTTP surface over the orchestrators:
- Health and readiness checks
- Receipt submission, status polling and manual entry
- Batch submission, status and gated CSV export
- Signed payment notifications from the payment collaborator
- Prometheus metrics

Identity comes from the upstream auth collaborator as ``X-User-Id`` /
``X-User-Email`` headers.

FastAPI reference:
https://fastapi.tiangolo.com/
"""

import logging
import time

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from receipt_pipeline.api import metrics
from receipt_pipeline.orchestrator.batch import (
    BatchCoordinator,
    BatchFileInput,
    BatchStatusView,
    BatchSubmissionResponse,
)
from receipt_pipeline.orchestrator.service import (
    ManualReceiptInput,
    ReceiptOrchestrator,
    ReceiptStatusView,
    SubmissionResponse,
)
from receipt_pipeline.queue.payloads import verify_payload
from receipt_pipeline.queue.publisher import ArqJobQueue, JobQueue
from receipt_pipeline.records.factory import create_record_store
from receipt_pipeline.records.models import Receipt
from receipt_pipeline.records.store import RecordStore
from receipt_pipeline.shared.collaborators import CurrentUser, PaymentGateway, UnpaidGateway
from receipt_pipeline.shared.config import get_settings
from receipt_pipeline.shared.errors import (
    DuplicateReceiptError,
    ExportBlockedError,
    InvalidSignatureError,
    NotFoundError,
    QueueUnavailableError,
    ReceiptPipelineError,
    SubmissionValidationError,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Receipt Extraction Pipeline",
    description="Receipt extraction with AI vision, heuristic fallback and batch export",
    version=settings.service_version,
)

_arq_pool: ArqRedis | None = None
_record_store: RecordStore | None = None


async def get_arq_pool() -> ArqRedis:
    """Return the shared arq Redis pool, connecting on first use."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    return _arq_pool


# Dependencies


def get_current_user(
    x_user_id: int | None = Header(None),
    x_user_email: str | None = Header(None),
) -> CurrentUser:
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return CurrentUser(id=x_user_id, email=x_user_email)


async def get_record_store() -> RecordStore:
    global _record_store
    if _record_store is None:
        redis = await get_arq_pool() if settings.store_backend == "redis" else None
        _record_store = create_record_store(settings, redis=redis)
    return _record_store


async def get_job_queue() -> JobQueue:
    return ArqJobQueue(await get_arq_pool(), settings.queue_signing_secret)


def get_payment_gateway() -> PaymentGateway:
    return UnpaidGateway()


def get_receipt_orchestrator(
    store: RecordStore = Depends(get_record_store),  # noqa: B008
    queue: JobQueue = Depends(get_job_queue),  # noqa: B008
) -> ReceiptOrchestrator:
    return ReceiptOrchestrator(settings, store, queue=queue)


def get_batch_coordinator(
    store: RecordStore = Depends(get_record_store),  # noqa: B008
    queue: JobQueue = Depends(get_job_queue),  # noqa: B008
    payments: PaymentGateway = Depends(get_payment_gateway),  # noqa: B008
) -> BatchCoordinator:
    return BatchCoordinator(settings, store, queue=queue, payments=payments)


# Read-only dependencies, without a job queue


def get_receipt_reader(
    store: RecordStore = Depends(get_record_store),  # noqa: B008
) -> ReceiptOrchestrator:
    return ReceiptOrchestrator(settings, store)


def get_batch_reader(
    store: RecordStore = Depends(get_record_store),  # noqa: B008
    payments: PaymentGateway = Depends(get_payment_gateway),  # noqa: B008
) -> BatchCoordinator:
    return BatchCoordinator(settings, store, payments=payments)


# Error mapping

_ERROR_STATUS: dict[type[ReceiptPipelineError], int] = {
    SubmissionValidationError: status.HTTP_400_BAD_REQUEST,
    InvalidSignatureError: status.HTTP_401_UNAUTHORIZED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    DuplicateReceiptError: status.HTTP_409_CONFLICT,
    ExportBlockedError: status.HTTP_402_PAYMENT_REQUIRED,
    QueueUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@app.exception_handler(ReceiptPipelineError)
async def pipeline_error_handler(request: Request, exc: ReceiptPipelineError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    content: dict[str, object] = {"detail": str(exc)}
    if isinstance(exc, DuplicateReceiptError) and exc.existing_id is not None:
        content["existing_id"] = exc.existing_id
    return JSONResponse(status_code=status_code, content=content)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


# Request / response models


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class ReceiptSubmission(BaseModel):
    file_url: str
    file_name: str | None = None
    receipt_id: int | None = None


class BatchSubmission(BaseModel):
    files: list[BatchFileInput]


class PaymentNotification(BaseModel):
    """Sent by the payment collaborator once a batch has been paid."""

    session_id: str
    payment_id: str


# Health


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check(
    response: Response,
    store: RecordStore = Depends(get_record_store),  # noqa: B008
) -> ReadinessResponse:
    """Readiness check endpoint: ready when the record store answers."""
    ready = await store.ping()
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=ready)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


# Receipts


@app.post(
    "/api/v1/receipts",
    response_model=SubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Receipts"],
)
async def submit_receipt(
    submission: ReceiptSubmission,
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    orchestrator: ReceiptOrchestrator = Depends(get_receipt_orchestrator),  # noqa: B008
) -> SubmissionResponse:
    """Queue an uploaded receipt document for extraction.

    Submitting the same ``file_url`` again while the first extraction is
    pending returns the same receipt id. Poll
    ``GET /api/v1/receipts/{receipt_id}/status`` for the outcome.

    ## Error Handling

    - 400 if the URL is missing or not http(s)
    - 404 if ``receipt_id`` is given but not found
    - 503 if the task queue is unavailable
    """
    return await orchestrator.submit_receipt(
        owner_id=user.id,
        file_url=submission.file_url,
        file_name=submission.file_name,
        receipt_id=submission.receipt_id,
    )


@app.get(
    "/api/v1/receipts/{receipt_id}/status",
    response_model=ReceiptStatusView,
    response_model_exclude_none=True,
    tags=["Receipts"],
)
async def get_receipt_status(
    receipt_id: int,
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    orchestrator: ReceiptOrchestrator = Depends(get_receipt_reader),  # noqa: B008
) -> ReceiptStatusView:
    """Current status; ``data`` is included once the receipt is completed."""
    return await orchestrator.get_receipt_status(receipt_id, user.id)


@app.post(
    "/api/v1/receipts/manual",
    response_model=Receipt,
    status_code=status.HTTP_201_CREATED,
    tags=["Receipts"],
)
async def create_manual_receipt(
    entry: ManualReceiptInput,
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    orchestrator: ReceiptOrchestrator = Depends(get_receipt_orchestrator),  # noqa: B008
) -> Receipt:
    """Record a receipt typed in by the owner. Returns 409 on a duplicate."""
    return await orchestrator.create_manual_receipt(user.id, entry)


# Batches


@app.post(
    "/api/v1/batches",
    response_model=BatchSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Batches"],
)
async def submit_batch(
    submission: BatchSubmission,
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    coordinator: BatchCoordinator = Depends(get_batch_coordinator),  # noqa: B008
) -> BatchSubmissionResponse:
    """Queue 1 to ``batch_max_files`` documents as one batch session."""
    return await coordinator.submit_batch(user.id, submission.files)


@app.get("/api/v1/batches", response_model=list[BatchStatusView], tags=["Batches"])
async def list_paid_batches(
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    coordinator: BatchCoordinator = Depends(get_batch_reader),  # noqa: B008
) -> list[BatchStatusView]:
    """Paid batch sessions, most recently paid first."""
    return await coordinator.list_paid_batches(user.id)


@app.get("/api/v1/batches/{session_id}", response_model=BatchStatusView, tags=["Batches"])
async def get_batch_status(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    coordinator: BatchCoordinator = Depends(get_batch_reader),  # noqa: B008
) -> BatchStatusView:
    return await coordinator.get_batch_status(session_id, user.id)


@app.get("/api/v1/batches/{session_id}/export.csv", tags=["Batches"])
async def export_batch_csv(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),  # noqa: B008
    coordinator: BatchCoordinator = Depends(get_batch_reader),  # noqa: B008
) -> Response:
    """CSV of the completed files. Returns 402 until the batch is paid."""
    content = await coordinator.export_csv(session_id, user.id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="batch-{session_id}.csv"'},
    )


# Webhooks


@app.post("/api/v1/webhooks/payments", response_model=BatchStatusView, tags=["Webhooks"])
async def record_batch_payment(
    notification: PaymentNotification,
    x_payment_signature: str | None = Header(None),
    coordinator: BatchCoordinator = Depends(get_batch_reader),  # noqa: B008
) -> BatchStatusView:
    """Record a batch payment reported by the payment collaborator.

    The ``X-Payment-Signature`` header carries the hex HMAC-SHA256 of the
    notification's canonical JSON under ``payment_webhook_secret``.

    ## Error Handling

    - 401 if the signature is missing or does not match
    - 404 if the batch session does not exist
    """
    verify_payload(
        notification.model_dump(), x_payment_signature, settings.payment_webhook_secret
    )
    return await coordinator.mark_batch_paid(notification.session_id, notification.payment_id)
