"""Async task definitions for receipt processing.

Uses arq (async Redis queue) for background task processing. Each task
verifies the payload signature before handing the job to its orchestrator.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from typing import Any

from arq.connections import RedisSettings
from pydantic import ValidationError

from receipt_pipeline.api import metrics
from receipt_pipeline.extraction.factory import create_extraction_engine
from receipt_pipeline.orchestrator.batch import BatchCoordinator
from receipt_pipeline.orchestrator.service import ReceiptOrchestrator
from receipt_pipeline.queue.payloads import BatchFileJob, ReceiptJob, verify_payload
from receipt_pipeline.records.factory import create_record_store
from receipt_pipeline.shared.config import Settings, get_settings
from receipt_pipeline.shared.errors import InvalidSignatureError

logger = logging.getLogger(__name__)


def _reject(ctx: dict[str, Any], kind: str, error: Exception) -> dict[str, Any]:
    logger.error(f"Rejected {kind} job {ctx.get('job_id')}: {error}")
    metrics.jobs_processed_total.labels(kind=kind, status="rejected").inc()
    return {"status": "rejected", "error": str(error)}


async def process_receipt(
    ctx: dict[str, Any], payload: dict[str, Any], signature: str | None = None
) -> dict[str, Any]:
    """Extract one receipt and write its terminal status.

    Args:
        ctx: arq context (settings and orchestrator from ``startup``)
        payload: ``ReceiptJob`` fields
        signature: HMAC of the payload

    Returns:
        Job outcome with ``status`` of completed, failed or rejected
    """
    settings: Settings = ctx["settings"]
    try:
        verify_payload(payload, signature, settings.queue_signing_secret)
        job = ReceiptJob.model_validate(payload)
    except (InvalidSignatureError, ValidationError) as e:
        return _reject(ctx, "receipt", e)

    orchestrator: ReceiptOrchestrator = ctx["receipt_orchestrator"]
    return await orchestrator.run_receipt_job(job)


async def process_batch_file(
    ctx: dict[str, Any], payload: dict[str, Any], signature: str | None = None
) -> dict[str, Any]:
    """Extract one batch file into its session."""
    settings: Settings = ctx["settings"]
    try:
        verify_payload(payload, signature, settings.queue_signing_secret)
        job = BatchFileJob.model_validate(payload)
    except (InvalidSignatureError, ValidationError) as e:
        return _reject(ctx, "batch_file", e)

    coordinator: BatchCoordinator = ctx["batch_coordinator"]
    return await coordinator.run_batch_file_job(job)


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services.

    Called once when worker starts. The record store shares the worker's
    own Redis connection.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    store = create_record_store(settings, redis=ctx.get("redis"))
    engine = create_extraction_engine(settings)

    ctx["settings"] = settings
    ctx["record_store"] = store
    ctx["extraction_engine"] = engine
    ctx["receipt_orchestrator"] = ReceiptOrchestrator(settings, store, engine=engine)
    ctx["batch_coordinator"] = BatchCoordinator(settings, store, engine=engine)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Concurrency and job timeout
    """

    functions = [process_receipt, process_batch_file]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 60

    @classmethod
    def get_redis_settings(cls) -> RedisSettings:
        """Get Redis settings from configuration."""
        return RedisSettings.from_dsn(get_settings().redis_url)
