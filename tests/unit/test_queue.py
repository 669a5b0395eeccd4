"""Unit tests for async queue functionality.

Tests payload signing, job publishing, task definitions and worker
configuration.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import RedisError

from receipt_pipeline.orchestrator.batch import BatchCoordinator
from receipt_pipeline.orchestrator.service import ReceiptOrchestrator
from receipt_pipeline.queue.payloads import ReceiptJob, sign_payload, verify_payload
from receipt_pipeline.queue.publisher import PROCESS_RECEIPT, ArqJobQueue
from receipt_pipeline.queue.tasks import (
    WorkerSettings,
    process_batch_file,
    process_receipt,
    startup,
)
from receipt_pipeline.records.store import InMemoryRecordStore
from receipt_pipeline.shared.config import Settings
from receipt_pipeline.shared.errors import InvalidSignatureError, QueueUnavailableError

SECRET = "test-secret"
PAYLOAD = {
    "owner_id": 1,
    "file_url": "https://cdn.example.com/r.jpg",
    "file_name": "r.jpg",
    "receipt_id": 4,
}


@pytest.fixture
def settings() -> Settings:
    """Create test settings with a known signing secret."""
    return Settings(
        _env_file=None,
        redis_url="redis://localhost:6379/0",
        queue_signing_secret=SECRET,
        store_backend="memory",
    )


@pytest.fixture
def ctx(settings: Settings) -> dict:
    """arq context as populated by ``startup``, with mocked orchestrators."""
    orchestrator = MagicMock()
    orchestrator.run_receipt_job = AsyncMock(return_value={"status": "completed", "receipt_id": 4})
    coordinator = MagicMock()
    coordinator.run_batch_file_job = AsyncMock(return_value={"status": "completed"})
    return {
        "job_id": "job-123",
        "settings": settings,
        "receipt_orchestrator": orchestrator,
        "batch_coordinator": coordinator,
    }


class TestPayloadSignature:
    """Test HMAC signing of job payloads."""

    def test_signature_is_independent_of_key_order(self) -> None:
        reordered = dict(reversed(list(PAYLOAD.items())))
        assert sign_payload(PAYLOAD, SECRET) == sign_payload(reordered, SECRET)

    def test_valid_signature_passes(self) -> None:
        verify_payload(PAYLOAD, sign_payload(PAYLOAD, SECRET), SECRET)

    def test_tampered_payload_is_rejected(self) -> None:
        """Should reject a payload whose owner was changed after signing."""
        signature = sign_payload(PAYLOAD, SECRET)
        tampered = {**PAYLOAD, "owner_id": 2}

        with pytest.raises(InvalidSignatureError, match="mismatch"):
            verify_payload(tampered, signature, SECRET)

    def test_wrong_secret_is_rejected(self) -> None:
        with pytest.raises(InvalidSignatureError):
            verify_payload(PAYLOAD, sign_payload(PAYLOAD, "other"), SECRET)

    @pytest.mark.parametrize("signature", [None, ""])
    def test_missing_signature_is_rejected(self, signature: str | None) -> None:
        with pytest.raises(InvalidSignatureError, match="not signed"):
            verify_payload(PAYLOAD, signature, SECRET)


class TestArqJobQueue:
    """Test publishing onto the arq pool."""

    @pytest.mark.asyncio
    async def test_enqueue_passes_signed_payload(self) -> None:
        """Should call enqueue_job with the payload and its signature."""
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=MagicMock(job_id="job-9"))
        queue = ArqJobQueue(pool, SECRET)

        job_id = await queue.enqueue(PROCESS_RECEIPT, PAYLOAD)

        assert job_id == "job-9"
        pool.enqueue_job.assert_awaited_once_with(
            PROCESS_RECEIPT, PAYLOAD, sign_payload(PAYLOAD, SECRET)
        )

    @pytest.mark.asyncio
    async def test_redis_error_maps_to_queue_unavailable(self) -> None:
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(side_effect=RedisError("connection refused"))
        queue = ArqJobQueue(pool, SECRET)

        with pytest.raises(QueueUnavailableError):
            await queue.enqueue(PROCESS_RECEIPT, PAYLOAD)

    @pytest.mark.asyncio
    async def test_rejected_job_maps_to_queue_unavailable(self) -> None:
        """Should treat a None job (duplicate job id) as not queued."""
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=None)
        queue = ArqJobQueue(pool, SECRET)

        with pytest.raises(QueueUnavailableError):
            await queue.enqueue(PROCESS_RECEIPT, PAYLOAD)


class TestProcessReceiptTask:
    """Test process_receipt task."""

    @pytest.mark.asyncio
    async def test_signed_payload_is_delegated(self, ctx: dict) -> None:
        """Should validate the payload and hand it to the orchestrator."""
        result = await process_receipt(ctx, PAYLOAD, sign_payload(PAYLOAD, SECRET))

        assert result["status"] == "completed"
        ctx["receipt_orchestrator"].run_receipt_job.assert_awaited_once_with(
            ReceiptJob(**PAYLOAD)
        )

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, ctx: dict) -> None:
        """Should reject without touching any row."""
        result = await process_receipt(ctx, PAYLOAD, "0" * 64)

        assert result["status"] == "rejected"
        ctx["receipt_orchestrator"].run_receipt_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsigned_payload_is_rejected(self, ctx: dict) -> None:
        result = await process_receipt(ctx, PAYLOAD)

        assert result["status"] == "rejected"
        ctx["receipt_orchestrator"].run_receipt_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_payload_is_rejected(self, ctx: dict) -> None:
        """Should reject a correctly signed payload that fails validation."""
        payload = {"owner_id": "not-a-number"}

        result = await process_receipt(ctx, payload, sign_payload(payload, SECRET))

        assert result["status"] == "rejected"
        ctx["receipt_orchestrator"].run_receipt_job.assert_not_called()


class TestProcessBatchFileTask:
    """Test process_batch_file task."""

    @pytest.mark.asyncio
    async def test_signed_payload_is_delegated(self, ctx: dict) -> None:
        payload = {
            "session_id": "s1",
            "owner_id": 1,
            "file_index": 0,
            "file_url": "https://cdn.example.com/r.jpg",
            "file_name": "r.jpg",
        }

        result = await process_batch_file(ctx, payload, sign_payload(payload, SECRET))

        assert result["status"] == "completed"
        ctx["batch_coordinator"].run_batch_file_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_negative_index_is_rejected(self, ctx: dict) -> None:
        payload = {
            "session_id": "s1",
            "owner_id": 1,
            "file_index": -1,
            "file_url": "https://cdn.example.com/r.jpg",
        }

        result = await process_batch_file(ctx, payload, sign_payload(payload, SECRET))

        assert result["status"] == "rejected"
        ctx["batch_coordinator"].run_batch_file_job.assert_not_called()


class TestWorkerLifecycle:
    """Test worker startup wiring."""

    @pytest.mark.asyncio
    async def test_startup_populates_context(self, settings: Settings) -> None:
        """Should build the store, engine and orchestrators once per worker."""
        ctx: dict = {}
        with patch("receipt_pipeline.queue.tasks.get_settings", return_value=settings):
            await startup(ctx)

        assert ctx["settings"] is settings
        assert isinstance(ctx["record_store"], InMemoryRecordStore)
        assert isinstance(ctx["receipt_orchestrator"], ReceiptOrchestrator)
        assert isinstance(ctx["batch_coordinator"], BatchCoordinator)
        assert ctx["receipt_orchestrator"].store is ctx["batch_coordinator"].store
        assert ctx["receipt_orchestrator"].engine is ctx["extraction_engine"]


class TestWorkerSettings:
    """Test WorkerSettings configuration."""

    def test_worker_functions_registered(self) -> None:
        """Should have both tasks registered."""
        assert process_receipt in WorkerSettings.functions
        assert process_batch_file in WorkerSettings.functions

    def test_get_redis_settings(self, settings: Settings) -> None:
        """Should parse Redis URL correctly."""
        with patch("receipt_pipeline.queue.tasks.get_settings", return_value=settings):
            redis_settings = WorkerSettings.get_redis_settings()
            assert redis_settings.host == "localhost"
            assert redis_settings.port == 6379
            assert redis_settings.database == 0

    def test_queue_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should read queue settings from environment."""
        monkeypatch.setenv("APP_REDIS_URL", "redis://redis-server:6380/1")
        monkeypatch.setenv("APP_QUEUE_MAX_JOBS", "20")

        settings = Settings(_env_file=None)

        assert settings.redis_url == "redis://redis-server:6380/1"
        assert settings.queue_max_jobs == 20
