"""Unit tests for the receipt pipeline API.

Tests cover:
- Health, readiness and metrics endpoints
- Receipt submission, status polling and manual entry
- Batch submission and gated CSV export
- Signed payment notifications
- Error mapping to HTTP status codes
"""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from receipt_pipeline.api import metrics
from receipt_pipeline.api.main import (
    app,
    get_job_queue,
    get_payment_gateway,
    get_record_store,
    settings,
)
from receipt_pipeline.queue.payloads import sign_payload
from receipt_pipeline.records.models import BatchFile, BatchSession
from receipt_pipeline.records.store import InMemoryRecordStore
from receipt_pipeline.shared.collaborators import UnpaidGateway
from receipt_pipeline.shared.errors import QueueUnavailableError

USER = {"X-User-Id": "1", "X-User-Email": "owner@example.com"}
OTHER_USER = {"X-User-Id": "2"}
URL = "https://cdn.example.com/u/1/starbucks.jpg"


def signed(body: dict[str, str]) -> dict[str, str]:
    return {"X-Payment-Signature": sign_payload(body, settings.payment_webhook_secret)}


def failed_session() -> BatchSession:
    return BatchSession(
        session_id="s1",
        owner_id=1,
        files=[BatchFile(id="file-0", url=URL, name="starbucks.jpg", status="failed")],
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def queue() -> MagicMock:
    mock = MagicMock()
    mock.enqueue = AsyncMock(return_value="job-1")
    return mock


@pytest.fixture
def client(store: InMemoryRecordStore, queue: MagicMock) -> Iterator[TestClient]:
    """Create test client with in-memory collaborators."""
    app.dependency_overrides[get_record_store] = lambda: store
    app.dependency_overrides[get_job_queue] = lambda: queue
    app.dependency_overrides[get_payment_gateway] = UnpaidGateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "service" in data


def test_readiness_check(client: TestClient) -> None:
    """Test readiness check endpoint."""
    response = client.get("/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["ready"] is True


def test_readiness_check_store_down(client: TestClient, store: InMemoryRecordStore) -> None:
    """Test readiness reports 503 when the record store does not answer."""
    store.ping = AsyncMock(return_value=False)

    response = client.get("/ready")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["ready"] is False


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics endpoint."""
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "http_requests_total" in response.text


def test_requires_authenticated_user(client: TestClient) -> None:
    response = client.post("/api/v1/receipts", json={"file_url": URL})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestReceiptEndpoints:
    """Test receipt submission and status."""

    def test_submit_receipt_accepted(self, client: TestClient, queue: MagicMock) -> None:
        initial = metrics.receipts_submitted_total.labels(mode="queued")._value.get()

        response = client.post("/api/v1/receipts", json={"file_url": URL}, headers=USER)

        assert response.status_code == status.HTTP_202_ACCEPTED
        data = response.json()
        assert data["status"] == "processing"
        assert isinstance(data["receipt_id"], int)
        queue.enqueue.assert_awaited_once()
        assert metrics.receipts_submitted_total.labels(mode="queued")._value.get() == initial + 1

    def test_submit_same_upload_returns_same_id(self, client: TestClient) -> None:
        first = client.post("/api/v1/receipts", json={"file_url": URL}, headers=USER).json()
        second = client.post("/api/v1/receipts", json={"file_url": URL}, headers=USER).json()

        assert first["receipt_id"] == second["receipt_id"]

    def test_submit_invalid_url(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/receipts", json={"file_url": "javascript:alert(1)"}, headers=USER
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_submit_queue_unavailable(self, client: TestClient, queue: MagicMock) -> None:
        queue.enqueue.side_effect = QueueUnavailableError("redis down")

        response = client.post("/api/v1/receipts", json={"file_url": URL}, headers=USER)

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_status_omits_data_until_completed(
        self, client: TestClient, store: InMemoryRecordStore
    ) -> None:
        receipt = await store.create_receipt(1, URL, "starbucks.jpg", status="processing")

        response = client.get(f"/api/v1/receipts/{receipt.id}/status", headers=USER)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "processing"}

    @pytest.mark.asyncio
    async def test_status_of_other_owner_is_not_found(
        self, client: TestClient, store: InMemoryRecordStore
    ) -> None:
        receipt = await store.create_receipt(1, URL, "starbucks.jpg")

        response = client.get(f"/api/v1/receipts/{receipt.id}/status", headers=OTHER_USER)

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_manual_entry_created_then_duplicate(self, client: TestClient) -> None:
        entry = {
            "merchant_name": "Starbucks",
            "amount": "8.45",
            "receipt_date": "2024-12-15",
            "category": "Meals",
        }

        created = client.post("/api/v1/receipts/manual", json=entry, headers=USER)
        duplicate = client.post("/api/v1/receipts/manual", json=entry, headers=USER)

        assert created.status_code == status.HTTP_201_CREATED
        assert created.json()["status"] == "completed"
        assert duplicate.status_code == status.HTTP_409_CONFLICT
        assert duplicate.json()["existing_id"] == created.json()["id"]

    def test_manual_entry_validation(self, client: TestClient) -> None:
        entry = {"merchant_name": "Starbucks", "amount": "-1", "receipt_date": "2024-12-15"}

        response = client.post("/api/v1/receipts/manual", json=entry, headers=USER)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestBatchEndpoints:
    """Test batch submission, payment and export."""

    def test_submit_batch_accepted(self, client: TestClient, queue: MagicMock) -> None:
        files = [{"url": f"https://cdn.example.com/r{i}.jpg"} for i in range(3)]

        response = client.post("/api/v1/batches", json={"files": files}, headers=USER)

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json()["status"] == "processing"
        assert queue.enqueue.await_count == 3

    def test_submit_too_many_files(self, client: TestClient, queue: MagicMock) -> None:
        files = [{"url": f"https://cdn.example.com/r{i}.jpg"} for i in range(11)]

        response = client.post("/api/v1/batches", json={"files": files}, headers=USER)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        queue.enqueue.assert_not_called()

    def test_batch_of_other_owner_is_not_found(self, client: TestClient) -> None:
        files = [{"url": "https://cdn.example.com/r.jpg"}]
        session_id = client.post("/api/v1/batches", json={"files": files}, headers=USER).json()[
            "session_id"
        ]

        response = client.get(f"/api/v1/batches/{session_id}", headers=OTHER_USER)

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.asyncio
    async def test_export_requires_payment(
        self, client: TestClient, store: InMemoryRecordStore
    ) -> None:
        """The owner cannot unlock export by posting a payment themselves."""
        await store.create_batch(failed_session())

        blocked = client.get("/api/v1/batches/s1/export.csv", headers=USER)
        self_paid = client.post(
            "/api/v1/batches/s1/payment", json={"payment_id": "i-made-this-up"}, headers=USER
        )
        still_blocked = client.get("/api/v1/batches/s1/export.csv", headers=USER)

        assert blocked.status_code == status.HTTP_402_PAYMENT_REQUIRED
        assert self_paid.status_code in (
            status.HTTP_404_NOT_FOUND,
            status.HTTP_405_METHOD_NOT_ALLOWED,
        )
        assert still_blocked.status_code == status.HTTP_402_PAYMENT_REQUIRED
        stored = await store.get_batch("s1")
        assert stored is not None and stored.paid_at is None

    @pytest.mark.asyncio
    async def test_signed_payment_notification_unlocks_export(
        self, client: TestClient, store: InMemoryRecordStore
    ) -> None:
        await store.create_batch(failed_session())
        body = {"session_id": "s1", "payment_id": "pay_1"}

        paid = client.post("/api/v1/webhooks/payments", json=body, headers=signed(body))
        exported = client.get("/api/v1/batches/s1/export.csv", headers=USER)

        assert paid.status_code == status.HTTP_200_OK
        assert paid.json()["payment_id"] == "pay_1"
        assert paid.json()["paid_at"] is not None
        assert exported.status_code == status.HTTP_200_OK
        assert exported.headers["content-type"].startswith("text/csv")
        assert exported.text.splitlines()[0] == "file,date,merchant,category,amount,currency,notes"

    @pytest.mark.asyncio
    async def test_payment_notification_rejects_bad_signature(
        self, client: TestClient, store: InMemoryRecordStore
    ) -> None:
        await store.create_batch(failed_session())
        body = {"session_id": "s1", "payment_id": "pay_1"}
        forged = {"X-Payment-Signature": sign_payload(body, "guessed-secret")}

        unsigned = client.post("/api/v1/webhooks/payments", json=body)
        mismatched = client.post("/api/v1/webhooks/payments", json=body, headers=forged)
        tampered = client.post(
            "/api/v1/webhooks/payments",
            json={"session_id": "s1", "payment_id": "pay_2"},
            headers=signed(body),
        )

        assert unsigned.status_code == status.HTTP_401_UNAUTHORIZED
        assert mismatched.status_code == status.HTTP_401_UNAUTHORIZED
        assert tampered.status_code == status.HTTP_401_UNAUTHORIZED
        stored = await store.get_batch("s1")
        assert stored is not None and stored.paid_at is None

    def test_payment_notification_for_unknown_session(self, client: TestClient) -> None:
        body = {"session_id": "missing", "payment_id": "pay_1"}

        response = client.post("/api/v1/webhooks/payments", json=body, headers=signed(body))

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_paid_batches(self, client: TestClient, store: InMemoryRecordStore) -> None:
        await store.create_batch(BatchSession(session_id="s1", owner_id=1))
        await store.create_batch(BatchSession(session_id="s2", owner_id=1))
        body = {"session_id": "s2", "payment_id": "pay_2"}
        client.post("/api/v1/webhooks/payments", json=body, headers=signed(body))

        response = client.get("/api/v1/batches", headers=USER)

        assert response.status_code == status.HTTP_200_OK
        assert [batch["session_id"] for batch in response.json()] == ["s2"]

    @pytest.mark.asyncio
    async def test_read_routes_do_not_open_job_queue(
        self, client: TestClient, store: InMemoryRecordStore, queue: MagicMock
    ) -> None:
        """Should only build the job queue for routes that enqueue."""
        opened: list[MagicMock] = []

        def open_queue() -> MagicMock:
            opened.append(queue)
            return queue

        app.dependency_overrides[get_job_queue] = open_queue
        receipt = await store.create_receipt(1, URL, "starbucks.jpg")
        await store.create_batch(failed_session())

        client.get(f"/api/v1/receipts/{receipt.id}/status", headers=USER)
        client.get("/api/v1/batches", headers=USER)
        client.get("/api/v1/batches/s1", headers=USER)
        client.get("/api/v1/batches/s1/export.csv", headers=USER)
        assert opened == []

        client.post("/api/v1/receipts", json={"file_url": URL}, headers=USER)
        assert opened == [queue]
