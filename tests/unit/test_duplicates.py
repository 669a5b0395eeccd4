"""Unit tests for duplicate detection and confidence scoring."""

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from receipt_pipeline.orchestrator.scoring import confidence_score, needs_review
from receipt_pipeline.records.duplicates import DuplicateDetector
from receipt_pipeline.records.models import utcnow
from receipt_pipeline.records.store import InMemoryRecordStore

URL = "https://cdn.example.com/r.jpg"
DAY = date(2024, 12, 15)


async def seed(store: InMemoryRecordStore, owner_id: int = 1, days_ago: int = 2, **fields):
    defaults = {
        "merchant_name": "Starbucks",
        "amount": Decimal("8.45"),
        "receipt_date": DAY,
        "status": "completed",
        "created_at": utcnow() - timedelta(days=days_ago),
    }
    defaults.update(fields)
    return await store.create_receipt(owner_id, URL, "r.jpg", **defaults)


@pytest.mark.asyncio
async def test_detects_match_within_window() -> None:
    store = InMemoryRecordStore()
    existing = await seed(store)
    detector = DuplicateDetector(store, window_days=90)

    match = await detector.find_duplicate(1, "Starbucks", Decimal("8.45"), DAY)

    assert match is not None
    assert match.id == existing.id


@pytest.mark.asyncio
async def test_ignores_receipts_outside_window() -> None:
    store = InMemoryRecordStore()
    await seed(store, days_ago=91)
    detector = DuplicateDetector(store, window_days=90)

    assert await detector.find_duplicate(1, "Starbucks", Decimal("8.45"), DAY) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("merchant", "amount", "receipt_date"),
    [
        ("Dunkin", Decimal("8.45"), DAY),
        ("Starbucks", Decimal("8.46"), DAY),
        ("Starbucks", Decimal("8.45"), DAY - timedelta(days=1)),
    ],
)
async def test_requires_exact_match(merchant: str, amount: Decimal, receipt_date: date) -> None:
    store = InMemoryRecordStore()
    await seed(store)
    detector = DuplicateDetector(store)

    assert await detector.find_duplicate(1, merchant, amount, receipt_date) is None


@pytest.mark.asyncio
async def test_other_owners_are_not_duplicates() -> None:
    store = InMemoryRecordStore()
    await seed(store, owner_id=2)
    detector = DuplicateDetector(store)

    assert await detector.is_duplicate(1, "Starbucks", Decimal("8.45"), DAY) is False


@pytest.mark.asyncio
async def test_record_is_not_its_own_duplicate() -> None:
    store = InMemoryRecordStore()
    existing = await seed(store)
    detector = DuplicateDetector(store)

    assert (
        await detector.is_duplicate(1, "Starbucks", Decimal("8.45"), DAY, exclude_id=existing.id)
        is False
    )


@pytest.mark.asyncio
async def test_advisory_check_tolerates_lookup_failure() -> None:
    store = InMemoryRecordStore()
    store.find_matching_receipt = AsyncMock(side_effect=ConnectionError("store down"))
    detector = DuplicateDetector(store)

    assert await detector.is_duplicate(1, "Starbucks", Decimal("8.45"), DAY) is False


@pytest.mark.asyncio
async def test_hard_lookup_propagates_failure() -> None:
    store = InMemoryRecordStore()
    store.find_matching_receipt = AsyncMock(side_effect=ConnectionError("store down"))
    detector = DuplicateDetector(store)

    with pytest.raises(ConnectionError):
        await detector.find_duplicate(1, "Starbucks", Decimal("8.45"), DAY)


@pytest.mark.parametrize(
    ("level", "score", "review"),
    [("high", 0.9, False), ("medium", 0.7, True), ("low", 0.5, True)],
)
def test_confidence_mapping(level: str, score: float, review: bool) -> None:
    assert confidence_score(level) == score
    assert needs_review(confidence_score(level)) is review


def test_needs_review_threshold_is_strict() -> None:
    assert needs_review(0.72) is False
    assert needs_review(0.7199) is True
    assert needs_review(0.9, threshold=0.95) is True
