"""Filename-based fallback extraction.

Used when the vision strategy is unavailable, slow or wrong-shaped. It
cannot fail: a filename that matches nothing still yields a generic
merchant, a plausible amount and a recent date.
"""

import hashlib
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from receipt_pipeline.extraction.base import ExtractionProvider, ProviderResult
from receipt_pipeline.extraction.schema import RawReceiptData
from receipt_pipeline.normalization.dates import reasonable_date
from receipt_pipeline.normalization.merchant import UNKNOWN_MERCHANT
from receipt_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MerchantPattern:
    name: str
    category: str
    amount_range: tuple[float, float]


# Matched by substring in insertion order, so more specific keywords come first
MERCHANT_PATTERNS: dict[str, MerchantPattern] = {
    "starbucks": MerchantPattern("Starbucks", "Meals", (4, 12)),
    "coffee": MerchantPattern("Coffee Shop", "Meals", (3, 8)),
    "dunkin": MerchantPattern("Dunkin", "Meals", (3, 10)),
    "mcdonald": MerchantPattern("McDonald's", "Meals", (5, 15)),
    "subway": MerchantPattern("Subway", "Meals", (8, 15)),
    "chipotle": MerchantPattern("Chipotle", "Meals", (10, 18)),
    "panera": MerchantPattern("Panera Bread", "Meals", (8, 20)),
    "pizza": MerchantPattern("Pizza Place", "Meals", (12, 25)),
    "restaurant": MerchantPattern("Restaurant", "Meals", (15, 50)),
    "diner": MerchantPattern("Diner", "Meals", (8, 25)),
    "uber": MerchantPattern("Uber", "Travel", (8, 35)),
    "lyft": MerchantPattern("Lyft", "Travel", (8, 35)),
    "taxi": MerchantPattern("Taxi", "Travel", (10, 40)),
    "shell": MerchantPattern("Shell", "Travel", (25, 80)),
    "exxon": MerchantPattern("ExxonMobil", "Travel", (25, 80)),
    "chevron": MerchantPattern("Chevron", "Travel", (25, 80)),
    "bp": MerchantPattern("BP", "Travel", (25, 80)),
    "gas": MerchantPattern("Gas Station", "Travel", (30, 70)),
    "hotel": MerchantPattern("Hotel", "Travel", (80, 300)),
    "motel": MerchantPattern("Motel", "Travel", (50, 150)),
    "marriott": MerchantPattern("Marriott", "Travel", (100, 400)),
    "hilton": MerchantPattern("Hilton", "Travel", (100, 400)),
    "delta": MerchantPattern("Delta Air Lines", "Travel", (200, 800)),
    "american": MerchantPattern("American Airlines", "Travel", (200, 800)),
    "southwest": MerchantPattern("Southwest Airlines", "Travel", (150, 600)),
    "united": MerchantPattern("United Airlines", "Travel", (200, 800)),
    "parking": MerchantPattern("Parking", "Travel", (5, 30)),
    "office": MerchantPattern("Office Depot", "Supplies", (15, 100)),
    "staples": MerchantPattern("Staples", "Supplies", (15, 100)),
    "depot": MerchantPattern("Office Depot", "Supplies", (15, 100)),
    "amazon": MerchantPattern("Amazon", "Supplies", (10, 200)),
    "best buy": MerchantPattern("Best Buy", "Supplies", (20, 500)),
    "costco": MerchantPattern("Costco", "Supplies", (50, 300)),
    "walmart": MerchantPattern("Walmart", "Supplies", (10, 150)),
    "target": MerchantPattern("Target", "Supplies", (15, 200)),
    "fedex": MerchantPattern("FedEx Office", "Supplies", (5, 50)),
    "ups": MerchantPattern("UPS Store", "Supplies", (5, 50)),
    "print": MerchantPattern("Print Shop", "Supplies", (5, 40)),
}

GENERIC_AMOUNT_RANGE: tuple[float, float] = (5, 50)


def match_merchant(text: str | None) -> MerchantPattern | None:
    """Return the first merchant pattern whose keyword occurs in ``text``."""
    if not text:
        return None
    lowered = text.lower()
    for keyword, pattern in MERCHANT_PATTERNS.items():
        if keyword in lowered:
            return pattern
    return None


def draw_amount(amount_range: tuple[float, float], rng: random.Random) -> float:
    """Draw a two-decimal amount inside the inclusive range."""
    low, high = amount_range
    return min(round(rng.uniform(low, high), 2), float(high))


def filename_seed(filename: str) -> int:
    """Stable seed derived from a filename (independent of PYTHONHASHSEED)."""
    return int.from_bytes(hashlib.sha256(filename.encode("utf-8")).digest()[:8], "big")


class HeuristicProvider(ExtractionProvider):
    """Keyword table lookup on the filename."""

    def __init__(
        self,
        settings: Settings,
        today: Callable[[], date] = date.today,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize heuristic provider.

        Args:
            settings: Application settings
            today: Source of the reference day for date estimation
            rng: Random source; ignored when seeding from the filename is enabled
        """
        super().__init__(settings)
        self._today = today
        self._rng = rng or random.Random()

    @property
    def provider_name(self) -> str:
        return "heuristic"

    def is_available(self) -> bool:
        return True

    def rng_for(self, filename: str) -> random.Random:
        if self.settings.heuristic_seed_from_filename:
            return random.Random(filename_seed(filename))
        return self._rng

    async def extract(self, file_url: str, filename: str) -> ProviderResult:
        return ProviderResult(
            data=self.estimate(filename or file_url or ""),
            success=True,
            provider=self.provider_name,
        )

    def estimate(self, filename: str) -> RawReceiptData:
        """Estimate receipt fields from a filename alone."""
        rng = self.rng_for(filename)
        pattern = match_merchant(filename)
        amount_range = pattern.amount_range if pattern else GENERIC_AMOUNT_RANGE
        assessment = reasonable_date(filename, today=self._today(), rng=rng)

        logger.debug(
            f"Heuristic estimate for {filename!r}: "
            f"{pattern.name if pattern else 'no merchant match'}, date {assessment.confidence}"
        )
        return RawReceiptData(
            merchant_name=pattern.name if pattern else UNKNOWN_MERCHANT,
            amount=f"{draw_amount(amount_range, rng):.2f}",
            currency="USD",
            receipt_date=assessment.value.isoformat(),
            category=pattern.category if pattern else "Other",
            confidence=assessment.confidence,
            extraction_notes="Estimated from filename; please review",
        )
