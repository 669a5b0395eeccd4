"""Two-tier extraction engine.

Strategies are tried in strict priority order: the vision provider, raced
against a wall-clock timeout, then the heuristic provider, which cannot
fail. Whatever wins is normalized into a complete ``ExtractionResult``, so
callers never see a partial record or a vision-service error.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import date

from receipt_pipeline.api import metrics
from receipt_pipeline.extraction.base import ExtractionProvider, ProviderResult
from receipt_pipeline.extraction.documents import DocumentFetcher
from receipt_pipeline.extraction.heuristic_provider import HeuristicProvider, match_merchant
from receipt_pipeline.extraction.schema import (
    CATEGORIES,
    CONFIDENCE_LEVELS,
    ExtractionResult,
    RawReceiptData,
    SourceStrategy,
)
from receipt_pipeline.normalization.currency import normalize_currency
from receipt_pipeline.normalization.dates import validate_and_fix_date
from receipt_pipeline.normalization.merchant import normalize_merchant
from receipt_pipeline.shared.config import Settings
from receipt_pipeline.shared.errors import DocumentFetchError

logger = logging.getLogger(__name__)

VISION_DEFAULT_NOTE = "Extracted using AI"

_LEVEL_RANK = {"low": 0, "medium": 1, "high": 2}


def lower_confidence(first: str, second: str) -> str:
    """Return the less trustworthy of two confidence levels."""
    return first if _LEVEL_RANK[first] <= _LEVEL_RANK[second] else second


class ExtractionEngine:
    """Runs vision then heuristic extraction and normalizes the winner."""

    def __init__(
        self,
        settings: Settings,
        vision: ExtractionProvider | None,
        heuristic: HeuristicProvider,
        fetcher: DocumentFetcher | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        """Initialize engine.

        Args:
            settings: Application settings (vision timeout)
            vision: Primary strategy, or None to always use heuristics
            heuristic: Fallback strategy
            fetcher: Document fetcher used when a caller requires the document
            today: Source of the reference day for date validation
        """
        self.settings = settings
        self.vision = vision
        self.heuristic = heuristic
        self.fetcher = fetcher or DocumentFetcher(settings)
        self._today = today

    async def extract(
        self,
        file_url: str,
        filename: str,
        require_document: bool = False,
    ) -> ExtractionResult:
        """Extract and normalize receipt data.

        Args:
            file_url: Location of the uploaded document
            filename: Original filename
            require_document: Fetch the document first and let a fetch failure
                propagate instead of falling back

        Returns:
            Fully populated ExtractionResult

        Raises:
            DocumentFetchError: Only when ``require_document`` is set and the fetch fails
        """
        start = time.perf_counter()
        vision_timeout = self.settings.vision_timeout_seconds

        if require_document:
            await self._prefetch(file_url)
            # Fetch and vision together stay within vision_timeout_seconds
            vision_timeout -= time.perf_counter() - start

        attempt = await self._try_vision(file_url, filename, vision_timeout)
        strategy: SourceStrategy = "vision"
        if attempt is None or attempt.data is None:
            attempt = await self.heuristic.extract(file_url, filename)
            strategy = "heuristic"

        raw = attempt.data or self.heuristic.estimate(filename)
        result = self.normalize(raw, strategy, filename)

        metrics.extraction_strategy_total.labels(strategy=strategy).inc()
        metrics.extraction_duration_seconds.observe(time.perf_counter() - start)
        logger.info(
            f"Extracted {filename or file_url} via {strategy}: "
            f"{result.merchant_name} {result.amount} {result.currency} "
            f"({result.confidence_level})"
        )
        return result

    async def _prefetch(self, file_url: str) -> None:
        """Fetch the document into the shared cache within the fetch timeout.

        The timeout bounds the whole fetch, retries included.
        """
        timeout = self.settings.document_fetch_timeout_seconds
        try:
            await asyncio.wait_for(self.fetcher.fetch_data_url(file_url), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DocumentFetchError(
                f"Failed to fetch document: no response within {timeout}s"
            ) from e

    async def _try_vision(
        self, file_url: str, filename: str, timeout: float
    ) -> ProviderResult | None:
        """Run the vision strategy under the timeout; None means fall back."""
        if self.vision is None or not self.vision.is_available():
            metrics.vision_failures_total.labels(reason="unavailable").inc()
            return None
        if timeout <= 0:
            metrics.vision_failures_total.labels(reason="timeout").inc()
            return None

        try:
            result = await asyncio.wait_for(
                self.vision.extract(file_url, filename),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Vision extraction timed out after {timeout:.1f}s "
                f"for {filename or file_url}, using heuristic fallback"
            )
            metrics.vision_failures_total.labels(reason="timeout").inc()
            return None
        except Exception as e:
            logger.warning(f"Vision provider raised for {filename or file_url}: {e}")
            metrics.vision_failures_total.labels(reason="error").inc()
            return None

        if not result.success:
            logger.warning(
                f"Vision extraction failed for {filename or file_url}: {result.error}, "
                "using heuristic fallback"
            )
            metrics.vision_failures_total.labels(reason="error").inc()
            return None
        return result

    def normalize(
        self, raw: RawReceiptData, strategy: SourceStrategy, filename: str
    ) -> ExtractionResult:
        """Turn raw strategy output into a complete, validated result."""
        merchant = normalize_merchant(raw.merchant_name)
        money = normalize_currency(raw.amount, raw.currency)
        assessment = validate_and_fix_date(
            raw.receipt_date,
            filename,
            today=self._today(),
            rng=self.heuristic.rng_for(filename),
        )

        category = (raw.category or "").strip().capitalize()
        if category not in CATEGORIES:
            category = self._infer_category(merchant, filename)

        level = (raw.confidence or "").strip().lower()
        if level not in CONFIDENCE_LEVELS:
            level = "medium"
        if assessment.confidence != "high":
            # The extracted date was replaced by an estimate
            level = lower_confidence(level, assessment.confidence)
        if money.amount <= 0:
            level = "low"

        notes = raw.extraction_notes
        if not notes and strategy == "vision":
            notes = VISION_DEFAULT_NOTE

        return ExtractionResult(
            merchant_name=merchant,
            amount=money.amount,
            currency=money.currency,
            receipt_date=assessment.value,
            category=category,
            confidence_level=level,
            source_strategy=strategy,
            notes=notes,
        )

    def _infer_category(self, merchant: str, filename: str) -> str:
        pattern = match_merchant(merchant) or match_merchant(filename)
        return pattern.category if pattern else "Other"
