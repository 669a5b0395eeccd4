"""Abstract base class for extraction strategies.

Enables switching between extraction providers (vision models, filename
heuristics) while maintaining consistent interface and type safety.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from receipt_pipeline.extraction.schema import RawReceiptData
from receipt_pipeline.shared.config import Settings


class ProviderResult(BaseModel):
    """Result of a single strategy attempt.

    Attributes:
        data: Raw receipt fields or None if the attempt failed
        success: Whether the attempt succeeded
        error: Error message if the attempt failed
        provider: Name of provider that performed extraction (e.g., 'openai', 'heuristic')
    """

    data: RawReceiptData | None
    success: bool
    error: str | None = None
    provider: str


class ExtractionProvider(ABC):
    """Abstract base class for receipt extraction providers.

    Implementations never raise for extraction problems; they report them
    through ``ProviderResult.error`` so the engine can fall back.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def extract(self, file_url: str, filename: str) -> ProviderResult:
        """Extract raw receipt fields from a document.

        Args:
            file_url: Location of the uploaded document
            filename: Original filename as supplied by the uploader

        Returns:
            ProviderResult with raw fields or error
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured (API keys etc.)."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics."""
