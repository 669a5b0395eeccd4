"""Factory for creating the extraction engine based on configuration.

Implements Factory Pattern for vision provider selection with a registry
for extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging
from collections.abc import Callable

from receipt_pipeline.extraction.base import ExtractionProvider
from receipt_pipeline.extraction.documents import DocumentFetcher
from receipt_pipeline.extraction.engine import ExtractionEngine
from receipt_pipeline.extraction.heuristic_provider import HeuristicProvider
from receipt_pipeline.extraction.vision_provider import OpenAIVisionProvider
from receipt_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)

VisionProviderFactory = Callable[[Settings, DocumentFetcher], ExtractionProvider]


class ProviderRegistry:
    """Registry of available vision providers.

    Maintains a mapping of provider names to factories taking the settings
    and the shared document fetcher.
    """

    _providers: dict[str, VisionProviderFactory] = {
        "openai": OpenAIVisionProvider,
    }

    @classmethod
    def register(cls, name: str, factory: VisionProviderFactory) -> None:
        """Register a new vision provider.

        Args:
            name: Provider identifier (must match Settings.vision_provider)
            factory: Callable building the provider
        """
        cls._providers[name] = factory
        logger.info(f"Registered vision provider: {name}")

    @classmethod
    def get_provider_factory(cls, name: str) -> VisionProviderFactory:
        """Get provider factory by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(
                f"Unknown vision provider: '{name}'. " f"Available providers: {available}"
            )
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_extraction_engine(settings: Settings) -> ExtractionEngine:
    """Build the extraction engine described by ``settings``.

    The vision provider and the engine share one document fetcher, and
    therefore one document cache.

    Args:
        settings: Application settings with vision_provider field

    Returns:
        Configured ExtractionEngine

    Raises:
        ValueError: If configured vision provider is unknown

    Example:
        >>> engine = create_extraction_engine(Settings())
        >>> result = await engine.extract("https://cdn.example.com/r.jpg", "r.jpg")
    """
    fetcher = DocumentFetcher(settings)
    factory = ProviderRegistry.get_provider_factory(settings.vision_provider)
    vision = factory(settings, fetcher)

    if not vision.is_available():
        logger.warning(
            f"Vision provider '{settings.vision_provider}' is not fully available. "
            "All receipts will use heuristic extraction until it is configured."
        )

    logger.info(f"Created extraction engine with vision provider: {settings.vision_provider}")
    return ExtractionEngine(
        settings=settings,
        vision=vision,
        heuristic=HeuristicProvider(settings),
        fetcher=fetcher,
    )
