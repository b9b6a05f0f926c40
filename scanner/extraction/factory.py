"""Factory for creating analysis providers and the analysis service.

Implements Factory Pattern for provider selection with registry pattern for extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22

``create_analysis_service`` is the composition root: it builds the single
request queue and injects it into the service.
"""

import logging

from scanner.extraction.base import AnalysisProvider
from scanner.extraction.gemini_client import GeminiAnalysisClient
from scanner.extraction.normalizer import ResponseNormalizer
from scanner.extraction.service import InvoiceAnalysisService
from scanner.queue.request_queue import RequestQueue
from scanner.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available analysis providers.

    Maintains a mapping of provider names to their implementation classes.
    Supports runtime registration of new providers.
    """

    _providers: dict[str, type[AnalysisProvider]] = {
        "gemini": GeminiAnalysisClient,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[AnalysisProvider]) -> None:
        """Register a new provider.

        Args:
            name: Provider identifier (must match Settings.analysis_provider)
            provider_class: Provider class implementing AnalysisProvider interface
        """
        cls._providers[name] = provider_class
        logger.info(f"Registered analysis provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[AnalysisProvider]:
        """Get provider class by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(
                f"Unknown analysis provider: '{name}'. " f"Available providers: {available}"
            )
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        """List all registered provider names."""
        return list(cls._providers.keys())


def create_analysis_provider(settings: Settings) -> AnalysisProvider:
    """Create the provider named by ``settings.analysis_provider``.

    Logs a warning if the provider is not available (e.g., missing API key).

    Raises:
        ValueError: If configured provider is unknown
    """
    provider_name = settings.analysis_provider
    provider_class = ProviderRegistry.get_provider_class(provider_name)
    provider = provider_class(settings)

    if not provider.is_available():
        logger.warning(
            f"Analysis provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., API keys)."
        )

    logger.info(f"Created analysis provider: {provider_name}")
    return provider


def create_request_queue(settings: Settings) -> RequestQueue:
    """Build the request queue from settings."""
    return RequestQueue(
        min_delay=settings.queue_min_delay_seconds,
        max_attempts=settings.queue_max_attempts,
        backoff_base=settings.queue_backoff_base_seconds,
        backoff_cap=settings.queue_backoff_cap_seconds,
        max_jitter=settings.queue_max_jitter_seconds,
    )


def create_analysis_service(
    settings: Settings,
    queue: RequestQueue | None = None,
    provider: AnalysisProvider | None = None,
) -> InvoiceAnalysisService:
    """Wire provider, queue and normalizer into an analysis service.

    Args:
        settings: Application settings
        queue: Shared request queue (a new one is created if omitted)
        provider: Analysis provider (created from settings if omitted)

    Returns:
        Ready-to-use InvoiceAnalysisService
    """
    return InvoiceAnalysisService(
        settings=settings,
        provider=provider or create_analysis_provider(settings),
        queue=queue or create_request_queue(settings),
        normalizer=ResponseNormalizer.from_settings(settings),
    )
