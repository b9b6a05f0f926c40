"""Abstract base class for analysis providers.

Enables switching between different vision-model backends while the request
queue and response normalizer stay unchanged.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

A provider performs exactly one attempt of the upstream call. It never parses
the generated text; that belongs to the response normalizer.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from scanner.shared.config import GenerationConfig, Settings


class AnalysisResponse(BaseModel):
    """Raw result of one successful analysis call.

    Attributes:
        text: Generated text, unparsed
        usage: Opaque token metering metadata from the response envelope
        provider: Name of provider that performed the call
    """

    text: str
    usage: dict[str, Any] | None = None
    provider: str


class AnalysisProvider(ABC):
    """Abstract base class for structured-extraction providers.

    Error contract for :meth:`call`:
    - RateLimitError when the upstream rate-limits
    - AnalysisTimeoutError when the call exceeds its time limit
    - UpstreamAPIError for any other failure (server message preserved)
    - ConfigurationError when the provider is not configured
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def call(
        self,
        image: bytes,
        prompt: str,
        generation_config: GenerationConfig | None = None,
        mime_type: str = "image/jpeg",
    ) -> AnalysisResponse:
        """Perform one attempt of the structured-extraction call.

        Args:
            image: Raw image bytes
            prompt: Opaque prompt text sent alongside the image
            generation_config: Generation parameters (settings defaults if None)
            mime_type: Declared MIME type of the image

        Returns:
            AnalysisResponse with the raw generated text
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured (e.g. API key present).

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'gemini')
        """
        pass

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None
