"""Gemini-based analysis provider.

Sends the prompt and the image (inline base64 blob) to the
``generateContent`` endpoint and returns the generated text untouched.

Based on the Gemini REST API:
https://ai.google.dev/api/generate-content
"""

import asyncio
import base64
import logging
from typing import Any

import httpx

from scanner.extraction.base import AnalysisProvider, AnalysisResponse
from scanner.extraction.errors import (
    AnalysisTimeoutError,
    ConfigurationError,
    RateLimitError,
    UpstreamAPIError,
)
from scanner.shared.config import GenerationConfig, Settings

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = "RESOURCE_EXHAUSTED"


class GeminiAnalysisClient(AnalysisProvider):
    """Gemini vision provider over plain HTTPS.

    Args:
        settings: Application settings (API key, model, timeout)
        http_client: Optional pre-built client, mainly for tests
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings)
        self._timeout = settings.request_timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'gemini'
        """
        return "gemini"

    def is_available(self) -> bool:
        """Check if the Gemini API key is configured."""
        return bool(self.settings.gemini_api_key)

    @property
    def endpoint(self) -> str:
        """URL of the generateContent method for the configured model."""
        base = self.settings.gemini_api_url.rstrip("/")
        return f"{base}/{self.settings.gemini_model}:generateContent"

    def build_request(
        self,
        image: bytes,
        prompt: str,
        generation_config: GenerationConfig | None = None,
        mime_type: str = "image/jpeg",
    ) -> dict[str, Any]:
        """Build the request body: one content with text and inline image parts."""
        config = generation_config or self.settings.generation_config
        return {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": config.model_dump(by_alias=True),
        }

    async def call(
        self,
        image: bytes,
        prompt: str,
        generation_config: GenerationConfig | None = None,
        mime_type: str = "image/jpeg",
    ) -> AnalysisResponse:
        """Perform one generateContent call bound to the configured timeout.

        Raises:
            ConfigurationError: If no API key is configured
            AnalysisTimeoutError: If the call exceeds the timeout
            RateLimitError: On HTTP 429 / RESOURCE_EXHAUSTED
            UpstreamAPIError: On any other failure
        """
        if not self.is_available():
            raise ConfigurationError("Gemini API key not configured. Set APP_GEMINI_API_KEY.")

        body = self.build_request(image, prompt, generation_config, mime_type)
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    self.endpoint,
                    params={"key": self.settings.gemini_api_key},
                    json=body,
                ),
                timeout=self._timeout,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"Gemini call timed out after {self._timeout}s")
            raise AnalysisTimeoutError(self._timeout) from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(f"Network error calling Gemini: {e}") from e

        if response.status_code != 200:
            raise self._error_from_response(response)

        return self._parse_envelope(response)

    def _error_from_response(self, response: httpx.Response) -> Exception:
        status = response.status_code
        error: dict[str, Any] = {}
        try:
            payload = response.json()
            if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                error = payload["error"]
        except ValueError:
            pass

        message = error.get("message") or response.text or f"HTTP {status}"
        if status == 429 or error.get("status") == RATE_LIMIT_STATUS:
            logger.warning(f"Gemini rate limit hit (HTTP {status})")
            return RateLimitError(message, status_code=status)
        logger.error(f"Gemini API error (HTTP {status}): {message}")
        return UpstreamAPIError(message, status_code=status)

    def _parse_envelope(self, response: httpx.Response) -> AnalysisResponse:
        try:
            data = response.json()
            parts = data["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamAPIError(
                "Gemini response contained no generated content", status_code=response.status_code
            ) from e

        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        usage = data.get("usageMetadata")
        return AnalysisResponse(
            text=text,
            usage=usage if isinstance(usage, dict) else None,
            provider=self.provider_name,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
