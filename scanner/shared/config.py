"""Shared configuration management for the invoice scanner.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GenerationConfig(BaseModel):
    """Generation parameters sent with every analysis request.

    Serializes with the upstream camelCase keys (``topK``, ``topP``,
    ``maxOutputTokens``) when dumped with ``by_alias=True``.
    """

    model_config = ConfigDict(populate_by_name=True)

    temperature: float = Field(default=0.1, ge=0, le=2)
    top_k: int = Field(default=32, ge=1, alias="topK")
    top_p: float = Field(default=0.95, gt=0, le=1, alias="topP")
    max_output_tokens: int = Field(default=2048, ge=1, alias="maxOutputTokens")


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_GEMINI_MODEL=gemini-2.0-flash
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    service_name: str = Field(
        default="invoice-scanner",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Analysis provider configuration
    analysis_provider: Literal["gemini"] = Field(
        default="gemini",
        description="Vision model provider used for structured field extraction",
    )
    gemini_api_key: str = Field(
        default="",
        description="Gemini API key (use env var APP_GEMINI_API_KEY)",
    )
    gemini_model: str = Field(
        default="gemini-2.0-flash-lite",
        description="Gemini model identifier",
    )
    gemini_api_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/models",
        description="Base URL of the generateContent endpoint",
    )

    # Generation defaults
    temperature: float = Field(default=0.1, ge=0, le=2)
    top_k: int = Field(default=32, ge=1)
    top_p: float = Field(default=0.95, gt=0, le=1)
    max_output_tokens: int = Field(
        default=2048,
        ge=1,
        description="Output token ceiling; long line-item lists may be truncated at this limit",
    )

    # Per-call timeout handling
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Wall-clock limit for a single upstream call",
    )
    timeout_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per call when the upstream call times out",
    )
    timeout_retry_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Initial delay between timeout retries",
    )

    # Request queue
    queue_min_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum spacing between two dispatched requests",
    )
    queue_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempt ceiling for rate-limited requests",
    )
    queue_backoff_base_seconds: float = Field(default=1.0, ge=0)
    queue_backoff_cap_seconds: float = Field(default=16.0, ge=0)
    queue_max_jitter_seconds: float = Field(default=1.0, ge=0)

    # Supplier matching (empirically tuned, calibrate against a labelled corpus)
    fuzzy_match_threshold: float = Field(
        default=0.85,
        ge=0,
        le=1,
        description="Similarity above which a priority supplier fuzzy-matches",
    )
    fallback_match_threshold: float = Field(
        default=0.80,
        ge=0,
        le=1,
        description="Similarity used when re-checking 'other' suppliers",
    )
    fallback_min_confidence: int = Field(default=80, ge=0, le=100)
    other_min_confidence: int = Field(default=75, ge=0, le=100)
    max_line_items: int = Field(default=100, ge=0)

    # Spreadsheet webhooks
    invoice_webhook_url: str = Field(
        default="",
        description="Webhook receiving the ledger summary (empty disables submission)",
    )
    products_webhook_url: str = Field(
        default="",
        description="Webhook receiving the line-item breakdown (empty disables it)",
    )
    sink_max_attempts: int = Field(default=3, ge=1)
    sink_retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay unit; attempt N waits N times this value",
    )
    sink_timeout_seconds: float = Field(default=30.0, gt=0)

    @property
    def generation_config(self) -> GenerationConfig:
        """Generation parameters assembled from the flat settings."""
        return GenerationConfig(
            temperature=self.temperature,
            top_k=self.top_k,
            top_p=self.top_p,
            max_output_tokens=self.max_output_tokens,
        )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
