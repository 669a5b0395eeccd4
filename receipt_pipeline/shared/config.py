"""Shared configuration management for the receipt pipeline.

Pydantic Settings reference:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
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

    # Service configuration
    service_name: str = Field(
        default="receipt-extraction-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Vision extraction configuration
    vision_provider: str = Field(
        default="openai",
        description="Registered vision provider used as the primary extraction strategy",
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="Vision-capable OpenAI model",
    )
    openai_max_tokens: int = Field(
        default=700,
        description="Response token budget for the vision call",
    )
    vision_timeout_seconds: float = Field(
        default=50.0,
        gt=0,
        description="Hard wall-clock limit for the vision strategy before falling back",
    )

    # Document fetching
    document_fetch_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Network timeout when downloading a receipt document",
    )
    document_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a fetched document stays in the in-process cache",
    )
    document_cache_max_entries: int = Field(
        default=100,
        ge=1,
        description="Cache size that triggers eviction of expired entries",
    )

    # Business rules
    duplicate_window_days: int = Field(
        default=90,
        ge=1,
        description="Look-back window for duplicate receipt detection",
    )
    review_threshold: float = Field(
        default=0.72,
        ge=0,
        le=1,
        description="Receipts scoring below this confidence are flagged for review",
    )
    heuristic_seed_from_filename: bool = Field(
        default=False,
        description="Seed fallback amounts from the filename so repeated runs agree",
    )
    batch_max_files: int = Field(
        default=10,
        ge=1,
        description="Maximum documents accepted in one batch session",
    )

    # Record store
    store_backend: Literal["redis", "memory"] = Field(
        default="redis",
        description="Record store: redis (durable) or memory (development only)",
    )
    status_ttl_seconds: int = Field(
        default=604800,
        description="TTL applied to batch-session records in Redis",
    )

    # Queue configuration (arq / Redis)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the task queue and record store",
    )
    queue_max_jobs: int = Field(
        default=10,
        description="Maximum concurrent jobs per worker",
    )
    queue_job_timeout: int = Field(
        default=60,
        description="Worker invocation ceiling in seconds",
    )
    queue_signing_secret: str = Field(
        default="change-me",
        description="HMAC key used to sign queued job payloads (use APP_QUEUE_SIGNING_SECRET)",
    )
    payment_webhook_secret: str = Field(
        default="change-me",
        description="HMAC key the payment collaborator signs notifications with "
        "(use APP_PAYMENT_WEBHOOK_SECRET)",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
