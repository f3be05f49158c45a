"""Shared configuration management for the invoice pipeline.

Based on Pydantic Settings v2 documentation:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_TEMPLATE_MATCH_THRESHOLD=85
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
        description="Deployment environment (also part of blob storage keys)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    service_name: str = Field(
        default="invoice-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Persistence
    database_url: str = Field(
        default="sqlite:///./invoices.db",
        description="SQLAlchemy database URL",
    )

    # Queue (arq / Redis)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used by the arq job queue",
    )
    queue_name: str = Field(
        default="invoice-processing",
        description="arq queue name for invoice jobs",
    )
    queue_max_jobs: int = Field(default=5, ge=1, description="Concurrent jobs per worker")
    queue_job_timeout: int = Field(
        default=300,
        ge=1,
        description="Overall job timeout in seconds",
    )
    metrics_port: int = Field(
        default=0,
        ge=0,
        description="Port for the worker Prometheus endpoint (0 disables it)",
    )

    # AI fallback extraction
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="AI provider: openai (cloud API), ollama (self-hosted LLM)",
    )
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model identifier")
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for extraction",
    )
    ai_request_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single AI call in seconds (distinct from job timeout)",
    )
    ai_max_attempts: int = Field(default=3, ge=1, description="AI attempts per processing run")
    ai_retry_initial_wait: float = Field(
        default=2.0,
        ge=0,
        description="Initial backoff between AI attempts in seconds",
    )
    ai_retry_max_wait: float = Field(
        default=30.0,
        ge=0,
        description="Maximum backoff between AI attempts in seconds",
    )

    # Template matching and learning
    template_match_threshold: float = Field(
        default=80.0,
        ge=0,
        le=100,
        description="Minimum fingerprint similarity (0-100) to skip the AI fallback",
    )
    template_min_confidence: float = Field(
        default=70.0,
        ge=0,
        le=100,
        description="Minimum template confidence once the template has enough samples",
    )
    template_min_samples: int = Field(
        default=3,
        ge=1,
        description="Uses required before a template confidence score is trusted",
    )
    template_retire_min_uses: int = Field(
        default=5,
        ge=1,
        description="Uses required before a template can be deactivated",
    )
    template_retire_floor: float = Field(
        default=20.0,
        ge=0,
        le=100,
        description="Confidence below which a well-used template is deactivated",
    )
    supplier_name_similarity: float = Field(
        default=0.85,
        ge=0,
        le=1,
        description="Minimum normalized supplier name similarity for candidate templates",
    )
    zone_min_coverage: float = Field(
        default=0.6,
        ge=0,
        le=1,
        description="Share of table rows that must parse for zone extraction to be accepted",
    )

    # Product matching
    product_match_min_confidence: int = Field(
        default=60,
        ge=0,
        le=100,
        description="Minimum fuzzy confidence for linking an invoice line to a catalog product",
    )
    product_history_similarity: float = Field(
        default=0.8,
        ge=0,
        le=1,
        description="Minimum description similarity for reusing a confirmed match",
    )

    # Reconciliation
    line_tolerance: Decimal = Field(
        default=Decimal("0.02"),
        description="Relative tolerance between quantity x unit price and line total",
    )
    line_absolute_tolerance: Decimal = Field(
        default=Decimal("0.02"),
        description="Absolute tolerance (currency units) for line totals",
    )
    header_tolerance_ratio: Decimal = Field(
        default=Decimal("0.01"),
        description="Header net total tolerance as a share of the declared net total",
    )
    header_tolerance_min: Decimal = Field(
        default=Decimal("2.00"),
        description="Minimum header net total tolerance (currency units)",
    )
    header_small_discrepancy: Decimal = Field(
        default=Decimal("0.05"),
        description="Discrepancy below tolerance that is still reported to reviewers",
    )
    vat_tolerance: Decimal = Field(
        default=Decimal("0.02"),
        description="Tolerance for net + tax = gross",
    )

    # Retry worker
    retry_max_attempts: int = Field(
        default=3,
        ge=0,
        description="Automatic re-submissions per invoice for transient failures",
    )
    retry_cooldown_seconds: int = Field(
        default=600,
        ge=0,
        description="Cool-down after a transient failure before re-submission",
    )
    rate_limit_cooldown_seconds: int = Field(
        default=1800,
        ge=0,
        description="Cool-down after a rate-limit failure before re-submission",
    )
    retry_sweep_interval_minutes: int = Field(default=5, ge=1, le=59)
    retry_batch_size: int = Field(default=50, ge=1)
    manual_retry_delay_seconds: int = Field(
        default=600,
        ge=0,
        description="Delay applied to user-requested retries",
    )

    # Recovery service
    recovery_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Age after which pending/processing invoices count as stuck",
    )
    recovery_batch_size: int = Field(default=50, ge=1)
    recovery_interval_minutes: int = Field(default=5, ge=1, le=59)

    # Storage configuration
    storage_backend: Literal["local", "minio"] = Field(
        default="local",
        description="Blob store backend for uploaded invoice files",
    )
    storage_local_root: str = Field(
        default="./uploads",
        description="Root directory for the local blob store",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket name for invoice files",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Maximum accepted upload size",
    )
    allowed_content_types: list[str] = Field(
        default=[
            "application/pdf",
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/webp",
        ],
        description="Accepted upload MIME types",
    )

    # Catalog subsystem
    catalog_base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the catalog service that owns products/recipes/menu items",
    )
    catalog_timeout: float = Field(default=10.0, gt=0)


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
