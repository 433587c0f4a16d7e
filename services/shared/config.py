"""Shared configuration management for the bill intake service.

Settings are read from APP_-prefixed environment variables or a .env file:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_AUTOPILOT_DEFAULT=true
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
        default="utility-bill-intake",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Review gate thresholds
    critical_threshold: float = Field(
        default=0.995,
        ge=0,
        le=1,
        description="Minimum confidence for critical fields (totals, due date, identifiers)",
    )
    important_threshold: float = Field(
        default=0.98,
        ge=0,
        le=1,
        description="Minimum confidence for important fields (usage, rates); validation only",
    )
    overall_threshold: float = Field(
        default=0.90,
        ge=0,
        le=1,
        description="Minimum overall document confidence for auto-approval",
    )
    validation_overall_threshold: float = Field(
        default=0.99,
        ge=0,
        le=1,
        description="Overall confidence below which the validator downgrades to 'warning'",
    )
    autopilot_default: bool = Field(
        default=False,
        description="Autopilot value used when an ingest request does not specify one",
    )

    # Identifier conventions and reconciliation
    mprn_length: int = Field(default=11, description="Digits in an electricity MPRN")
    mprn_prefix: str = Field(default="10", description="Required MPRN prefix")
    gprn_length: int = Field(default=7, description="Digits in a gas GPRN")
    arithmetic_tolerance: float = Field(
        default=0.01,
        description="Allowed difference (EUR) between itemized charges and the stated total",
    )

    # Extraction oracle
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Vision extraction provider: openai (cloud API), ollama (self-hosted)",
    )
    openai_extraction_model: str = Field(
        default="gpt-4o",
        description="Vision-capable OpenAI model used for bill extraction",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5vl:7b",
        description="Vision-capable Ollama model used for extraction",
    )
    extraction_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound on a single extraction call",
    )

    # Validation oracle
    validation_provider: Literal["rules", "openai"] = Field(
        default="rules",
        description="Validator: rules (deterministic engine), openai (rules + LLM review)",
    )
    openai_validation_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used by the validation oracle",
    )
    validation_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound on a single validation call",
    )

    # Template learning
    openai_learning_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used to synthesize supplier templates",
    )
    learning_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound on a single template synthesis call",
    )
    learn_on_approval: bool = Field(
        default=True,
        description="Refresh the supplier template when an approval carries corrections",
    )

    # Downstream billing API
    billing_api_url: str = Field(
        default="https://api.onebill.ie/api/v2/bills",
        description="Billing API endpoint receiving approved bills",
    )
    billing_api_key: str = Field(
        default="",
        description="Billing API bearer token (use env var APP_BILLING_API_KEY)",
    )
    billing_timeout_seconds: float = Field(
        default=30.0,
        description="Upper bound on a single billing API call",
    )

    # Webhooks
    webhook_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for each webhook delivery",
    )

    # Storage configuration (S3-compatible object storage)
    storage_enabled: bool = Field(
        default=False,
        description="Store uploaded bills in S3-compatible storage (MinIO)",
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
        default="bills",
        description="Bucket holding uploaded bill images",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    storage_url_expiry_seconds: int = Field(
        default=3600,
        description="Lifetime of presigned URLs handed to the extraction oracle",
    )

    # Persistence
    repository_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Persistence backend for documents, corrections and templates",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (repository backend and job queue)",
    )

    # Background queue
    queue_enabled: bool = Field(
        default=False,
        description="Enable batch ingestion through the arq worker",
    )
    queue_max_jobs: int = Field(default=10, description="Concurrent jobs per worker")
    queue_job_timeout: int = Field(default=300, description="Job timeout in seconds")


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
