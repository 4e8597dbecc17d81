"""Configuration management for the Koya webhook subsystem."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Koya configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the KOYA_ prefix. For example:
        KOYA_WEBHOOK_TIMEOUT_SECONDS=15
        KOYA_STORAGE_BACKEND=qdrant

    Security Notes:
        - In production (KOYA_ENV=production), KOYA_CRON_SECRET is required
          so the retry job endpoints cannot be triggered anonymously.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Outbound dispatch
    webhook_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=120,
        description="Hard timeout for each outbound webhook POST",
    )
    direct_webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for direct sends such as test events",
    )
    webhook_max_concurrent: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum concurrent outbound sends within one dispatch",
    )
    webhook_max_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Delivery attempts before a record is marked failed",
    )

    # Inbound failure recovery
    inbound_max_retries: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Processing retries before an inbound webhook is dead-lettered",
    )
    failed_webhook_retention_days: int = Field(
        default=7,
        ge=1,
        description="Days to keep successfully reprocessed inbound webhooks",
    )

    # Retry passes
    retry_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum outbound deliveries retried per pass",
    )
    inbound_retry_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum inbound failures retried per pass",
    )
    retry_claim_lease_seconds: int = Field(
        default=300,
        ge=1,
        description=(
            "How far a claimed record's next_retry_at is pushed forward so an "
            "overlapping pass does not pick it up again"
        ),
    )

    # Signatures
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        description="Replay window for timestamped signatures",
    )

    # Storage
    storage_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description="Repository backend for webhooks, deliveries and failures",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="koya",
        description="Prefix for Qdrant collection names",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Job endpoints
    cron_secret: str | None = Field(
        default=None,
        description="Bearer token required by the periodic job endpoints",
    )

    model_config = {
        "env_prefix": "KOYA_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Require a cron secret in production."""
        if self.env == "production" and not self.cron_secret:
            raise ValueError(
                "KOYA_CRON_SECRET must be set in production. "
                'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
            )
        if self.cron_secret is None:
            logger.debug("Job endpoints are unauthenticated (no cron secret configured)")
        return self

    @property
    def is_job_auth_enabled(self) -> bool:
        """Whether job endpoints require the bearer secret."""
        return bool(self.cron_secret)


# Global settings instance
settings = Settings()
