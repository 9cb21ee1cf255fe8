"""Configuration management with pydantic-settings for the sub-agent sync core.

Loads from (in order of precedence):
1. Environment variables (highest priority)
2. .env file in project root
3. Default values (lowest priority)

SecretStr is used for the API token and webhook secret so they never appear in
repr() output or logs.

References:
- Pydantic Settings: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

import logging
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("subagents.config")

__all__ = [
    "DEFAULT_API_URL",
    "SyncConfig",
    "get_config",
    "reset_config",
]

DEFAULT_API_URL = "https://api.github.com"


class SyncConfig(BaseSettings):
    """Configuration for GitHub import, sync, webhooks and quota management.

    Attributes:
        github_token: Personal access token used for API calls (optional,
            unauthenticated calls get the anonymous quota)
        github_api_url: REST API base URL
        github_webhook_secret: Shared secret for HMAC-SHA256 webhook signatures
        github_request_timeout: Per-request timeout in seconds
        github_max_retries: Retries for server errors and timeouts
        github_per_page: Default page size for list endpoints
        quota_warning_threshold: Remaining/limit ratio that raises a warning alert
        quota_critical_threshold: Remaining/limit ratio that raises a critical alert
        quota_persist_interval: Seconds between quota snapshot writes
        throttle_request_delay: Spacing between queued requests in seconds
        throttle_max_wait: Upper bound for a single quota wait in the throttler
        sync_batch_size: Repositories synced concurrently per batch
        sync_batch_delay: Pause between sync batches in seconds
        sync_stale_max_age_hours: Age after which a binding counts as stale
        sync_interval: Seconds between scheduled sync cycles
        sync_job_retention_days: Completed and failed sync jobs older than this are purged
        sync_max_retries: Attempts per scheduled sync job
        sync_retry_delay: Base delay between scheduled sync attempts
        webhook_dedup_window: Seconds during which repeat deliveries are dropped
        webhook_url: Public URL registered as the webhook target
        webhook_retention_days: Webhook delivery records older than this are purged
        import_batch_size: Repositories imported concurrently per batch
        import_batch_delay: Pause between import batches in seconds
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format (json for production, text for development)
        pushgateway_url: Optional Prometheus pushgateway for scheduler metrics
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # GitHub API
    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub personal access token. Empty = anonymous quota.",
    )
    github_api_url: str = Field(
        default=DEFAULT_API_URL,
        description="GitHub REST API base URL (GitHub Enterprise: https://host/api/v3)",
    )
    github_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret for webhook signatures. Empty = signatures not checked.",
    )
    github_request_timeout: float = Field(
        default=10.0,
        ge=1.0,
        le=120.0,
        description="Per-request timeout in seconds",
    )
    github_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for 5xx responses and timeouts",
    )
    github_per_page: int = Field(
        default=30,
        ge=1,
        le=100,
        description="Default page size for list endpoints",
    )

    # Quota management
    quota_warning_threshold: float = Field(
        default=0.10,
        gt=0.0,
        lt=1.0,
        description="Remaining/limit ratio at or below which a warning alert fires",
    )
    quota_critical_threshold: float = Field(
        default=0.05,
        gt=0.0,
        lt=1.0,
        description="Remaining/limit ratio at or below which a critical alert fires",
    )
    quota_persist_interval: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Seconds between quota snapshot writes",
    )

    # Throttling
    throttle_request_delay: float = Field(
        default=0.1,
        ge=0.0,
        le=10.0,
        description="Delay between queued requests in seconds",
    )
    throttle_max_wait: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Maximum single wait for quota reset in seconds",
    )

    # Sync engine
    sync_batch_size: int = Field(default=5, ge=1, le=50)
    sync_batch_delay: float = Field(default=2.0, ge=0.0, le=60.0)
    sync_stale_max_age_hours: int = Field(default=24, ge=1, le=720)
    sync_interval: int = Field(
        default=3600,
        ge=60,
        le=86400,
        description="Seconds between scheduled sync cycles",
    )
    sync_job_retention_days: int = Field(default=30, ge=1, le=365)
    sync_max_retries: int = Field(default=3, ge=1, le=10)
    sync_retry_delay: float = Field(default=5.0, ge=0.0, le=300.0)

    # Scheduler cadence (seconds)
    scheduler_stale_check_interval: int = Field(default=7200, ge=60, le=86400)
    scheduler_quota_check_interval: int = Field(default=900, ge=10, le=86400)
    scheduler_cleanup_interval: int = Field(default=86400, ge=60, le=604800)

    # Webhooks
    webhook_dedup_window: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Seconds during which repeat (repository, event) deliveries are dropped",
    )
    webhook_url: str = Field(
        default="",
        description="Public URL registered as the webhook target",
    )
    webhook_retention_days: int = Field(default=7, ge=1, le=365)

    # Importer
    import_batch_size: int = Field(default=5, ge=1, le=50)
    import_batch_delay: float = Field(default=1.0, ge=0.0, le=60.0)

    # Observability
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    pushgateway_url: str = Field(default="")

    @field_validator("github_api_url", "webhook_url", "pushgateway_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalize URLs so path joins never produce '//'."""
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept standard logging level names only."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in {"json", "text"}:
            raise ValueError(f"Invalid log format: {v} (expected json or text)")
        return fmt

    @model_validator(mode="after")
    def validate_quota_thresholds(self) -> "SyncConfig":
        """Critical threshold must sit below the warning threshold."""
        if self.quota_critical_threshold >= self.quota_warning_threshold:
            raise ValueError(
                "quota_critical_threshold must be lower than quota_warning_threshold "
                f"({self.quota_critical_threshold} >= {self.quota_warning_threshold})"
            )
        return self

    def get_github_token(self) -> str | None:
        """Return the API token, or None for anonymous access."""
        token = self.github_token.get_secret_value()
        return token or None

    def get_webhook_secret(self) -> str | None:
        """Return the webhook secret, or None when signatures are not checked."""
        secret = self.github_webhook_secret.get_secret_value()
        return secret or None


@lru_cache(maxsize=1)
def get_config() -> SyncConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return the
    cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    config = SyncConfig()
    logger.debug(
        "config_loaded",
        extra={
            "api_url": config.github_api_url,
            "authenticated": config.get_github_token() is not None,
            "webhook_signatures": config.get_webhook_secret() is not None,
        },
    )
    return config


def reset_config() -> None:
    """Reset configuration singleton for testing.

    Clears the cached configuration so tests can exercise different
    environment variable setups.
    """
    get_config.cache_clear()
