"""Configuration management with pydantic-settings for the gitpulse pipeline.

- pydantic-settings for type-safe configuration
- Automatic .env file loading with proper precedence
- SecretStr for the GitHub App private key and webhook secret
- Frozen config (thread-safe, immutable after load)

References:
- Pydantic Settings: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .scheduler import GENERATE_REPORT

logger = logging.getLogger(__name__)

__all__ = [
    "MINUTE_MS",
    "HOUR_MS",
    "DAY_MS",
    "PolicyThresholds",
    "SyncConfig",
    "get_config",
    "reset_config",
]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


@dataclass(frozen=True)
class PolicyThresholds:
    """Immutable projection of the sync policy knobs.

    Kept separate from SyncConfig so the policy engine stays a pure
    function of (installation, trigger, now, thresholds).
    """

    manual_sync_cooldown_ms: int = 5 * MINUTE_MS
    stale_bypass_threshold_ms: int = 48 * HOUR_MS
    min_sync_budget: int = 100
    webhook_budget_reserve: int = 500
    sync_overlap_buffer_ms: int = HOUR_MS
    default_sync_window_days: int = 30

    @classmethod
    def from_config(cls, config: "SyncConfig") -> "PolicyThresholds":
        return cls(
            manual_sync_cooldown_ms=config.manual_sync_cooldown_ms,
            stale_bypass_threshold_ms=config.stale_bypass_threshold_ms,
            min_sync_budget=config.min_sync_budget,
            webhook_budget_reserve=config.webhook_budget_reserve,
            sync_overlap_buffer_ms=config.sync_overlap_buffer_ms,
            default_sync_window_days=config.default_sync_window_days,
        )


class SyncConfig(BaseSettings):
    """Pipeline configuration loaded from environment variables and .env.

    Attributes:
        github_api_url: GitHub REST API base URL
        github_app_id: GitHub App identifier (JWT issuer)
        github_app_private_key: PEM private key used to sign App JWTs
        github_webhook_secret: Shared secret for X-Hub-Signature-256
        manual_sync_cooldown_ms: Minimum gap between manual syncs
        stale_bypass_threshold_ms: Age after which the manual cooldown is bypassed
        min_sync_budget: Rate-limit budget required to start any sync
        webhook_budget_reserve: Extra budget cron syncs must leave for webhooks
        min_backfill_budget: Remaining-requests floor at which jobs pause
        default_blocked_delay_ms: Resume delay when the reset time is unknown
        blocked_resume_grace_ms: Lateness after which the sweep resumes a blocked job
        webhook_processing_timeout_ms: Age after which a processing envelope is re-dispatched
        store_backend: "memory" or "qdrant"
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format (json for production, text for development)
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

    # =========================================================================
    # GitHub App
    # =========================================================================

    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL (GitHub Enterprise uses https://host/api/v3)",
    )
    github_app_id: str = Field(
        default="",
        description="GitHub App ID used as the JWT issuer",
    )
    github_app_private_key: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub App private key (PEM). Literal \\n sequences are accepted.",
    )
    github_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Webhook secret used to verify X-Hub-Signature-256",
    )

    # =========================================================================
    # Sync policy
    # =========================================================================

    manual_sync_cooldown_ms: int = Field(default=5 * MINUTE_MS, ge=0)
    stale_bypass_threshold_ms: int = Field(default=48 * HOUR_MS, ge=0)
    min_sync_budget: int = Field(
        default=100,
        ge=0,
        description="Minimum X-RateLimit-Remaining required to start a sync",
    )
    webhook_budget_reserve: int = Field(
        default=500,
        ge=0,
        description="Headroom cron syncs leave for webhook-driven traffic",
    )
    sync_overlap_buffer_ms: int = Field(default=HOUR_MS, ge=0)
    default_sync_window_days: int = Field(default=30, ge=1, le=365)

    # =========================================================================
    # Jobs and sweeps
    # =========================================================================

    min_backfill_budget: int = Field(
        default=100,
        ge=0,
        description="Jobs pause once remaining requests drop to this floor",
    )
    default_blocked_delay_ms: int = Field(default=5 * MINUTE_MS, ge=1000)
    zombie_job_timeout_ms: int = Field(default=10 * MINUTE_MS, ge=MINUTE_MS)
    blocked_resume_grace_ms: int = Field(
        default=MINUTE_MS,
        ge=0,
        description="How long past blocked_until a blocked job waits before the sweep resumes it",
    )
    catch_up_threshold_ms: int = Field(default=24 * HOUR_MS, ge=HOUR_MS)
    webhook_max_retries: int = Field(default=5, ge=0, le=50)
    webhook_processing_timeout_ms: int = Field(default=10 * MINUTE_MS, ge=MINUTE_MS)
    downstream_handler: str = Field(
        default=GENERATE_REPORT,
        description="Scheduler handler invoked once per successfully finalized batch",
    )

    # =========================================================================
    # Storage
    # =========================================================================

    store_backend: Literal["memory", "qdrant"] = Field(default="memory")
    qdrant_host: str = Field(default="localhost")
    qdrant_port: int = Field(default=6333, ge=1, le=65535)
    qdrant_api_key: SecretStr | None = Field(default=None)
    qdrant_use_https: bool = Field(default=False)
    qdrant_timeout: int = Field(default=10, ge=1, le=120)
    qdrant_collection_prefix: str = Field(default="gitpulse")

    # =========================================================================
    # Operations
    # =========================================================================

    log_level: str = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")
    metrics_port: int = Field(default=9464, ge=1, le=65535)
    sweep_interval_seconds: int = Field(default=60, ge=5, le=3600)

    @field_validator("github_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("github_app_private_key", mode="before")
    @classmethod
    def normalize_private_key(cls, v):
        """Accept PEM keys stored on one line with escaped newlines."""
        if isinstance(v, str):
            return v.replace("\\n", "\n")
        return v

    @model_validator(mode="after")
    def validate_github_app(self) -> "SyncConfig":
        """Validate GitHub App config is complete when an app id is set."""
        if self.github_app_id and not self.github_app_private_key.get_secret_value():
            raise ValueError("GITHUB_APP_PRIVATE_KEY required when GITHUB_APP_ID is set")
        return self

    @property
    def policy_thresholds(self) -> PolicyThresholds:
        return PolicyThresholds.from_config(self)


@lru_cache(maxsize=1)
def get_config() -> SyncConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Returns:
        SyncConfig singleton instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return SyncConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing.

    Warning:
        Only use in test code. Production code should not reset config.
    """
    get_config.cache_clear()
