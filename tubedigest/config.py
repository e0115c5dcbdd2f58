"""Configuration loader for the TubeDigest enrichment pipeline (Pydantic edition)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Literal

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)

PeriodName = Literal["daily", "monthly"]
ProviderName = Literal["openai", "gemini"]


class AppConfig(BaseSettings):
    """Strongly typed runtime configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        validate_default=True,
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENVIRONMENT", "APP_ENV"),
    )
    database_path: Path = Field(
        default=Path("tubedigest.db"),
        validation_alias=AliasChoices("APP_DATABASE_PATH", "DATABASE_PATH"),
    )
    log_path: Path = Field(
        default=Path("logs/tubedigest.log"),
        validation_alias=AliasChoices("APP_LOG_PATH", "LOG_PATH"),
    )

    # Enrichment providers
    ai_provider: ProviderName = Field(
        default="openai",
        validation_alias=AliasChoices("AI_SERVICE_PROVIDER", "APP_AI_PROVIDER"),
    )
    openai_api_key: SecretStr | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-5-nano", validation_alias="APP_OPENAI_MODEL")
    gemini_api_key: SecretStr | None = Field(default=None, validation_alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.0-flash", validation_alias="APP_GEMINI_MODEL")
    enrichment_timeout_seconds: float = Field(120.0, gt=0, validation_alias="APP_ENRICHMENT_TIMEOUT")
    retry_attempts: int = Field(3, ge=1, le=10, validation_alias="APP_RETRY_ATTEMPTS")
    retry_backoff_seconds: float = Field(2.0, ge=0, validation_alias="APP_RETRY_BACKOFF")
    retry_backoff_max_seconds: float = Field(20.0, ge=0, validation_alias="APP_RETRY_BACKOFF_MAX")

    # Chunked fan-out
    digest_chunk_size: int = Field(10, ge=1, validation_alias="APP_DIGEST_CHUNK_SIZE")
    custom_chunk_size: int = Field(5, ge=1, validation_alias="APP_CUSTOM_CHUNK_SIZE")
    chunk_cooldown_seconds: float = Field(1.0, ge=0, validation_alias="APP_CHUNK_COOLDOWN")

    # Source fetching
    apify_token: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("APIFY_API_TOKEN", "APP_APIFY_TOKEN"),
    )
    apify_actor: str = Field(
        default="leandrocb88~youtube-video-transcript-actor",
        validation_alias="APP_APIFY_ACTOR",
    )
    apify_base_url: str = Field(default="https://api.apify.com/v2", validation_alias="APP_APIFY_BASE_URL")
    fetch_timeout_seconds: float = Field(300.0, gt=0, validation_alias="APP_FETCH_TIMEOUT")
    youtube_api_key: SecretStr | None = Field(default=None, validation_alias="YOUTUBE_API_KEY")

    # Delivery
    notification_webhook_url: str | None = Field(default=None, validation_alias="APP_NOTIFICATION_WEBHOOK_URL")

    # Plans
    plan_free_limit: int = Field(100, ge=0, validation_alias="APP_PLAN_FREE_LIMIT")
    plan_free_period: PeriodName = Field("daily", validation_alias="APP_PLAN_FREE_PERIOD")
    plan_plus_limit: int = Field(5000, ge=0, validation_alias="APP_PLAN_PLUS_LIMIT")
    plan_plus_period: PeriodName = Field("monthly", validation_alias="APP_PLAN_PLUS_PERIOD")
    plan_pro_limit: int = Field(25000, ge=0, validation_alias="APP_PLAN_PRO_LIMIT")
    plan_pro_period: PeriodName = Field("monthly", validation_alias="APP_PLAN_PRO_PERIOD")
    guest_daily_limit: int | None = Field(None, ge=0, validation_alias="APP_GUEST_DAILY_LIMIT")

    # Per-invocation caps
    digest_max_per_channel: int = Field(100, ge=1, validation_alias="APP_DIGEST_MAX_PER_CHANNEL")
    custom_digest_max_per_source: int = Field(50, ge=1, validation_alias="APP_CUSTOM_DIGEST_MAX_PER_SOURCE")
    analysis_max_channels: int = Field(10, ge=1, validation_alias="APP_ANALYSIS_MAX_CHANNELS")
    analysis_max_videos: int = Field(100, ge=1, validation_alias="APP_ANALYSIS_MAX_VIDEOS")
    paid_url_batch_limit: int = Field(100, ge=1, validation_alias="APP_PAID_URL_BATCH_LIMIT")
    free_url_batch_limit: int = Field(1, ge=1, validation_alias="APP_FREE_URL_BATCH_LIMIT")
    summary_cost: int = Field(1, ge=1, validation_alias="APP_SUMMARY_COST")

    # History retention (days)
    retention_free_days: int = Field(1, ge=0, validation_alias="APP_RETENTION_FREE_DAYS")
    retention_plus_days: int = Field(30, ge=0, validation_alias="APP_RETENTION_PLUS_DAYS")
    retention_pro_days: int = Field(90, ge=0, validation_alias="APP_RETENTION_PRO_DAYS")

    # Scheduling cadences
    digest_dispatch_minute: int = Field(0, ge=0, le=59, validation_alias="APP_DIGEST_DISPATCH_MINUTE")
    prune_hour: int = Field(0, ge=0, le=23, validation_alias="APP_PRUNE_HOUR")

    @field_validator("database_path", "log_path", mode="after")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        expanded = value.expanduser()
        return expanded if expanded.is_absolute() else (Path.cwd() / expanded).resolve()

    @model_validator(mode="after")
    def _validate_limits(self) -> "AppConfig":
        if self.free_url_batch_limit > self.paid_url_batch_limit:
            raise ConfigError("free_url_batch_limit cannot exceed paid_url_batch_limit")
        if self.retry_backoff_seconds > self.retry_backoff_max_seconds:
            raise ConfigError("retry_backoff_seconds cannot exceed retry_backoff_max_seconds")
        return self

    @property
    def effective_guest_limit(self) -> int:
        return self.plan_free_limit if self.guest_daily_limit is None else self.guest_daily_limit

    def ensure_runtime_directories(self) -> None:
        """Create directories required for runtime operation."""
        _ensure_directories((self.log_path.parent, self.database_path.parent))


def secret_value(value: SecretStr | str | None) -> str | None:
    """Plaintext of an optional credential, or None when it is unset or blank."""
    if value is None:
        return None
    raw = value.get_secret_value() if isinstance(value, SecretStr) else value
    return raw.strip() or None


def _ensure_directories(paths: Iterable[Path]) -> None:
    for directory in paths:
        directory.mkdir(parents=True, exist_ok=True)


def load_config(env_path: Path | None = None) -> AppConfig:
    """Load configuration from .env/environment with validation."""
    load_kwargs: dict[str, str] = {}
    if env_path is not None:
        load_dotenv(env_path, override=False)
        load_kwargs["_env_file"] = str(env_path)
    else:
        load_dotenv(override=False)
    try:
        config = AppConfig(**load_kwargs)
    except ValidationError as exc:  # pragma: no cover - exercised in integration tests
        raise ConfigError("Invalid configuration") from exc

    config.ensure_runtime_directories()

    LOGGER.info(
        "AppConfig loaded",
        extra={
            "event": "config.loaded",
            "environment": config.environment,
            "provider": config.ai_provider,
            "paths": {
                "database": str(config.database_path),
                "log": str(config.log_path),
            },
        },
    )
    return config
