"""Configuration models for the incident synchronization engine."""

from pydantic import BaseModel, Field, HttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UpstreamConfig(BaseModel):
    """Connection settings for the upstream ticketing API."""

    base_url: HttpUrl = Field(default=..., description="Ticketing API base URL")
    api_token: str = Field(default=..., description="Opaque bearer token for the API")
    page_size: int = Field(default=100, ge=1, le=1000, description="Summaries per list page")
    timeout_seconds: float = Field(
        default=30.0, gt=0.0, le=300.0, description="Per-request timeout"
    )
    max_retries: int = Field(
        default=2, ge=0, le=10, description="Retries for connection errors, timeouts and 5xx"
    )
    quota_header: str = Field(
        default="X-RateLimit-Remaining",
        description="Response header carrying the upstream remaining-quota hint",
    )


class QuotaConfig(BaseModel):
    """Request budget shared with the upstream provider."""

    capacity: int = Field(default=5000, ge=1, description="Cost units per window")
    window_seconds: int = Field(default=3600, ge=1, description="Fixed window length")
    list_page_cost: int = Field(default=100, ge=1, description="Cost of one list page")
    detail_cost: int = Field(default=50, ge=1, description="Cost of one detail fetch")


class SyncSettings(BaseModel):
    """Cycle behaviour."""

    max_workers: int = Field(default=1, ge=1, le=16, description="Concurrent detail fetches")
    activity_overlap_seconds: int = Field(
        default=300,
        ge=0,
        description="Activity re-requested from this far before the stored updated_at",
    )
    force_refresh_ids: list[str] = Field(
        default_factory=list,
        description="Incident ids re-fetched even when stored in a terminal state",
    )


class StoreConfig(BaseModel):
    """Local relational store."""

    database_url: str = Field(
        default="sqlite:///incidents.db", description="SQLAlchemy database URL"
    )
    echo: bool = Field(default=False, description="Log emitted SQL")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(default=True, description="JSON output instead of console format")
    log_file: str | None = Field(default=None, description="Optional rotating log file path")


class AppConfig(BaseSettings):
    """Main application configuration.

    Values come from the YAML file handed to ``ConfigLoader`` and from
    environment variables with the APP_ prefix, e.g. ``APP_QUOTA__CAPACITY``.
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    upstream: UpstreamConfig
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _costs_fit_capacity(self) -> "AppConfig":
        if self.quota.detail_cost > self.quota.capacity:
            raise ValueError("quota.detail_cost cannot exceed quota.capacity")
        return self
