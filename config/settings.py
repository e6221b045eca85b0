"""
Configuration settings with Pydantic validation.
All settings are loaded from environment variables (or a .env file).
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tradedash.cache.record_store import StoreConfig
from tradedash.cache.synchronizer import SyncConfig


class Settings(BaseSettings):
    """Main application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Datastore
    supabase_url: Optional[str] = Field(
        default=None,
        description="Base URL of the hosted trade datastore (e.g. https://xyz.supabase.co)"
    )
    supabase_anon_key: Optional[SecretStr] = Field(
        default=None,
        description="Anonymous API key for the datastore"
    )
    supabase_user_id: Optional[str] = Field(
        default=None,
        description="Only load rows belonging to this user when set"
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Per-request timeout for datastore calls"
    )

    # Record store
    cache_max_size: int = Field(
        default=10000,
        ge=10,
        description="Maximum number of cached trade records"
    )
    cache_cleanup_threshold: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Occupancy share of max size that triggers eviction"
    )
    cache_eviction_fraction: float = Field(
        default=0.2,
        gt=0,
        lt=1,
        description="Share of entries removed per eviction"
    )
    cache_batch_size: int = Field(
        default=1000,
        ge=1,
        description="Records processed between cooperative yields during loads"
    )
    cache_freshness_seconds: int = Field(
        default=300,
        ge=1,
        description="How long a load keeps the cache fresh (also the snapshot max age)"
    )

    # Synchronizer
    incremental_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Minimum time between incremental fetches"
    )
    sync_check_interval_seconds: int = Field(
        default=60,
        ge=5,
        description="How often the dashboard runs a sync check"
    )

    # Persistence
    snapshot_enabled: bool = Field(
        default=True,
        description="Persist the cache after each load and seed it on startup"
    )
    database_path: Path = Field(
        default=Path("data/dashboard.db"),
        description="SQLite database for the cache snapshot"
    )

    # Error analytics
    recent_errors_limit: int = Field(
        default=50,
        ge=1,
        description="Size of the rolling recent-error buffer"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_file: Optional[Path] = Field(
        default=None,
        description="Optional path to log file"
    )
    log_json: bool = Field(
        default=False,
        description="Emit JSON logs instead of the colored console format"
    )

    # Dashboard
    dashboard_host: str = Field(
        default="127.0.0.1",
        description="Dashboard web server bind address (use 0.0.0.0 for network access)"
    )
    dashboard_port: int = Field(
        default=8082,
        ge=1024,
        le=65535,
        description="Dashboard web server port"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"supabase_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_eviction_bounds(self) -> "Settings":
        """Eviction must not remove more than the cleanup threshold keeps."""
        if self.cache_cleanup_threshold <= self.cache_eviction_fraction:
            raise ValueError(
                f"cache_cleanup_threshold ({self.cache_cleanup_threshold}) must be greater than "
                f"cache_eviction_fraction ({self.cache_eviction_fraction})"
            )
        return self

    @property
    def is_datastore_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def store_config(self) -> StoreConfig:
        return StoreConfig(
            max_size=self.cache_max_size,
            cleanup_threshold=self.cache_cleanup_threshold,
            eviction_fraction=self.cache_eviction_fraction,
            batch_size=self.cache_batch_size,
            freshness=timedelta(seconds=self.cache_freshness_seconds),
        )

    def sync_config(self) -> SyncConfig:
        return SyncConfig(incremental_interval=timedelta(seconds=self.incremental_interval_seconds))


# Global settings instance (lazy loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached instance so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
