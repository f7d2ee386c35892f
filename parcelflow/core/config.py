"""
Parcelflow Configuration

Single source of truth for all configuration.
Uses Pydantic Settings for environment variable parsing.
"""
from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Parcelflow configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PARCELFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local", description="Environment: local, staging, production")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Scheduler
    scheduler_enabled: bool = Field(default=True)
    scheduler_interval_seconds: float = Field(default=60.0, gt=0)
    dispatcher_workers: int = Field(default=4, ge=1)

    # Alert hub
    alert_history_limit: int = Field(default=1000, ge=1)

    # Data quality defaults
    quality_min_records: int = Field(default=5, ge=1)
    quality_max_missing_rate: float = Field(default=0.2, ge=0.0, le=1.0)
    quality_outlier_threshold: float = Field(default=3.0, gt=0)

    # Optimization advisor
    advisor_enabled: bool = Field(default=True)
    advisor_success_rate_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    advisor_long_run_seconds: float = Field(default=30.0, gt=0)
    advisor_high_volume_records: int = Field(default=100000, ge=1)

    # Connectors
    connector_timeout_seconds: float = Field(default=30.0, gt=0)

    # Metrics Mode: off (no metrics), basic (run counters only), full (all metrics)
    metrics_mode: str = Field(
        default="full",
        description="Metrics registration mode: off, basic, or full"
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    @model_validator(mode="after")
    def check_metrics_mode(self) -> "Settings":
        if self.metrics_mode.lower() not in ("off", "basic", "full"):
            logging.getLogger("parcelflow.config").warning(
                f"Unknown metrics mode '{self.metrics_mode}', falling back to 'basic'"
            )
            self.metrics_mode = "basic"
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
