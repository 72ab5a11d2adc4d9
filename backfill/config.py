"""
AESO Backfill — Settings
Runtime configuration loaded from environment variables (and ``.env``).

Every backfill routine receives a ``Settings`` instance explicitly; nothing in
the data layer reads the process environment on its own.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from typing import Optional

from loguru import logger
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Storage
    database_url: str = "sqlite+aiosqlite:///./training_data.db"

    # AESO API: either variable name is accepted
    aeso_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("aeso_api_key", "aeso_subscription_key_primary"),
    )
    aeso_base_url: str = "https://api.aeso.ca/report/v1.1"

    # Open-Meteo historical archive (no key required)
    open_meteo_archive_url: str = "https://archive-api.open-meteo.com/v1/archive"

    # HTTP behaviour
    request_timeout: float = 30.0
    demand_timeout: float = 20.0
    demand_max_attempts: int = 3
    demand_retry_backoff: float = 2.0

    # Pauses between months, in seconds (upstream rate limits)
    price_month_delay: float = 0.2
    weather_month_delay: float = 0.1
    demand_month_delay: float = 0.2
    generation_month_delay: float = 0.2

    # Batch shaping
    price_skip_threshold: int = 600
    weather_rows_per_month: int = 800
    update_chunk_size: int = 50

    # Status reporting
    target_start_date: str = "2018-01-01"

    # Application
    log_level: str = "INFO"

    @property
    def aeso_configured(self) -> bool:
        return bool(self.aeso_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Send loguru output to stderr at the requested level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
