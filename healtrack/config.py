"""
Configuration management for the HealTrack scheduling core.

This module provides centralized configuration using Pydantic settings
for type-safe environment variable management.
"""

import sys
from functools import lru_cache
from zoneinfo import ZoneInfo

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Backend API Configuration
    api_base_url: str = Field(default="http://localhost:8080", alias="API_BASE_URL")
    api_timeout: int = Field(default=10, alias="API_TIMEOUT")
    connection_pool_size: int = Field(default=20, alias="CONNECTION_POOL_SIZE")

    # Clinic Configuration
    clinic_timezone: str = Field(default="Asia/Kolkata", alias="CLINIC_TIMEZONE")
    working_hours_start: int = Field(default=9, ge=0, le=23, alias="WORKING_HOURS_START")
    working_hours_end: int = Field(default=21, ge=1, le=24, alias="WORKING_HOURS_END")
    long_slot_step_minutes: int = Field(default=30, gt=0, alias="LONG_SLOT_STEP_MINUTES")

    # Therapy Session Configuration
    max_session_seconds: int = Field(default=3 * 60 * 60, gt=0, alias="MAX_SESSION_SECONDS")
    tick_interval_seconds: float = Field(default=1.0, gt=0, alias="TICK_INTERVAL_SECONDS")
    session_state_dir: str = Field(default=".healtrack/sessions", alias="SESSION_STATE_DIR")

    # Appointment Window Configuration
    appointment_window_days: int = Field(default=7, ge=3, alias="APPOINTMENT_WINDOW_DAYS")
    initial_past_days: int = Field(default=2, ge=0, alias="INITIAL_PAST_DAYS")

    # Application Configuration
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def clinic_tz(self) -> ZoneInfo:
        """The clinic's fixed timezone."""
        return ZoneInfo(self.clinic_timezone)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once,
    improving performance for repeated access.
    """
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Route loguru output to stderr at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=(level or get_settings().log_level).upper())


# Appointment status values as returned by the backend
APPOINTMENT_STATUS_LABELS = {
    "scheduled": "Scheduled",
    "in_progress": "In progress",
    "completed": "Completed",
}
