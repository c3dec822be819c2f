"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``LIFELINE_`` prefix; infrastructure settings use
their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the Lifeline SOS service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``LIFELINE_``; infra keys use
    their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="LIFELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Tracking link ──────────────────────────────────────────────────
    sos_web_app_url: str = "https://sos.lifeline.app"

    # ── Redis ──────────────────────────────────────────────────────────
    # Empty means documents and the local pointer stay in-process / on disk.
    redis_url: str = Field(default="", validation_alias="REDIS_URL")

    # ── Local key-value store ──────────────────────────────────────────
    local_store_path: str = ".lifeline/local_store.json"

    # ── Access tokens ──────────────────────────────────────────────────
    token_length: int = Field(default=16, ge=8, le=64)
    token_reuse_hours: float = 12.0

    # ── Location tracking ──────────────────────────────────────────────
    foreground_distance_meters: float = 7.0
    foreground_interval_ms: int = 3_000
    background_distance_meters: float = 7.0
    background_interval_ms: int = 3_000
    reject_stale_location_fixes: bool = False
    # A reported fix older than this is not used as the initial position.
    initial_fix_max_age_seconds: float = Field(default=60.0, gt=0)

    # ── Document store ─────────────────────────────────────────────────
    store_timeout_seconds: float = 5.0
    verify_attempts: int = Field(default=3, ge=1)

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    tracking_rate_limit_per_minute: int = 30
    trusted_proxy_count: int = Field(
        default=1,
        ge=0,
        validation_alias="TRUSTED_PROXY_COUNT",
    )

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def token_reuse_seconds(self) -> float:
        return self.token_reuse_hours * 3600.0


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
