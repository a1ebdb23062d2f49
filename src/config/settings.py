# src/config/settings.py — v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for API endpoints, batch limits, retry policy and
logging. Cross-field rules are checked once at load time.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === API ===
    api_base_url: str = "http://localhost:3000/api"
    api_token: str = ""
    request_timeout_s: float = 30.0
    league_id: str = ""

    # === Batch intake ===
    max_batch_uploads: int = 7
    max_file_size_mb: float = 2.0
    max_image_dimension: int = 1920

    # === Sequential processing ===
    inter_item_delay_s: float = 0.3
    commit_overwrite: bool = False

    # === Retry policy ===
    auto_retry_delays_s: str = "5,10,20"
    max_auto_retries: int = 3

    # === Selection / bulk operations ===
    page_size: int = 10
    bulk_max_ids: int = 1000
    bulk_max_concurrency: int = 5
    reverify_max_batch: int = 0

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 5

    # --- Validators ---

    @field_validator("max_auto_retries")
    @classmethod
    def validate_max_auto_retries(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ValueError("max_auto_retries must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        try:
            delays = self.auto_retry_delays_list
        except ValueError:
            errors.append("AUTO_RETRY_DELAYS_S must be comma-separated numbers")
            delays = []
        if any(d < 0 for d in delays):
            errors.append("AUTO_RETRY_DELAYS_S must not contain negative delays")
        if any(b < a for a, b in zip(delays, delays[1:])):
            errors.append("AUTO_RETRY_DELAYS_S must be non-decreasing")
        if self.max_auto_retries > 0 and not delays:
            errors.append("AUTO_RETRY_DELAYS_S is empty but MAX_AUTO_RETRIES > 0")

        if self.max_batch_uploads < 1:
            errors.append("MAX_BATCH_UPLOADS must be >= 1")
        if self.page_size < 1:
            errors.append("PAGE_SIZE must be >= 1")
        if self.bulk_max_ids < 1:
            errors.append("BULK_MAX_IDS must be >= 1")
        if self.bulk_max_concurrency < 1:
            errors.append("BULK_MAX_CONCURRENCY must be >= 1")
        if self.reverify_max_batch < 0:
            errors.append("REVERIFY_MAX_BATCH must be >= 0")
        if self.inter_item_delay_s < 0:
            errors.append("INTER_ITEM_DELAY_S must be >= 0")
        if self.max_file_size_mb <= 0:
            errors.append("MAX_FILE_SIZE_MB must be > 0")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def auto_retry_delays_list(self) -> list[float]:
        """Parse comma-separated retry delays (seconds)."""
        return [float(d.strip()) for d in self.auto_retry_delays_s.split(",") if d.strip()]

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)

    @property
    def effective_reverify_limit(self) -> int:
        """Re-verify cap; falls back to the batch upload limit when unset."""
        return self.reverify_max_batch or self.max_batch_uploads


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-run config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
