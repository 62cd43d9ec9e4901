"""Runtime configuration for the SheetZip service."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Environment driven settings.

    Every field maps to the upper-cased environment variable of the same name,
    e.g. ``apps_script_url`` is read from ``APPS_SCRIPT_URL``.
    """

    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    apps_script_url: Optional[str] = None
    api_key: Optional[str] = None

    apps_script_timeout_s: float = Field(default=120.0, gt=0)
    apps_script_retry_max: int = Field(default=2, ge=0)
    apps_script_backoff_s: float = Field(default=0.5, ge=0)

    page_batch_size: int = Field(default=10, ge=1)
    max_page_batches: int = Field(default=1000, ge=1)

    render_retry_max: int = Field(default=0, ge=0)
    browser_cdp_url: Optional[str] = None
    browser_launch_timeout_s: float = Field(default=30.0, gt=0)

    archive_queue_size: int = Field(default=16, ge=1)
    archive_compression: Literal["stored", "deflated"] = "stored"
    archive_error_marker: bool = False

    default_zip_name: str = "bang_cong_png.zip"
    default_output_name: str = "output_tong_hop"
    default_sheet_prefix: str = "CT"
    default_header_row: int = Field(default=6, ge=1)

    log_level: str = "INFO"

    @field_validator("apps_script_url", "api_key", "browser_cdp_url", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""

    return Settings()


def reset_settings_cache() -> None:
    """Drop the cached settings (useful for tests)."""

    get_settings.cache_clear()


__all__ = ["PROJECT_ROOT", "Settings", "get_settings", "reset_settings_cache"]
