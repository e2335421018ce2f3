"""
Application settings using Pydantic.

Provides environment-based configuration loading with STACKRUN_ prefix.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STACKRUN_",
        extra="ignore",
    )

    # State
    state_path: Path = Path(".stackrun/state.json")
    # Only set when the state file lives on storage trusted with secret payloads
    state_secure: bool = False
    # Fernet key for secret payloads in insecure state; falls back to a key file
    state_key: str | None = None
    state_key_path: Path | None = None

    # Scheduling
    max_parallel: int = Field(default=8, ge=1)
    refresh: bool = False
    run_timeout: float | None = Field(default=None, gt=0)

    # Logging
    log_level: str = "WARNING"
    log_format: Literal["json", "console"] = "json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
