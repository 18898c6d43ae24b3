"""Configuration settings for repro_verify.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

FREEBSD_SRC_REPO = "https://git.freebsd.org/src.git"


def _default_results_dir() -> Path:
    """Return the default results directory."""
    return Path.home() / ".local" / "share" / "repro-verify" / "results"


def _default_build_jobs() -> int:
    """Return the default make parallelism (one job per CPU)."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the REPRO_VERIFY_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPRO_VERIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    results_dir: Path = Field(
        default_factory=_default_results_dir,
        description="Directory receiving manifests and diffs",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Parent of the per-run work directory (system default if not set)",
    )
    keep_work_dir: bool = Field(
        default=False,
        description="Keep the work directory (source tree, objects) after the run",
    )

    # Build
    src_repo_url: str = Field(
        default=FREEBSD_SRC_REPO,
        description="Git repository the image is rebuilt from",
    )
    build_jobs: int = Field(
        default_factory=_default_build_jobs,
        ge=1,
        description="Parallel make jobs per build stage",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for remote image downloads",
    )
    build_timeout: int = Field(
        default=6 * 3600,
        ge=60,
        description="Timeout for each build stage",
    )
    command_timeout: int = Field(
        default=300,
        ge=10,
        description="Timeout for device, mount and pool commands",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["FREEBSD_SRC_REPO", "Settings", "get_settings", "print_settings_json"]
