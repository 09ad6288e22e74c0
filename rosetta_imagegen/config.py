"""Configuration settings for rosetta_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory (locks and scratch state)."""
    return Path.home() / ".cache" / "rosetta-imagegen"


def _default_builds_dir() -> Path:
    """Return the default directory for build records on disk."""
    return Path.home() / ".local" / "share" / "rosetta-imagegen" / "builds"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "rosetta-imagegen" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ROSETTA_IMG_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROSETTA_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Inputs
    pipeline_file: Path | None = Field(
        default=None,
        description="Pipeline description file (uses the built-in pipeline if not set)",
    )
    repo_dir: Path | None = Field(
        default=None,
        description="Working copy used to resolve the revision (current dir if not set)",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for locks and cached state",
    )
    builds_dir: Path = Field(
        default_factory=_default_builds_dir,
        description="Root directory for rendered Dockerfiles, logs and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    # External tools
    docker_bin: str = Field(default="docker", description="Docker CLI executable")
    git_bin: str = Field(default="git", description="Git CLI executable")

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - never contact the registry to pin the base image",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    extract_artifacts: bool = Field(
        default=True,
        description="Copy binaries out of built images to record their checksums",
    )
    latest_policy: Literal["ancestry", "always"] = Field(
        default="ancestry",
        description="When to move the floating latest tag after a successful build",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for builds (unbounded if not set)",
    )
    registry_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for registry requests when pinning the base image",
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


__all__ = ["Settings", "get_settings", "print_settings_json"]
