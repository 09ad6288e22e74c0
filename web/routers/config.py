"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from rosetta_imagegen.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "pipeline_file": str(settings.pipeline_file) if settings.pipeline_file else None,
        "repo_dir": str(settings.repo_dir) if settings.repo_dir else None,
        "cache_dir": str(settings.cache_dir),
        "builds_dir": str(settings.builds_dir),
        "db_url": settings.db_url,
        "docker_bin": settings.docker_bin,
        "git_bin": settings.git_bin,
        "offline": settings.offline,
        "log_level": settings.log_level,
        "extract_artifacts": settings.extract_artifacts,
        "latest_policy": settings.latest_policy,
        "build_timeout": settings.build_timeout,
        "registry_timeout": settings.registry_timeout,
    }
