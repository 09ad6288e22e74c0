"""Router modules for FastAPI web API."""

from web.routers import builds, config, health, pipeline, tags

__all__ = ["builds", "config", "health", "pipeline", "tags"]
