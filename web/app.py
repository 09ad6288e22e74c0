"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured.

Web routes are thin read-only proxies to core APIs; builds are only
started from the CLI.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rosetta_imagegen import __version__
from rosetta_imagegen.db import create_all_tables, get_engine, get_session_factory
from web.routers import builds, config, health, pipeline, tags


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables on startup.
    """
    engine = get_engine()
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Rosetta Image Generator API",
        description="Read-only HTTP API for the rosetta image pipeline, "
        "build records and image tags",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(pipeline.router, prefix="/pipeline", tags=["pipeline"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])
    application.include_router(tags.router, prefix="/tags", tags=["tags"])

    return application


# Create the default application instance
app = create_app()
