"""FastAPI web application for the Rosetta Image Generator.

This module provides a read-only HTTP API over the pipeline description,
build history and image tags.

All business logic is delegated to core modules in rosetta_imagegen/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
