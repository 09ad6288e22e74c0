"""Rosetta Image Generator - reproducible runtime images for node binaries.

This package describes the multi-stage build that packages the external
node and Rosetta API binaries into a runtime image, renders it to a
Dockerfile, drives BuildKit with a pinned revision, and records builds,
artifacts and tags.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
