"""Build orchestration module.

This module handles:
- Revision resolution and image tag composition
- Cache key computation
- Running docker buildx builds
- Artifact extraction and manifest generation
- Build records, tag pointers and cache management
"""

from rosetta_imagegen.builds.models import Artifact, BuildRecord, ImageTagRecord

__all__ = ["Artifact", "BuildRecord", "ImageTagRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via rosetta_imagegen.builds.service, etc.
