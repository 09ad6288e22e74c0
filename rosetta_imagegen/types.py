"""Shared type definitions for rosetta_imagegen.

This module contains dataclasses and enums shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a build operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageKind(str, Enum):
    """Role of a stage in the multi-stage build."""

    BASE = "base"
    TOOLCHAIN = "toolchain"
    BUILDER = "builder"
    RUNTIME = "runtime"


class StageOutput(str, Enum):
    """What a stage produces for later stages."""

    IMAGE = "image"
    FILES = "files"


class LatestPolicy(str, Enum):
    """Policy for moving the floating latest tag."""

    ANCESTRY = "ancestry"
    ALWAYS = "always"


@dataclass
class ArtifactInfo:
    """Information about a binary extracted from a built image."""

    name: str
    path_in_image: str
    size_bytes: int
    sha256: str
    is_default_command: bool = False


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "LatestPolicy",
    "StageKind",
    "StageOutput",
]
