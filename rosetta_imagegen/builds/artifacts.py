"""Artifact extraction and manifest generation.

This module handles:
- Copying the compiled binaries out of a built image
- Computing checksums
- Generating build manifests
- Comparing artifacts of two builds for reproducibility
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rosetta_imagegen.builds.runner import BuildExecutionError, run_docker
from rosetta_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

MANIFEST_VERSION = "1.0"


class ArtifactError(Exception):
    """Raised when artifacts cannot be extracted or described."""

    def __init__(self, message: str, code: str = "artifact_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ReproducibilityReport:
    """Comparison of the artifacts of two builds.

    Attributes:
        matching: Names whose checksums are identical.
        differing: Names whose checksums differ.
        missing: Names present in only one of the builds.
    """

    matching: list[str] = field(default_factory=list)
    differing: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def reproducible(self) -> bool:
        """Whether both builds produced byte-identical artifacts."""
        return bool(self.matching) and not self.differing and not self.missing

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["reproducible"] = self.reproducible
        return data


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def extract_artifacts(
    image: str,
    names: list[str],
    install_dir: str,
    dest_dir: Path,
    docker_bin: str = "docker",
) -> list[Path]:
    """Copy binaries out of an image without running it.

    Args:
        image: Image id or tag.
        names: Binary names installed in install_dir.
        install_dir: Directory of the binaries inside the image.
        dest_dir: Local directory to copy into.
        docker_bin: Docker CLI executable.

    Returns:
        Local paths of the copied binaries, in the order of names.

    Raises:
        ArtifactError: If the container cannot be created or a binary is missing.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        container_id = run_docker(["create", image], docker_bin=docker_bin)
    except BuildExecutionError as e:
        raise ArtifactError(
            f"Cannot create container from {image}: {e}",
            code="container_error",
        ) from e

    paths: list[Path] = []
    try:
        for name in names:
            src = f"{container_id}:{install_dir.rstrip('/')}/{name}"
            dest = dest_dir / name
            try:
                run_docker(["cp", src, str(dest)], docker_bin=docker_bin)
            except BuildExecutionError as e:
                raise ArtifactError(
                    f"Artifact {name} missing from {image}: {e}",
                    code="artifact_missing",
                ) from e
            paths.append(dest)
            logger.debug("Extracted %s to %s", name, dest)
    finally:
        try:
            run_docker(["rm", container_id], docker_bin=docker_bin)
        except BuildExecutionError as e:
            logger.warning("Failed to remove container %s: %s", container_id, e)

    logger.info("Extracted %d artifacts from %s", len(paths), image)
    return paths


def describe_artifacts(
    paths: list[Path],
    install_dir: str,
    default_command: str,
) -> list[ArtifactInfo]:
    """Describe extracted binaries.

    Args:
        paths: Local copies of the binaries.
        install_dir: Directory of the binaries inside the image.
        default_command: Binary launched by the image's default command.

    Returns:
        ArtifactInfo per binary.

    Raises:
        ArtifactError: If a file is missing or the default command is not
            exactly one of the binaries.
    """
    artifacts: list[ArtifactInfo] = []
    for path in paths:
        if not path.is_file():
            raise ArtifactError(
                f"Artifact file not found: {path}",
                code="artifact_missing",
            )
        artifacts.append(
            ArtifactInfo(
                name=path.name,
                path_in_image=f"{install_dir.rstrip('/')}/{path.name}",
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
                is_default_command=path.name == default_command,
            )
        )

    defaults = [a for a in artifacts if a.is_default_command]
    if len(defaults) != 1:
        raise ArtifactError(
            f"Default command {default_command} must match exactly one artifact",
            code="default_command_mismatch",
        )
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    build_id: int | None = None,
    revision: str | None = None,
    image_id: str | None = None,
    tags: list[str] | None = None,
    cache_key: str | None = None,
    build_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifacts: Described artifacts.
        build_id: Optional database build ID.
        revision: Revision that was built.
        image_id: Content-addressed image id.
        tags: Tags applied to the image.
        cache_key: Optional cache key.
        build_inputs: Optional build inputs dictionary.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if build_id is not None:
        manifest["build_id"] = build_id
    if revision:
        manifest["revision"] = revision
    if image_id:
        manifest["image_id"] = image_id
    if tags:
        manifest["tags"] = list(tags)
    if cache_key:
        manifest["cache_key"] = cache_key
    if build_inputs:
        manifest["build_inputs"] = build_inputs

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "default_command": next(
            (a.name for a in artifacts if a.is_default_command), None
        ),
    }
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


def compare_artifacts(
    first: dict[str, str],
    second: dict[str, str],
) -> ReproducibilityReport:
    """Compare two name -> sha256 mappings.

    Args:
        first: Checksums of the first build.
        second: Checksums of the second build.

    Returns:
        ReproducibilityReport.
    """
    report = ReproducibilityReport()
    for name in sorted(set(first) | set(second)):
        if name not in first or name not in second:
            report.missing.append(name)
        elif first[name] == second[name]:
            report.matching.append(name)
        else:
            report.differing.append(name)
    return report


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_VERSION",
    "ArtifactError",
    "ReproducibilityReport",
    "compare_artifacts",
    "compute_file_hash",
    "describe_artifacts",
    "extract_artifacts",
    "generate_manifest",
    "write_manifest",
]
