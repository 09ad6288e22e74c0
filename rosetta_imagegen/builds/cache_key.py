"""Cache key computation for builds.

This module handles:
- Canonical input snapshot creation from a pipeline, revision and target
- Deterministic hash computation over normalized inputs

Cache mount contents never enter the key: they only speed up compilation,
so a warm and a cold build of the same inputs must produce the same image.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from rosetta_imagegen.pipeline.schema import PipelineSchema

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "2"


@dataclass
class BuildInputs:
    """Canonical representation of all build inputs.

    This structure captures all inputs that affect build output.
    It is serialized to JSON and hashed to produce the cache key.

    Attributes:
        schema_version: Version of cache key schema.
        pipeline_snapshot: Normalized pipeline data.
        revision: Source revision.
        target: Stage the build stops at ('all' for the full pipeline).
        base_digest: Pinned base image digest.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    pipeline_snapshot: dict[str, Any] = field(default_factory=dict)
    revision: str = ""
    target: str = "all"
    base_digest: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def normalize_pipeline_snapshot(pipeline: PipelineSchema) -> dict[str, Any]:
    """Create normalized pipeline snapshot for the cache key.

    Package lists are sorted because install order does not change the
    result; target order is kept because it is part of the compile command.
    Port descriptions are dropped, as they only render as comments.

    Args:
        pipeline: PipelineSchema instance.

    Returns:
        Dictionary with normalized pipeline data.
    """
    snapshot = pipeline.model_dump(mode="json")

    snapshot["toolchain"]["packages"] = sorted(snapshot["toolchain"]["packages"])
    snapshot["runtime"]["packages"] = sorted(snapshot["runtime"]["packages"])
    snapshot["runtime"]["ports"] = sorted(
        ({"port": p["port"], "protocol": p["protocol"]} for p in snapshot["runtime"]["ports"]),
        key=lambda p: (p["port"], p["protocol"]),
    )
    snapshot["builder"]["cache_mounts"] = sorted(
        snapshot["builder"]["cache_mounts"], key=lambda m: m["target"]
    )
    # Digest is tracked separately so a pinned and a resolved build agree
    snapshot["base_image"].pop("digest", None)
    return snapshot


def create_build_inputs(
    pipeline: PipelineSchema,
    revision: str,
    target: str | None = None,
    base_digest: str | None = None,
) -> BuildInputs:
    """Create canonical build inputs.

    Args:
        pipeline: PipelineSchema instance.
        revision: Source revision.
        target: Stage name, or None for the full pipeline.
        base_digest: Pinned base digest (falls back to the pipeline's).

    Returns:
        BuildInputs instance with all normalized inputs.
    """
    return BuildInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        pipeline_snapshot=normalize_pipeline_snapshot(pipeline),
        revision=revision,
        target=target or "all",
        base_digest=base_digest or pipeline.base_image.digest,
    )


def compute_cache_key(inputs: BuildInputs) -> str:
    """Compute a cache key hash from build inputs.

    Args:
        inputs: BuildInputs instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_bytes = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_bytes}"


def compute_cache_key_from_pipeline(
    pipeline: PipelineSchema,
    revision: str,
    target: str | None = None,
    base_digest: str | None = None,
) -> tuple[str, BuildInputs]:
    """Convenience function to compute cache key directly from a pipeline.

    Returns:
        Tuple of (cache_key, BuildInputs).
    """
    inputs = create_build_inputs(
        pipeline=pipeline,
        revision=revision,
        target=target,
        base_digest=base_digest,
    )
    return compute_cache_key(inputs), inputs


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "BuildInputs",
    "compute_cache_key",
    "compute_cache_key_from_pipeline",
    "create_build_inputs",
    "normalize_pipeline_snapshot",
]
