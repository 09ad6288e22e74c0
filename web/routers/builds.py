"""Build record endpoints.

- GET /builds - List builds
- GET /builds/{id} - Get build by ID
- GET /builds/{id}/artifacts - Get artifacts for a build
- GET /builds/{id}/compare/{other_id} - Compare artifacts of two builds
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from rosetta_imagegen.builds.models import Artifact, BuildRecord
from rosetta_imagegen.builds.service import (
    BuildNotFoundError,
    BuildServiceError,
    compare_builds,
    get_build,
    get_build_artifacts,
    list_builds,
)
from rosetta_imagegen.types import BuildStatus
from web.deps import get_db

router = APIRouter()


def _build_to_dict(build: BuildRecord) -> dict[str, Any]:
    """Convert a build record to a dictionary."""
    return {
        "id": build.id,
        "revision": build.revision,
        "target": build.target,
        "status": build.status,
        "cache_key": build.cache_key,
        "base_image_digest": build.base_image_digest,
        "image_id": build.image_id,
        "tags": sorted(t.tag for t in build.tags),
        "requested_at": build.requested_at.isoformat() if build.requested_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
        "log_path": build.log_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "artifact_count": len(build.artifacts),
    }


def _artifact_to_dict(artifact: Artifact) -> dict[str, Any]:
    """Convert an artifact to a dictionary."""
    return {
        "id": artifact.id,
        "build_id": artifact.build_id,
        "name": artifact.name,
        "path_in_image": artifact.path_in_image,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "is_default_command": artifact.is_default_command,
    }


def _not_found(e: BuildNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": e.code, "message": str(e)},
    )


@router.get("")
def list_builds_endpoint(
    revision: str | None = Query(None, description="Filter by revision (prefix)"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records.

    Args:
        revision: Filter by revision prefix.
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of build records, newest first.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: pending, running, succeeded, failed",
                },
            ) from None

    builds = list_builds(db, revision=revision, status=status_filter, limit=limit)
    return [_build_to_dict(b) for b in builds]


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID, including its input snapshot."""
    try:
        build = get_build(db, build_id)
    except BuildNotFoundError as e:
        raise _not_found(e) from None

    result = _build_to_dict(build)
    result["input_snapshot"] = build.input_snapshot
    result["dockerfile_path"] = build.dockerfile_path
    result["build_dir"] = build.build_dir
    return result


@router.get("/{build_id}/artifacts")
def get_build_artifacts_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get the binaries recorded for a build."""
    try:
        artifacts = get_build_artifacts(db, build_id)
    except BuildNotFoundError as e:
        raise _not_found(e) from None
    return [_artifact_to_dict(a) for a in artifacts]


@router.get("/{build_id}/compare/{other_id}")
def compare_builds_endpoint(
    build_id: int,
    other_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Compare artifact checksums of two builds."""
    try:
        report = compare_builds(db, build_id, other_id)
    except BuildNotFoundError as e:
        raise _not_found(e) from None
    except BuildServiceError as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return report.to_dict()
