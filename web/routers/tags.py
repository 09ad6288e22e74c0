"""Image tag endpoints.

- GET /tags - List recorded tags
- GET /tags/{tag} - Get the build a tag points at
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from rosetta_imagegen.builds.models import ImageTagRecord
from rosetta_imagegen.builds.service import TagNotFoundError, get_tag, list_tags
from web.deps import get_db

router = APIRouter()


def _tag_to_dict(tag: ImageTagRecord) -> dict[str, Any]:
    return {
        "tag": tag.tag,
        "repository": tag.repository,
        "label": tag.label,
        "revision": tag.revision,
        "build_id": tag.build_id,
        "image_id": tag.image_id,
        "updated_at": tag.updated_at.isoformat() if tag.updated_at else None,
    }


@router.get("")
def list_tags_endpoint(
    repository: str | None = Query(None, description="Filter by repository"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List recorded image tags, most recently moved first."""
    return [_tag_to_dict(t) for t in list_tags(db, repository=repository)]


@router.get("/{tag:path}")
def get_tag_endpoint(
    tag: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a tag by its full 'repo:label' name."""
    try:
        record = get_tag(db, tag)
    except TagNotFoundError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _tag_to_dict(record)
