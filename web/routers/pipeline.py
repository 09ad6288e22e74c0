"""Pipeline endpoints.

- GET /pipeline - Effective pipeline description
- GET /pipeline/dockerfile - Rendered Dockerfile
- GET /pipeline/stages - Stages in build order for a target
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from fastapi.responses import PlainTextResponse

from rosetta_imagegen.pipeline.graph import StageGraph, UnknownStageError
from rosetta_imagegen.pipeline.io import pipeline_to_dict
from rosetta_imagegen.pipeline.render import RenderError, render_dockerfile
from rosetta_imagegen.pipeline.schema import PipelineSchema
from web.deps import get_pipeline

router = APIRouter()


@router.get("")
def get_pipeline_endpoint(
    pipeline: PipelineSchema = Depends(get_pipeline),
) -> dict[str, Any]:
    """Get the effective pipeline description."""
    return pipeline_to_dict(pipeline)


@router.get("/dockerfile", response_class=PlainTextResponse)
def get_dockerfile(
    base_digest: str | None = Query(None, description="Pin the base image to this digest"),
    allow_unpinned: bool = Query(False, description="Render an unpinned base image"),
    pipeline: PipelineSchema = Depends(get_pipeline),
) -> str:
    """Render the pipeline as a Dockerfile.

    The registry is never contacted here; an unpinned base image needs
    either base_digest or allow_unpinned.
    """
    try:
        return render_dockerfile(
            pipeline, base_digest=base_digest, allow_unpinned=allow_unpinned
        )
    except RenderError as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None


@router.get("/stages")
def get_stages(
    target: str = Query("all", description="Stage to build, or 'all'"),
    pipeline: PipelineSchema = Depends(get_pipeline),
) -> dict[str, Any]:
    """Get the stages a target pulls in, in build order."""
    graph = StageGraph.from_pipeline(pipeline)
    try:
        stages = graph.stages_for_target(target)
    except UnknownStageError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None

    return {
        "target": target,
        "full_build": graph.is_full_build(target),
        "stages": [
            {
                "name": s.name,
                "kind": s.kind.value,
                "image": s.image,
                "depends_on": list(s.depends_on),
                "output": s.output.value,
            }
            for s in stages
        ],
    }
