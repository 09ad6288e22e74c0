"""Image tag composition.

One build of the full pipeline is published under two tags sharing one
image: '<repo>:<kind>-<revision>' and the floating '<repo>:<kind>-latest'.
Builds stopped at an intermediate stage carry the stage name in the label
and never touch the floating tag.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rosetta_imagegen.pipeline.schema import PipelineSchema

LATEST_LABEL = "latest"


@dataclass(frozen=True)
class ImageTag:
    """A (repository, label) pair naming an image."""

    repository: str
    label: str

    def __str__(self) -> str:
        return f"{self.repository}:{self.label}"

    @classmethod
    def parse(cls, value: str) -> ImageTag:
        """Parse 'repo:label', splitting at the last ':' after the last '/'.

        Raises:
            ValueError: If there is no label.
        """
        last_slash = value.rfind("/")
        colon = value.rfind(":")
        if colon <= last_slash or colon == len(value) - 1:
            raise ValueError(f"Image tag has no label: {value!r}")
        return cls(repository=value[:colon], label=value[colon + 1 :])

    @property
    def is_floating(self) -> bool:
        """Whether this tag is a floating alias."""
        return self.label.endswith(f"-{LATEST_LABEL}")


def revision_tag(repository: str, kind: str, revision: str) -> ImageTag:
    """Return '<repo>:<kind>-<revision>'."""
    return ImageTag(repository, f"{kind}-{revision}")


def latest_tag(repository: str, kind: str) -> ImageTag:
    """Return '<repo>:<kind>-latest'."""
    return ImageTag(repository, f"{kind}-{LATEST_LABEL}")


def stage_tag(repository: str, kind: str, stage: str, revision: str) -> ImageTag:
    """Return '<repo>:<kind>-<stage>-<revision>' for partial builds."""
    return ImageTag(repository, f"{kind}-{stage}-{revision}")


def compose_tags(
    pipeline: PipelineSchema,
    revision: str,
    target_stage: str | None = None,
) -> list[ImageTag]:
    """Return the tags a build applies itself.

    The floating latest tag is not included; it is moved only after the
    build succeeded.

    Args:
        pipeline: Pipeline description.
        revision: Revision being built.
        target_stage: Intermediate stage name, or None for the full pipeline.
    """
    if target_stage is None or target_stage == pipeline.runtime.stage_name:
        return [revision_tag(pipeline.repository, pipeline.kind, revision)]
    return [stage_tag(pipeline.repository, pipeline.kind, target_stage, revision)]


__all__ = [
    "LATEST_LABEL",
    "ImageTag",
    "compose_tags",
    "latest_tag",
    "revision_tag",
    "stage_tag",
]
