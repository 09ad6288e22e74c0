"""Dockerfile rendering for pipeline descriptions.

This module handles:
- Rendering each stage kind into Dockerfile instructions
- Ordering stages by their dependency graph
- Writing the rendered Dockerfile into a build directory

The rendered file is the only thing handed to BuildKit; it never
copies from the build context, so the context may be empty.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from pathlib import Path

from rosetta_imagegen.pipeline.graph import Stage, StageGraph
from rosetta_imagegen.pipeline.schema import (
    DIGEST_PATTERN,
    CacheMountSchema,
    PipelineSchema,
)
from rosetta_imagegen.types import StageKind

logger = logging.getLogger(__name__)

DOCKERFILE_SYNTAX = "docker/dockerfile:1.4"
CONTINUATION = " \\\n    "


class RenderError(Exception):
    """Raised when a pipeline cannot be rendered."""

    def __init__(self, message: str, code: str = "render_error") -> None:
        super().__init__(message)
        self.code = code


def _quote_all(values: list[str]) -> list[str]:
    return [shlex.quote(v) for v in values]


def render_cache_mount(mount: CacheMountSchema) -> str:
    """Render a cache mount as a RUN --mount flag.

    Args:
        mount: Cache mount schema.

    Returns:
        The --mount flag.
    """
    parts = ["type=cache", f"target={mount.target}"]
    if mount.id:
        parts.append(f"id={mount.id}")
    if mount.sharing != "shared":
        parts.append(f"sharing={mount.sharing}")
    return "--mount=" + ",".join(parts)


def _install_packages(packages: list[str]) -> str:
    return "apt-get update && apt-get install -y " + " ".join(_quote_all(packages))


def _compile_step(pipeline: PipelineSchema) -> str:
    """Compile command for all targets, followed by staging into output_dir."""
    builder = pipeline.builder
    cmd = list(builder.build_command)
    for name in builder.target_names:
        cmd.extend([builder.target_flag, name])

    steps = [f"cd {shlex.quote(builder.checkout_dir)} && {shlex.join(cmd)}"]
    steps.append(f"mkdir -p {shlex.quote(builder.output_dir)}")
    for target in builder.targets:
        dest = f"{builder.output_dir}/{target.name}"
        steps.append(
            f"cp {shlex.quote(target.effective_source_path)} {shlex.quote(dest)}"
        )
    return CONTINUATION.join(
        [steps[0]] + [f"&& {step}" for step in steps[1:]]
    )


def _render_base(pipeline: PipelineSchema, stage: Stage, base_ref: str) -> list[str]:
    return [f"FROM {base_ref} AS {stage.name}"]


def _render_toolchain(pipeline: PipelineSchema, stage: Stage, base_ref: str) -> list[str]:
    toolchain = pipeline.toolchain
    return [
        f"FROM {toolchain.image} AS {stage.name}",
        f"WORKDIR {toolchain.workdir}",
        f"RUN {_install_packages(toolchain.packages)}",
    ]


def _render_builder(pipeline: PipelineSchema, stage: Stage, base_ref: str) -> list[str]:
    builder = pipeline.builder
    arg = builder.revision_arg
    checkout = shlex.quote(builder.checkout_dir)

    lines = [
        f"FROM {stage.image} AS {stage.name}",
        f"ARG {arg}",
        f"RUN git clone {shlex.quote(builder.source_url)} {checkout}",
        # Reset to the exact revision regardless of the default branch tip
        f'RUN cd {checkout} && test -n "${{{arg}}}" && git reset "${{{arg}}}" --hard',
    ]

    mounts = [render_cache_mount(m) for m in builder.cache_mounts]
    run = "RUN " + CONTINUATION.join(mounts + [_compile_step(pipeline)])
    lines.append(run)
    return lines


def _render_runtime(pipeline: PipelineSchema, stage: Stage, base_ref: str) -> list[str]:
    runtime = pipeline.runtime
    builder = pipeline.builder
    workdir = pipeline.toolchain.workdir.rstrip("/")

    lines = [f"FROM {stage.image} AS {stage.name}"]
    if runtime.packages:
        lines.append(
            "RUN "
            + CONTINUATION.join(
                [
                    _install_packages(runtime.packages),
                    "&& apt-get clean",
                    "&& rm -rf /var/lib/apt/lists/*",
                ]
            )
        )

    for name in builder.target_names:
        src = f"{workdir}/{builder.checkout_dir}/{builder.output_dir}/{name}"
        lines.append(
            f"COPY --from={builder.stage_name} {src} {runtime.install_dir}/{name}"
        )

    for port in runtime.ports:
        if port.description:
            lines.append(f"# {port.description}")
        suffix = "" if port.protocol == "tcp" else f"/{port.protocol}"
        lines.append(f"EXPOSE {port.port}{suffix}")

    for key, value in runtime.env.items():
        lines.append(f"ENV {key}={shlex.quote(value)}")

    lines.append(f'CMD ["{runtime.command}"]')
    return lines


_RENDERERS: dict[StageKind, Callable[[PipelineSchema, Stage, str], list[str]]] = {
    StageKind.BASE: _render_base,
    StageKind.TOOLCHAIN: _render_toolchain,
    StageKind.BUILDER: _render_builder,
    StageKind.RUNTIME: _render_runtime,
}


def render_dockerfile(
    pipeline: PipelineSchema,
    base_digest: str | None = None,
    allow_unpinned: bool = False,
) -> str:
    """Render a pipeline as a multi-stage Dockerfile.

    Args:
        pipeline: Pipeline description.
        base_digest: Digest for the base image; overrides the pipeline's.
        allow_unpinned: Render the mutable base reference if no digest is known.

    Returns:
        Dockerfile text.

    Raises:
        RenderError: If the base image is not pinned and allow_unpinned is False,
            or base_digest is malformed.
    """
    base = pipeline.base_image
    if base_digest is not None and not DIGEST_PATTERN.match(base_digest):
        raise RenderError(
            f"Invalid base image digest: {base_digest!r}",
            code="invalid_digest",
        )
    digest = base_digest or base.digest
    if digest:
        base_ref = base.pinned_reference(digest)
    elif allow_unpinned:
        logger.warning("Rendering unpinned base image %s", base.image)
        base_ref = base.image
    else:
        raise RenderError(
            f"Base image {base.image} is not pinned to a digest",
            code="unpinned_base_image",
        )

    graph = StageGraph.from_pipeline(pipeline)
    blocks: list[str] = [
        f"# syntax={DOCKERFILE_SYNTAX}",
        f"# Pipeline: {pipeline.name} ({pipeline.repository}:{pipeline.kind})",
    ]
    for stage in graph.topological_order():
        lines = _RENDERERS[stage.kind](pipeline, stage, base_ref)
        blocks.append("\n".join(lines))

    return "\n\n".join(blocks) + "\n"


def write_dockerfile(content: str, output_path: Path) -> Path:
    """Write rendered Dockerfile text.

    Args:
        content: Dockerfile text.
        output_path: Destination path.

    Returns:
        Path to the written file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(content, encoding="utf-8")
    logger.info("Wrote Dockerfile to %s", output_path)
    return output_path


__all__ = [
    "DOCKERFILE_SYNTAX",
    "RenderError",
    "render_cache_mount",
    "render_dockerfile",
    "write_dockerfile",
]
