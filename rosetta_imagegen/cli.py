"""Thin CLI wrapper for rosetta_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from sqlalchemy.orm import Session, sessionmaker

from rosetta_imagegen import __version__
from rosetta_imagegen.config import Settings, get_settings, print_settings_json
from rosetta_imagegen.pipeline.schema import PipelineSchema

app = typer.Typer(
    name="imagegen",
    help="Rosetta Image Generator - build and tag the aptos-core rosetta image",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "%(name)s: %(message)s"

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "running": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rosetta-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (overrides settings)"),
    ] = None,
) -> None:
    """Rosetta Image Generator - build and tag the aptos-core rosetta image."""
    configure_logging(log_level or get_settings().log_level)


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def _fail(message: str) -> typer.Exit:
    """Print an error and return the exit to raise."""
    console.print(f"[red]{message}[/red]", soft_wrap=True)
    return typer.Exit(code=1)


def _session_factory() -> sessionmaker[Session]:
    from rosetta_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _load_pipeline(settings: Settings, path: Path | None) -> PipelineSchema:
    """Load the pipeline from a file or fall back to the built-in one."""
    from rosetta_imagegen.pipeline.io import get_pipeline

    try:
        return get_pipeline(settings, path)
    except FileNotFoundError as e:
        raise _fail(f"Pipeline file not found: {e}") from None
    except ValidationError as e:
        raise _fail(f"Invalid pipeline: {e}") from None
    except ValueError as e:
        raise _fail(f"Cannot load pipeline: {e}") from None


def _build_to_dict(build: Any) -> dict[str, Any]:
    """Convert a BuildRecord to its stable JSON form."""
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
        "build_dir": build.build_dir,
        "log_path": build.log_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "artifact_count": len(build.artifacts),
    }


def _artifact_to_dict(artifact: Any) -> dict[str, Any]:
    return {
        "id": artifact.id,
        "build_id": artifact.build_id,
        "name": artifact.name,
        "path_in_image": artifact.path_in_image,
        "local_path": artifact.local_path,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "is_default_command": artifact.is_default_command,
    }


def _tag_to_dict(tag: Any) -> dict[str, Any]:
    return {
        "tag": tag.tag,
        "repository": tag.repository,
        "label": tag.label,
        "revision": tag.revision,
        "build_id": tag.build_id,
        "image_id": tag.image_id,
        "updated_at": tag.updated_at.isoformat() if tag.updated_at else None,
    }


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
    else:
        pipeline_display = (
            str(settings.pipeline_file) if settings.pipeline_file else "(built-in)"
        )
        repo_display = str(settings.repo_dir) if settings.repo_dir else "(current dir)"
        timeout_display = (
            str(settings.build_timeout) if settings.build_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Inputs:[/bold]")
        console.print(f"  Pipeline file:       {pipeline_display}")
        console.print(f"  Working copy:        {repo_display}")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Builds directory:    {settings.builds_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  Docker:              {settings.docker_bin}")
        console.print(f"  Git:                 {settings.git_bin}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Extract artifacts:   {settings.extract_artifacts}")
        console.print(f"  Latest tag policy:   {settings.latest_policy}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {timeout_display}")
        console.print(f"  Registry timeout:    {settings.registry_timeout}")


@app.command("build")
def build_cmd(
    target: Annotated[
        str,
        typer.Argument(help="Stage to build, or 'all' for the full image"),
    ] = "all",
    revision: Annotated[
        str | None,
        typer.Option("--revision", "-r", help="Revision to build (default: git HEAD)"),
    ] = None,
    repo_dir: Annotated[
        Path | None,
        typer.Option("--repo-dir", help="Working copy to resolve the revision from"),
    ] = None,
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline description file"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Rebuild even if a cached build exists"),
    ] = False,
    no_latest: Annotated[
        bool,
        typer.Option("--no-latest", help="Do not move the latest tag"),
    ] = False,
    force_latest: Annotated[
        bool,
        typer.Option("--force-latest", help="Move the latest tag regardless of history"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the image for the checked-out revision.

    Resolves the revision from the working copy, builds the pipeline with
    that revision as checkout argument, and tags the image with it. The
    latest tag is moved only after a successful full build.
    """
    from rosetta_imagegen.baseimage.resolve import RegistryError
    from rosetta_imagegen.builds.artifacts import ArtifactError
    from rosetta_imagegen.builds.revision import RevisionError, resolve_revision
    from rosetta_imagegen.builds.runner import BuildExecutionError
    from rosetta_imagegen.builds.service import BuildServiceError, build_or_reuse
    from rosetta_imagegen.pipeline.render import RenderError

    settings = get_settings()
    pipeline = _load_pipeline(settings, pipeline_file)
    work_dir = repo_dir or settings.repo_dir

    if revision is None:
        try:
            revision = resolve_revision(work_dir, git_bin=settings.git_bin)
        except RevisionError as e:
            raise _fail(f"Cannot resolve revision: {e}") from None

    factory = _session_factory()
    with factory() as session:
        try:
            build, is_cache_hit = build_or_reuse(
                session,
                pipeline,
                revision,
                settings=settings,
                target=target,
                force_rebuild=force,
                update_latest=not no_latest,
                force_latest=force_latest,
                repo_dir=work_dir,
            )
        except (
            ArtifactError,
            BuildExecutionError,
            BuildServiceError,
            RegistryError,
            RenderError,
            TimeoutError,
        ) as e:
            # Keep the failed record for `builds list`
            session.commit()
            code = getattr(e, "code", "timeout")
            if json_output:
                _print_json({"success": False, "code": code, "message": str(e)})
                raise typer.Exit(code=1) from None
            raise _fail(f"Build failed ({code}): {e}") from None
        session.commit()

        if json_output:
            output = _build_to_dict(build)
            output["is_cache_hit"] = is_cache_hit
            _print_json(output)
        elif build.is_succeeded():
            hit = " (cache hit)" if is_cache_hit else ""
            console.print(f"[green]Build #{build.id} succeeded{hit}[/green]")
            console.print(f"  Revision: {build.revision}")
            console.print(f"  Target:   {build.target}")
            console.print(f"  Image:    {build.image_id or 'N/A'}")
            for t in sorted(build.tags, key=lambda t: t.tag):
                console.print(f"  Tag:      {t.tag}")
            console.print(f"  Log:      {build.log_path}")
        else:
            console.print(f"[red]Build #{build.id} failed: {build.error_message}[/red]")
            console.print(f"  See log: {build.log_path}")

        if not build.is_succeeded():
            raise typer.Exit(code=1)


pipeline_app = typer.Typer(help="Inspect and render the build pipeline")
app.add_typer(pipeline_app, name="pipeline")


@pipeline_app.command("show")
def pipeline_show(
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline description file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the effective pipeline description."""
    from rosetta_imagegen.pipeline.io import pipeline_to_dict, pipeline_to_yaml_string

    pipeline = _load_pipeline(get_settings(), pipeline_file)
    if json_output:
        _print_json(pipeline_to_dict(pipeline))
    else:
        console.print(pipeline_to_yaml_string(pipeline), soft_wrap=True, markup=False)


@pipeline_app.command("validate")
def pipeline_validate(
    path: Annotated[Path, typer.Argument(help="Pipeline file to validate")],
) -> None:
    """Validate a pipeline file without building it."""
    from rosetta_imagegen.pipeline.graph import CyclicDependencyError, StageGraph
    from rosetta_imagegen.pipeline.io import load_pipeline

    if not path.exists():
        raise _fail(f"File not found: {path}")

    try:
        pipeline = load_pipeline(path)
        graph = StageGraph.from_pipeline(pipeline)
    except ValidationError as e:
        console.print(f"[red]Validation failed:[/red] {path}")
        for error in e.errors():
            loc = ".".join(str(part) for part in error["loc"])
            console.print(f"  {loc or '(root)'}: {error['msg']}", markup=False)
        raise typer.Exit(code=1) from None
    except (CyclicDependencyError, ValueError) as e:
        raise _fail(f"Validation failed: {e}") from None

    order = " -> ".join(s.name for s in graph.topological_order())
    console.print(f"[green]Valid pipeline:[/green] {pipeline.name}")
    console.print(f"  Stages: {order}")


@pipeline_app.command("render")
def pipeline_render(
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline description file"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the Dockerfile here"),
    ] = None,
    base_digest: Annotated[
        str | None,
        typer.Option("--base-digest", help="Pin the base image to this digest"),
    ] = None,
    allow_unpinned: Annotated[
        bool,
        typer.Option("--allow-unpinned", help="Render an unpinned base image"),
    ] = False,
) -> None:
    """Render the pipeline as a multi-stage Dockerfile."""
    from rosetta_imagegen.baseimage.resolve import RegistryError, pin_base_image
    from rosetta_imagegen.pipeline.render import (
        RenderError,
        render_dockerfile,
        write_dockerfile,
    )

    settings = get_settings()
    pipeline = _load_pipeline(settings, pipeline_file)

    if base_digest is None and not allow_unpinned:
        try:
            base_digest = pin_base_image(
                pipeline, offline=settings.offline, timeout=settings.registry_timeout
            )
        except RegistryError as e:
            raise _fail(f"Cannot pin base image ({e.code}): {e}") from None

    try:
        content = render_dockerfile(
            pipeline, base_digest=base_digest, allow_unpinned=allow_unpinned
        )
    except RenderError as e:
        raise _fail(f"Cannot render ({e.code}): {e}") from None

    if output is None:
        console.print(content, soft_wrap=True, markup=False, highlight=False)
    else:
        write_dockerfile(content, output)
        console.print(f"[green]Wrote Dockerfile to {output}[/green]")


@pipeline_app.command("plan")
def pipeline_plan(
    target: Annotated[
        str,
        typer.Argument(help="Stage to build, or 'all' for the full image"),
    ] = "all",
    revision: Annotated[
        str | None,
        typer.Option("--revision", "-r", help="Show the tags for this revision"),
    ] = None,
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline description file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the stages a build target runs, in build order."""
    from rosetta_imagegen.builds.revision import validate_revision
    from rosetta_imagegen.builds.tags import compose_tags, latest_tag
    from rosetta_imagegen.pipeline.graph import StageGraph, UnknownStageError

    pipeline = _load_pipeline(get_settings(), pipeline_file)
    graph = StageGraph.from_pipeline(pipeline)

    try:
        stages = graph.stages_for_target(target)
    except UnknownStageError as e:
        raise _fail(str(e)) from None

    full_build = graph.is_full_build(target)
    tags: list[str] = []
    if revision is not None:
        try:
            revision = validate_revision(revision)
        except ValueError as e:
            raise _fail(str(e)) from None
        stage = None if full_build else target
        tags = [str(t) for t in compose_tags(pipeline, revision, stage)]
        if full_build:
            tags.append(str(latest_tag(pipeline.repository, pipeline.kind)))

    if json_output:
        _print_json(
            {
                "target": target,
                "full_build": full_build,
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
                "tags": tags,
            }
        )
        return

    console.print(f"[bold]Build plan for '{target}':[/bold]")
    for i, s in enumerate(stages, 1):
        deps = ", ".join(s.depends_on) or "-"
        console.print(
            f"  {i}. {s.name} ({s.kind.value}) from {s.image}; needs: {deps}",
            markup=False,
        )
    for t in tags:
        console.print(f"  Tag: {t}")


@pipeline_app.command("pin")
def pipeline_pin(
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline description file"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the pinned pipeline here"),
    ] = None,
) -> None:
    """Resolve the base image tag to a digest and record it in the pipeline."""
    from rosetta_imagegen.baseimage.resolve import RegistryError, resolve_digest
    from rosetta_imagegen.pipeline.io import pipeline_to_yaml_string, save_pipeline

    settings = get_settings()
    pipeline = _load_pipeline(settings, pipeline_file)

    if settings.offline:
        raise _fail("Cannot pin the base image in offline mode")

    try:
        digest = resolve_digest(
            pipeline.base_image.image, timeout=settings.registry_timeout
        )
    except RegistryError as e:
        raise _fail(f"Cannot pin base image ({e.code}): {e}") from None

    pinned = pipeline.model_copy(
        update={"base_image": pipeline.base_image.model_copy(update={"digest": digest})}
    )

    destination = output or pipeline_file or settings.pipeline_file
    if destination is None:
        console.print(pipeline_to_yaml_string(pinned), soft_wrap=True, markup=False)
        return

    save_pipeline(pinned, destination)
    console.print(
        f"[green]Pinned {pipeline.base_image.image} to {digest}[/green] in {destination}"
    )


builds_app = typer.Typer(help="Inspect build records")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    revision: Annotated[
        str | None,
        typer.Option("--revision", "-r", help="Filter by revision (prefix)"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from rosetta_imagegen.builds.service import list_builds
    from rosetta_imagegen.types import BuildStatus

    # Parse status filter
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        builds = list_builds(
            session, revision=revision, status=status_filter, limit=limit
        )

        if not builds:
            if json_output:
                _print_json([])
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            _print_json([_build_to_dict(b) for b in builds])
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            color = STATUS_COLORS.get(b.status, "white")
            console.print(f"  [{color}]Build #{b.id}[/{color}]")
            console.print(f"    Revision: {b.revision}")
            console.print(f"    Target: {b.target}")
            console.print(f"    Status: {b.status}")
            console.print(
                f"    Requested: {b.requested_at.isoformat() if b.requested_at else 'N/A'}"
            )
            console.print(f"    Artifacts: {len(b.artifacts)}")
            if b.error_message:
                console.print(f"    Error: {b.error_message}", markup=False)
            console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a build."""
    from rosetta_imagegen.builds.service import BuildNotFoundError, get_build

    factory = _session_factory()
    with factory() as session:
        try:
            build = get_build(session, build_id)
        except BuildNotFoundError:
            raise _fail(f"Build not found: {build_id}") from None

        if json_output:
            output = _build_to_dict(build)
            output["input_snapshot"] = build.input_snapshot
            _print_json(output)
            return

        color = STATUS_COLORS.get(build.status, "white")
        console.print(f"[bold]Build #{build.id}[/bold]")
        console.print()
        console.print(f"  Status:      [{color}]{build.status}[/{color}]")
        console.print(f"  Revision:    {build.revision}")
        console.print(f"  Target:      {build.target}")
        console.print(f"  Cache key:   {build.cache_key}")
        console.print(f"  Base digest: {build.base_image_digest or 'N/A'}")
        console.print(f"  Image:       {build.image_id or 'N/A'}")
        for t in sorted(build.tags, key=lambda t: t.tag):
            console.print(f"  Tag:         {t.tag}")
        console.print(f"  Dockerfile:  {build.dockerfile_path or 'N/A'}")
        console.print(f"  Log:         {build.log_path or 'N/A'}")
        if build.error_message:
            console.print(f"  Error:       {build.error_type}: {build.error_message}")


artifacts_app = typer.Typer(help="Inspect binaries recorded for builds")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("list")
def artifacts_list(
    build_id: Annotated[int, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the binaries shipped in a build's image."""
    from rosetta_imagegen.builds.service import BuildNotFoundError, get_build_artifacts

    factory = _session_factory()
    with factory() as session:
        try:
            artifacts = get_build_artifacts(session, build_id)
        except BuildNotFoundError:
            raise _fail(f"Build not found: {build_id}") from None

        if json_output:
            _print_json([_artifact_to_dict(a) for a in artifacts])
            return

        if not artifacts:
            console.print("[yellow]No artifacts recorded for this build[/yellow]")
            return

        console.print(f"[bold]Found {len(artifacts)} artifact(s):[/bold]")
        console.print()
        for a in artifacts:
            default = " (default command)" if a.is_default_command else ""
            console.print(f"  [green]{a.name}[/green]{default}")
            console.print(f"    Path: {a.path_in_image}")
            console.print(f"    Size: {a.size_bytes:,} bytes")
            console.print(f"    SHA256: {a.sha256}")
            console.print()


tags_app = typer.Typer(help="Inspect image tags")
app.add_typer(tags_app, name="tags")


@tags_app.command("list")
def tags_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded image tags and the revisions they point at."""
    from rosetta_imagegen.builds.service import list_tags

    factory = _session_factory()
    with factory() as session:
        tags = list_tags(session)

        if json_output:
            _print_json([_tag_to_dict(t) for t in tags])
            return

        if not tags:
            console.print("[yellow]No tags recorded[/yellow]")
            return

        for t in tags:
            console.print(f"  {t.tag} -> {t.revision} (build #{t.build_id})")


@app.command()
def verify(
    first: Annotated[int, typer.Argument(help="First build ID")],
    second: Annotated[int, typer.Argument(help="Second build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check that two builds produced byte-identical binaries."""
    from rosetta_imagegen.builds.service import (
        BuildNotFoundError,
        BuildServiceError,
        compare_builds,
    )

    factory = _session_factory()
    with factory() as session:
        try:
            report = compare_builds(session, first, second)
        except BuildNotFoundError as e:
            raise _fail(f"Build not found: {e.build_id}") from None
        except BuildServiceError as e:
            raise _fail(str(e)) from None

    if json_output:
        _print_json(report.to_dict())
    else:
        for name in report.matching:
            console.print(f"  [green]same[/green]     {name}")
        for name in report.differing:
            console.print(f"  [red]differs[/red]  {name}")
        for name in report.missing:
            console.print(f"  [yellow]missing[/yellow]  {name}")
        if report.reproducible:
            console.print(f"[green]Builds {first} and {second} are reproducible[/green]")
        else:
            console.print(f"[red]Builds {first} and {second} differ[/red]")

    if not report.reproducible:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
