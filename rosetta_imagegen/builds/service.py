"""Build service module.

This module provides the high-level build API:
- build_or_reuse(): Main entry point - build with cache awareness
- promote_latest(): Move the floating latest tag after a successful build
- Cache lookup by key
- Locking to prevent duplicate builds and racing tag updates
- Build record, artifact and tag persistence
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rosetta_imagegen.baseimage.resolve import pin_base_image
from rosetta_imagegen.builds.artifacts import (
    ArtifactError,
    ReproducibilityReport,
    compare_artifacts,
    describe_artifacts,
    extract_artifacts,
    generate_manifest,
    write_manifest,
)
from rosetta_imagegen.builds.cache_key import compute_cache_key_from_pipeline
from rosetta_imagegen.builds.models import Artifact, BuildRecord, ImageTagRecord
from rosetta_imagegen.builds.revision import is_ancestor, validate_revision
from rosetta_imagegen.builds.runner import (
    BuildExecutionError,
    check_tool_available,
    inspect_image_id,
    run_build,
    tag_image,
)
from rosetta_imagegen.builds.tags import ImageTag, compose_tags, latest_tag
from rosetta_imagegen.config import get_settings
from rosetta_imagegen.pipeline.graph import ALL_TARGETS, StageGraph, UnknownStageError
from rosetta_imagegen.pipeline.render import render_dockerfile, write_dockerfile
from rosetta_imagegen.types import ArtifactInfo, BuildStatus, LatestPolicy

if TYPE_CHECKING:
    import httpx

    from rosetta_imagegen.config import Settings
    from rosetta_imagegen.pipeline.schema import PipelineSchema

logger = logging.getLogger(__name__)

# Seconds to wait for another invocation holding the same lock
LOCK_TIMEOUT = 300


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class TagNotFoundError(Exception):
    """Raised when no build is recorded for an image tag."""

    def __init__(self, tag: str, code: str = "tag_not_found") -> None:
        super().__init__(f"Tag not found: {tag}")
        self.tag = tag
        self.code = code


class BuildServiceError(Exception):
    """Base error for build service operations."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


@contextmanager
def build_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a build cache key.

    Uses a file-based lock to prevent concurrent builds with the same key.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key (or any other lock name) to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    # Create safe filename from cache key
    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"build_{safe_key}.lock"

    logger.debug("Acquiring build lock for key: %s", cache_key[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {cache_key[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired for key: %s", cache_key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for key: %s", cache_key[:32])
        os.close(fd)


def _get_cached_build(
    session: Session,
    cache_key: str,
) -> BuildRecord | None:
    """Find an existing successful build with the same cache key.

    Args:
        session: Database session.
        cache_key: Cache key to look up.

    Returns:
        BuildRecord if found, None otherwise.
    """
    stmt = (
        select(BuildRecord)
        .where(
            BuildRecord.cache_key == cache_key,
            BuildRecord.status == BuildStatus.SUCCEEDED.value,
        )
        .order_by(BuildRecord.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def _resolve_target(pipeline: PipelineSchema, target: str | None) -> str:
    """Validate a build target and return its recorded form.

    The final stage and 'all' both mean the full pipeline.

    Raises:
        BuildServiceError: If the target is not a stage of the pipeline.
    """
    graph = StageGraph.from_pipeline(pipeline)
    if graph.is_full_build(target):
        return ALL_TARGETS
    try:
        return graph.get(str(target)).name
    except UnknownStageError as e:
        raise BuildServiceError(str(e), code="unknown_stage") from e


def _record_tag(
    session: Session,
    tag: ImageTag,
    build: BuildRecord,
) -> ImageTagRecord:
    """Create or move the pointer for a tag to a build."""
    tag_str = str(tag)
    record = session.execute(
        select(ImageTagRecord).where(ImageTagRecord.tag == tag_str)
    ).scalar_one_or_none()

    if record is None:
        record = ImageTagRecord(
            tag=tag_str,
            repository=tag.repository,
            label=tag.label,
        )
        session.add(record)

    record.revision = build.revision
    record.build = build
    record.image_id = build.image_id
    record.updated_at = datetime.now()
    session.flush()
    return record


def _create_artifact_record(
    session: Session,
    build: BuildRecord,
    artifact_info: ArtifactInfo,
    local_path: str | None = None,
) -> Artifact:
    """Create an Artifact record from ArtifactInfo.

    Args:
        session: Database session.
        build: Parent BuildRecord.
        artifact_info: Described artifact information.
        local_path: Optional path of the extracted copy.

    Returns:
        Created Artifact record.
    """
    artifact = Artifact(
        build=build,
        name=artifact_info.name,
        path_in_image=artifact_info.path_in_image,
        local_path=local_path,
        size_bytes=artifact_info.size_bytes,
        sha256=artifact_info.sha256,
        is_default_command=artifact_info.is_default_command,
    )
    session.add(artifact)
    return artifact


def _collect_artifacts(
    session: Session,
    build: BuildRecord,
    pipeline: PipelineSchema,
    build_dir: Path,
    settings: Settings,
) -> list[ArtifactInfo]:
    """Copy the shipped binaries out of the built image and persist them."""
    runtime = pipeline.runtime
    artifact_dir = build_dir / "artifacts"
    paths = extract_artifacts(
        image=build.image_id or "",
        names=pipeline.builder.target_names,
        install_dir=runtime.install_dir,
        dest_dir=artifact_dir,
        docker_bin=settings.docker_bin,
    )
    artifacts = describe_artifacts(paths, runtime.install_dir, runtime.command)
    for info, path in zip(artifacts, paths, strict=True):
        _create_artifact_record(session, build, info, local_path=str(path))
    session.flush()
    return artifacts


def build_or_reuse(
    session: Session,
    pipeline: PipelineSchema,
    revision: str,
    settings: Settings | None = None,
    target: str | None = None,
    force_rebuild: bool = False,
    update_latest: bool = True,
    force_latest: bool = False,
    repo_dir: Path | None = None,
    registry_client: httpx.Client | None = None,
) -> tuple[BuildRecord, bool]:
    """Build the pipeline for a revision or reuse an existing build if cached.

    This is the main entry point for the build pipeline. It:
    1. Validates the revision and target stage
    2. Pins the base image to a digest
    3. Computes the cache key from all inputs
    4. Checks for an existing successful build with the same cache key,
       still moving the latest tag to it when that was skipped before
    5. If not found (or force_rebuild), renders the Dockerfile and runs the build
    6. Persists BuildRecord, Artifact and tag records
    7. Moves the latest tag for full builds

    A failed build records nothing but the failed BuildRecord: no tag is
    written and the latest tag keeps pointing at the previous image.

    Args:
        session: Database session.
        pipeline: Pipeline description.
        revision: Source revision, used for both checkout and tags.
        settings: Application settings.
        target: Stage to stop at (None or 'all' for the full pipeline).
        force_rebuild: Force rebuild even if cached.
        update_latest: Move the latest tag after a successful full build.
        force_latest: Move the latest tag regardless of revision ancestry.
        repo_dir: Working copy used for ancestry checks.
        registry_client: Optional HTTPX client for base image resolution.

    Returns:
        Tuple of (BuildRecord, is_cache_hit).

    Raises:
        BuildServiceError: If the revision or target is invalid.
        RegistryError: If the base image cannot be pinned.
        BuildExecutionError: If build execution fails to start or times out.
        ArtifactError: If the built image lacks a declared binary.
    """
    if settings is None:
        settings = get_settings()

    try:
        revision = validate_revision(revision)
    except ValueError as e:
        raise BuildServiceError(str(e), code="invalid_revision") from e

    record_target = _resolve_target(pipeline, target)
    target_stage = None if record_target == ALL_TARGETS else record_target

    check_tool_available(settings.docker_bin)

    base_digest = pin_base_image(
        pipeline,
        offline=settings.offline,
        client=registry_client,
        timeout=settings.registry_timeout,
    )

    cache_key, build_inputs = compute_cache_key_from_pipeline(
        pipeline=pipeline,
        revision=revision,
        target=record_target,
        base_digest=base_digest,
    )
    logger.info("Computed cache key: %s", cache_key[:32])

    lock_dir = settings.cache_dir / ".locks"

    with build_lock(lock_dir, cache_key, timeout=LOCK_TIMEOUT):
        # Check for cached build (after acquiring lock)
        if not force_rebuild:
            cached = _get_cached_build(session, cache_key)
            if cached is not None:
                logger.info(
                    "Cache hit for key %s, reusing build %d",
                    cache_key[:32],
                    cached.id,
                )
                # A skipped or failed promotion is retried on reuse
                if target_stage is None and update_latest:
                    promote_latest(
                        session,
                        cached,
                        pipeline,
                        settings=settings,
                        repo_dir=repo_dir,
                        force=force_latest,
                    )
                return cached, True

        build = BuildRecord(
            revision=revision,
            target=record_target,
            cache_key=cache_key,
            input_snapshot=build_inputs.to_dict(),
            base_image_digest=base_digest,
            status=BuildStatus.PENDING.value,
        )
        session.add(build)
        session.flush()
        logger.info("Created build record %d", build.id)

        build_id_str = f"{build.id:08d}_{uuid.uuid4().hex[:8]}"
        build_dir = settings.builds_dir / revision / record_target / build_id_str
        build_dir.mkdir(parents=True, exist_ok=True)
        # The pipeline clones its own source; nothing is sent as context
        context_dir = build_dir / "context"
        context_dir.mkdir(exist_ok=True)

        dockerfile = write_dockerfile(
            render_dockerfile(pipeline, base_digest=base_digest),
            build_dir / "Dockerfile",
        )

        build.build_dir = str(build_dir)
        build.dockerfile_path = str(dockerfile)
        build.mark_running()
        session.flush()

        tags = compose_tags(pipeline, revision, target_stage)

        try:
            result = run_build(
                dockerfile=dockerfile,
                context_dir=context_dir,
                build_dir=build_dir,
                revision=revision,
                tags=tags,
                target=target_stage,
                revision_arg=pipeline.builder.revision_arg,
                docker_bin=settings.docker_bin,
                timeout=settings.build_timeout,
            )
        except BuildExecutionError as e:
            build.mark_failed(error_type=e.code, message=str(e))
            session.flush()
            raise

        build.log_path = str(result.log_path)

        if not result.success:
            build.mark_failed(error_type="build_failed", message=result.error_message)
            session.flush()
            logger.error("Build %d failed: %s", build.id, result.error_message)
            return build, False

        try:
            build.image_id = inspect_image_id(str(tags[0]), settings.docker_bin)

            artifacts: list[ArtifactInfo] = []
            if target_stage is None and settings.extract_artifacts:
                artifacts = _collect_artifacts(
                    session, build, pipeline, build_dir, settings
                )
        except (ArtifactError, BuildExecutionError) as e:
            build.mark_failed(error_type=e.code, message=str(e))
            session.flush()
            raise

        manifest = generate_manifest(
            artifacts=artifacts,
            build_id=build.id,
            revision=revision,
            image_id=build.image_id,
            tags=[str(t) for t in tags],
            cache_key=cache_key,
            build_inputs=build_inputs.to_dict(),
        )
        write_manifest(manifest, build_dir / "manifest.json")

        for tag in tags:
            _record_tag(session, tag, build)

        build.mark_succeeded()
        session.flush()
        logger.info(
            "Build %d succeeded as %s with %d artifacts",
            build.id,
            ", ".join(str(t) for t in tags),
            len(artifacts),
        )

    if target_stage is None and update_latest:
        promote_latest(
            session,
            build,
            pipeline,
            settings=settings,
            repo_dir=repo_dir,
            force=force_latest,
        )

    return build, False


def promote_latest(
    session: Session,
    build: BuildRecord,
    pipeline: PipelineSchema,
    settings: Settings | None = None,
    repo_dir: Path | None = None,
    force: bool = False,
) -> bool:
    """Point the floating latest tag at a successful full build.

    Under the default ancestry policy the tag only moves forward: a build
    of a revision that is not a descendant of the currently tagged one
    leaves the tag alone, so concurrent invocations for different
    revisions cannot regress it.

    Args:
        session: Database session.
        build: Succeeded full-pipeline build.
        pipeline: Pipeline the build came from.
        settings: Application settings.
        repo_dir: Working copy used for the ancestry check.
        force: Move the tag regardless of policy.

    Returns:
        True if the tag now points at the build, False if it was left alone.

    Raises:
        BuildServiceError: If the build is not a succeeded full build.
        BuildExecutionError: If docker fails to tag the image.
    """
    if settings is None:
        settings = get_settings()

    if not build.is_succeeded() or not build.is_full_build:
        raise BuildServiceError(
            f"Build {build.id} is not a succeeded full-pipeline build",
            code="not_promotable",
        )

    tag = latest_tag(pipeline.repository, pipeline.kind)
    tag_str = str(tag)

    with build_lock(settings.cache_dir / ".locks", tag_str, timeout=LOCK_TIMEOUT):
        current = session.execute(
            select(ImageTagRecord).where(ImageTagRecord.tag == tag_str)
        ).scalar_one_or_none()

        if not _should_promote(current, build, settings, repo_dir, force):
            logger.warning(
                "Not moving %s from %s to %s: not a newer revision",
                tag_str,
                current.revision if current else None,
                build.revision,
            )
            return False

        source = build.image_id or str(
            compose_tags(pipeline, build.revision)[0]
        )
        tag_image(source, tag_str, docker_bin=settings.docker_bin)
        _record_tag(session, tag, build)

    logger.info("Moved %s to revision %s", tag_str, build.revision)
    return True


def _should_promote(
    current: ImageTagRecord | None,
    build: BuildRecord,
    settings: Settings,
    repo_dir: Path | None,
    force: bool,
) -> bool:
    if current is None or force or current.revision == build.revision:
        return True
    if settings.latest_policy == LatestPolicy.ALWAYS.value:
        return True
    ancestry = is_ancestor(
        repo_dir or settings.repo_dir or Path.cwd(),
        current.revision,
        build.revision,
        git_bin=settings.git_bin,
    )
    return ancestry is True


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def get_build_or_none(session: Session, build_id: int) -> BuildRecord | None:
    """Get a build record by ID, or None if not found."""
    return session.get(BuildRecord, build_id)


def list_builds(
    session: Session,
    revision: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        revision: Filter by revision (prefix match).
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if revision is not None:
        stmt = stmt.where(BuildRecord.revision.startswith(revision.lower()))
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_build_artifacts(session: Session, build_id: int) -> list[Artifact]:
    """Get artifacts for a build.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = get_build(session, build_id)
    return list(build.artifacts)


def list_tags(session: Session, repository: str | None = None) -> list[ImageTagRecord]:
    """List recorded image tags, most recently moved first."""
    stmt = select(ImageTagRecord)
    if repository is not None:
        stmt = stmt.where(ImageTagRecord.repository == repository)
    stmt = stmt.order_by(ImageTagRecord.updated_at.desc(), ImageTagRecord.id.desc())
    return list(session.execute(stmt).scalars().all())


def get_tag(session: Session, tag: str) -> ImageTagRecord:
    """Get the record for an image tag.

    Raises:
        TagNotFoundError: If the tag was never recorded.
    """
    record = session.execute(
        select(ImageTagRecord).where(ImageTagRecord.tag == tag)
    ).scalar_one_or_none()
    if record is None:
        raise TagNotFoundError(tag)
    return record


def compare_builds(
    session: Session,
    first_id: int,
    second_id: int,
) -> ReproducibilityReport:
    """Compare artifact checksums of two builds.

    Raises:
        BuildNotFoundError: If either build does not exist.
        BuildServiceError: If either build has no recorded artifacts.
    """
    checksums: list[dict[str, Any]] = []
    for build_id in (first_id, second_id):
        artifacts = get_build_artifacts(session, build_id)
        if not artifacts:
            raise BuildServiceError(
                f"Build {build_id} has no recorded artifacts",
                code="no_artifacts",
            )
        checksums.append({a.name: a.sha256 for a in artifacts})
    return compare_artifacts(checksums[0], checksums[1])


__all__ = [
    "LOCK_TIMEOUT",
    "BuildNotFoundError",
    "BuildServiceError",
    "TagNotFoundError",
    "build_lock",
    "build_or_reuse",
    "compare_builds",
    "get_build",
    "get_build_artifacts",
    "get_build_or_none",
    "get_tag",
    "list_builds",
    "list_tags",
    "promote_latest",
]
