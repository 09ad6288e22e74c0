"""Tests for builds/service.py module.

Tests build service operations with mocked docker, git and registry.
"""

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rosetta_imagegen.builds.artifacts import ArtifactError
from rosetta_imagegen.builds.models import Artifact, BuildRecord
from rosetta_imagegen.builds.runner import BuildExecutionError, BuildResult
from rosetta_imagegen.builds.service import (
    BuildNotFoundError,
    BuildServiceError,
    TagNotFoundError,
    build_lock,
    build_or_reuse,
    compare_builds,
    get_build,
    get_build_artifacts,
    get_build_or_none,
    get_tag,
    list_builds,
    list_tags,
    promote_latest,
)
from rosetta_imagegen.config import Settings
from rosetta_imagegen.db import Base
from rosetta_imagegen.pipeline.defaults import default_pipeline
from rosetta_imagegen.types import BuildStatus

SHA_A = "1111111111111111111111111111111111111111"
SHA_B = "2222222222222222222222222222222222222222"
DIGEST = "sha256:" + "d1" * 32
IMAGE_ID = "sha256:" + "e2" * 32
LATEST = "aptos-core:rosetta-latest"


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing all state at tmp_path."""
    return Settings(
        cache_dir=tmp_path / "cache",
        builds_dir=tmp_path / "builds",
        db_url="sqlite:///:memory:",
        repo_dir=tmp_path,
    )


@pytest.fixture
def pipeline():
    """Built-in pipeline."""
    return default_pipeline()


def fake_run_build(success: bool = True):
    """Return a run_build replacement that writes a log and reports status."""

    def run(**kwargs):
        log_path = kwargs["build_dir"] / "build.log"
        log_path.write_text("# build\n")
        now = datetime.now(timezone.utc)
        return BuildResult(
            success=success,
            exit_code=0 if success else 101,
            log_path=log_path,
            started_at=now,
            finished_at=now,
            command="docker buildx build",
            tags=[str(t) for t in kwargs["tags"]],
            error_message=None if success else "Build failed with exit code 101",
        )

    return run


def fake_extract(image, names, install_dir, dest_dir, docker_bin="docker"):
    """Write one file per binary, as docker cp would."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = dest_dir / name
        path.write_bytes(f"elf {name}".encode())
        paths.append(path)
    return paths


@pytest.fixture
def docker():
    """Patch every external tool the service touches."""
    with (
        patch("rosetta_imagegen.builds.service.check_tool_available") as check,
        patch(
            "rosetta_imagegen.builds.service.pin_base_image", return_value=DIGEST
        ) as pin,
        patch(
            "rosetta_imagegen.builds.service.run_build",
            side_effect=fake_run_build(),
        ) as run,
        patch(
            "rosetta_imagegen.builds.service.inspect_image_id", return_value=IMAGE_ID
        ) as inspect,
        patch(
            "rosetta_imagegen.builds.service.extract_artifacts",
            side_effect=fake_extract,
        ) as extract,
        patch("rosetta_imagegen.builds.service.tag_image") as tag,
        patch(
            "rosetta_imagegen.builds.service.is_ancestor", return_value=True
        ) as ancestor,
    ):
        yield SimpleNamespace(
            check=check,
            pin=pin,
            run=run,
            inspect=inspect,
            extract=extract,
            tag=tag,
            ancestor=ancestor,
        )


def make_build(session, revision=SHA_A, status=BuildStatus.SUCCEEDED, **kwargs):
    """Insert a bare build record."""
    build = BuildRecord(
        revision=revision,
        cache_key=kwargs.pop("cache_key", f"sha256:{revision}"),
        status=status.value,
        **kwargs,
    )
    session.add(build)
    session.commit()
    return build


class TestBuildLock:
    """Tests for build_lock context manager."""

    def test_acquires_and_releases_lock(self, tmp_path):
        """Should acquire and release lock."""
        lock_dir = tmp_path / "locks"

        with build_lock(lock_dir, "sha256:testkey"):
            lock_file = lock_dir / "build_sha256_testkey.lock"
            assert lock_file.exists()

        # Lock released (file still exists but unlocked)
        assert lock_file.exists()

    def test_creates_lock_directory(self, tmp_path):
        """Should create lock directory if needed."""
        lock_dir = tmp_path / "deep" / "nested" / "locks"

        with build_lock(lock_dir, "sha256:testkey"):
            assert lock_dir.exists()

    def test_tag_names_are_safe(self, tmp_path):
        """Tag strings with '/' and ':' make valid lock file names."""
        with build_lock(tmp_path, "ghcr.io/aptos/core:rosetta-latest"):
            assert (tmp_path / "build_ghcr.io_aptos_core_rosetta-latest.lock").exists()

    def test_reentrant_with_different_keys(self, tmp_path):
        """Should allow locks on different keys."""
        with build_lock(tmp_path, "sha256:key1"), build_lock(tmp_path, "sha256:key2"):
            assert (tmp_path / "build_sha256_key1.lock").exists()
            assert (tmp_path / "build_sha256_key2.lock").exists()

    def test_timeout_when_held(self, tmp_path):
        """A held lock times out for a second acquirer."""
        with build_lock(tmp_path, "sha256:busy"):
            with pytest.raises(TimeoutError):
                with build_lock(tmp_path, "sha256:busy", timeout=0.2):
                    pass


class TestBuildOrReuse:
    """Tests for build_or_reuse with mocked tools."""

    def test_full_build(self, session, pipeline, settings, docker):
        """A full build records the image, artifacts and both tags."""
        build, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is False
        assert build.status == BuildStatus.SUCCEEDED.value
        assert build.target == "all"
        assert build.image_id == IMAGE_ID
        assert build.base_image_digest == DIGEST
        assert build.started_at is not None
        assert build.finished_at is not None
        assert sorted(t.tag for t in build.tags) == [
            f"aptos-core:rosetta-{SHA_A}",
            LATEST,
        ]

    def test_revision_feeds_argument_and_tag(self, session, pipeline, settings, docker):
        """The checkout argument and the tag use one revision value."""
        build_or_reuse(session, pipeline, f" {SHA_A}\n", settings)

        kwargs = docker.run.call_args.kwargs
        assert kwargs["revision"] == SHA_A
        assert kwargs["revision_arg"] == "GIT_SHA"
        assert kwargs["target"] is None
        assert [str(t) for t in kwargs["tags"]] == [f"aptos-core:rosetta-{SHA_A}"]

    def test_dockerfile_pinned(self, session, pipeline, settings, docker):
        """The rendered Dockerfile uses the resolved digest."""
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        content = Path(build.dockerfile_path).read_text()
        assert f"debian:bullseye@{DIGEST}" in content

    def test_empty_context(self, session, pipeline, settings, docker):
        """Nothing from the workspace is sent as build context."""
        build_or_reuse(session, pipeline, SHA_A, settings)

        context_dir = docker.run.call_args.kwargs["context_dir"]
        assert context_dir.is_dir()
        assert list(context_dir.iterdir()) == []

    def test_artifacts_recorded(self, session, pipeline, settings, docker):
        """Both binaries are recorded with the API server as default."""
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        artifacts = {a.name: a for a in get_build_artifacts(session, build.id)}
        assert set(artifacts) == {"aptos-node", "aptos-rosetta"}
        assert artifacts["aptos-rosetta"].is_default_command
        assert not artifacts["aptos-node"].is_default_command
        assert artifacts["aptos-node"].path_in_image == "/usr/local/bin/aptos-node"

    def test_manifest_written(self, session, pipeline, settings, docker):
        """A manifest is written next to the build log."""
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        manifest = settings.builds_dir / SHA_A / "all"
        assert list(manifest.glob("*/manifest.json"))
        assert build.log_path.endswith("build.log")

    def test_extraction_disabled(self, session, pipeline, settings, docker):
        """Artifacts are skipped when extraction is off."""
        settings.extract_artifacts = False
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        docker.extract.assert_not_called()
        assert build.artifacts == []
        assert build.is_succeeded()

    def test_cache_hit(self, session, pipeline, settings, docker):
        """Same inputs reuse the previous build without running docker."""
        first, _ = build_or_reuse(session, pipeline, SHA_A, settings)
        second, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is True
        assert second.id == first.id
        assert docker.run.call_count == 1

    def test_force_rebuild(self, session, pipeline, settings, docker):
        """force_rebuild ignores the cache."""
        first, _ = build_or_reuse(session, pipeline, SHA_A, settings)
        second, is_cache_hit = build_or_reuse(
            session, pipeline, SHA_A, settings, force_rebuild=True
        )

        assert is_cache_hit is False
        assert second.id != first.id
        assert docker.run.call_count == 2

    def test_new_base_digest_rebuilds(self, session, pipeline, settings, docker):
        """A moved base image is a cache miss."""
        build_or_reuse(session, pipeline, SHA_A, settings)
        docker.pin.return_value = "sha256:" + "f0" * 32
        _, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is False

    def test_failed_build(self, session, pipeline, settings, docker):
        """A failed build records the failure and applies no tags."""
        docker.run.side_effect = fake_run_build(success=False)

        build, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is False
        assert build.status == BuildStatus.FAILED.value
        assert build.error_type == "build_failed"
        assert build.tags == []
        docker.tag.assert_not_called()
        docker.inspect.assert_not_called()

    def test_failure_keeps_previous_latest(self, session, pipeline, settings, docker):
        """The floating tag keeps pointing at the last good image."""
        good, _ = build_or_reuse(session, pipeline, SHA_A, settings)
        docker.run.side_effect = fake_run_build(success=False)

        bad, _ = build_or_reuse(session, pipeline, SHA_B, settings)

        assert bad.status == BuildStatus.FAILED.value
        latest = get_tag(session, LATEST)
        assert latest.build_id == good.id
        assert latest.revision == SHA_A

    def test_failed_build_not_reused(self, session, pipeline, settings, docker):
        """Failed builds never satisfy the cache."""
        docker.run.side_effect = fake_run_build(success=False)
        build_or_reuse(session, pipeline, SHA_A, settings)
        docker.run.side_effect = fake_run_build()

        build, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is False
        assert build.is_succeeded()

    def test_execution_error(self, session, pipeline, settings, docker):
        """Timeouts mark the build failed and propagate."""
        docker.run.side_effect = BuildExecutionError(
            "Build timed out", exit_code=-1, code="build_timeout"
        )

        with pytest.raises(BuildExecutionError):
            build_or_reuse(session, pipeline, SHA_A, settings)

        build = list_builds(session)[0]
        assert build.status == BuildStatus.FAILED.value
        assert build.error_type == "build_timeout"

    def test_missing_artifact(self, session, pipeline, settings, docker):
        """An image without a declared binary is a failed build."""
        docker.extract.side_effect = ArtifactError(
            "Artifact aptos-rosetta missing", code="artifact_missing"
        )

        with pytest.raises(ArtifactError):
            build_or_reuse(session, pipeline, SHA_A, settings)

        build = list_builds(session)[0]
        assert build.status == BuildStatus.FAILED.value
        assert build.error_type == "artifact_missing"
        assert build.tags == []
        docker.tag.assert_not_called()

    def test_partial_build(self, session, pipeline, settings, docker):
        """Stopping at the builder stage uses a stage tag and skips latest."""
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings, target="builder")

        assert build.target == "builder"
        assert [t.tag for t in build.tags] == [f"aptos-core:rosetta-builder-{SHA_A}"]
        assert docker.run.call_args.kwargs["target"] == "builder"
        docker.extract.assert_not_called()
        docker.tag.assert_not_called()
        with pytest.raises(TagNotFoundError):
            get_tag(session, LATEST)

    def test_final_stage_is_full_build(self, session, pipeline, settings, docker):
        """Naming the runtime stage is the same as building everything."""
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings, target="runtime")

        assert build.target == "all"
        assert docker.run.call_args.kwargs["target"] is None

    def test_unknown_target(self, session, pipeline, settings, docker):
        """Unknown stages are rejected before anything runs."""
        with pytest.raises(BuildServiceError) as exc_info:
            build_or_reuse(session, pipeline, SHA_A, settings, target="deploy")

        assert exc_info.value.code == "unknown_stage"
        docker.run.assert_not_called()

    def test_invalid_revision(self, session, pipeline, settings, docker):
        """Revisions must be commit hashes."""
        with pytest.raises(BuildServiceError) as exc_info:
            build_or_reuse(session, pipeline, "main", settings)

        assert exc_info.value.code == "invalid_revision"
        assert list_builds(session) == []

    def test_no_latest_update(self, session, pipeline, settings, docker):
        """update_latest=False leaves the floating tag alone."""
        build_or_reuse(session, pipeline, SHA_A, settings, update_latest=False)

        docker.tag.assert_not_called()
        with pytest.raises(TagNotFoundError):
            get_tag(session, LATEST)

    def test_short_revision_tags_same_image(self, session, pipeline, settings, docker):
        """An abbreviated revision names the image and moves latest to it."""
        build, _ = build_or_reuse(session, pipeline, "abc123", settings)

        assert docker.run.call_args.kwargs["revision"] == "abc123"
        assert sorted(t.tag for t in build.tags) == [
            "aptos-core:rosetta-abc123",
            LATEST,
        ]
        revision = get_tag(session, "aptos-core:rosetta-abc123")
        latest = get_tag(session, LATEST)
        assert revision.image_id == latest.image_id == IMAGE_ID
        assert revision.build_id == latest.build_id == build.id

    def test_cache_hit_moves_skipped_latest(self, session, pipeline, settings, docker):
        """Reusing a build made without latest still publishes latest."""
        first, _ = build_or_reuse(
            session, pipeline, SHA_A, settings, update_latest=False
        )

        second, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is True
        assert second.id == first.id
        assert docker.run.call_count == 1
        docker.tag.assert_called_once_with(IMAGE_ID, LATEST, docker_bin="docker")
        assert get_tag(session, LATEST).build_id == first.id

    def test_cache_hit_retries_failed_latest(self, session, pipeline, settings, docker):
        """A latest tag that docker failed to apply is applied on reuse."""
        docker.tag.side_effect = BuildExecutionError(
            "docker tag failed", exit_code=1, code="tag_failed"
        )
        with pytest.raises(BuildExecutionError):
            build_or_reuse(session, pipeline, SHA_A, settings)

        first = list_builds(session)[0]
        assert first.is_succeeded()
        with pytest.raises(TagNotFoundError):
            get_tag(session, LATEST)

        docker.tag.side_effect = None
        second, is_cache_hit = build_or_reuse(session, pipeline, SHA_A, settings)

        assert is_cache_hit is True
        assert second.id == first.id
        assert docker.run.call_count == 1
        assert get_tag(session, LATEST).build_id == first.id

    def test_cache_hit_without_latest(self, session, pipeline, settings, docker):
        """Reuse with update_latest=False leaves latest alone."""
        build_or_reuse(session, pipeline, SHA_A, settings, update_latest=False)
        build_or_reuse(session, pipeline, SHA_A, settings, update_latest=False)

        docker.tag.assert_not_called()
        with pytest.raises(TagNotFoundError):
            get_tag(session, LATEST)


class TestPromoteLatest:
    """Tests for moving the floating latest tag."""

    def test_first_build_promoted(self, session, pipeline, settings, docker):
        """With no current pointer the tag is created."""
        build, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        docker.tag.assert_called_once_with(IMAGE_ID, LATEST, docker_bin="docker")
        docker.ancestor.assert_not_called()
        assert get_tag(session, LATEST).build_id == build.id

    def test_descendant_promoted(self, session, pipeline, settings, docker):
        """A newer revision moves the tag in place."""
        build_or_reuse(session, pipeline, SHA_A, settings)
        newer, _ = build_or_reuse(session, pipeline, SHA_B, settings)

        docker.ancestor.assert_called_once_with(
            settings.repo_dir, SHA_A, SHA_B, git_bin="git"
        )
        latest = get_tag(session, LATEST)
        assert latest.build_id == newer.id
        assert latest.revision == SHA_B
        assert [t.tag for t in list_tags(session)].count(LATEST) == 1

    def test_older_revision_not_promoted(self, session, pipeline, settings, docker):
        """A revision that is not a descendant leaves the tag alone."""
        current, _ = build_or_reuse(session, pipeline, SHA_B, settings)
        docker.ancestor.return_value = False

        older, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        assert older.is_succeeded()
        assert get_tag(session, LATEST).build_id == current.id
        assert docker.tag.call_count == 1

    def test_unknown_ancestry_not_promoted(self, session, pipeline, settings, docker):
        """Undetermined ancestry is treated as not newer."""
        current, _ = build_or_reuse(session, pipeline, SHA_A, settings)
        docker.ancestor.return_value = None

        build_or_reuse(session, pipeline, SHA_B, settings)

        assert get_tag(session, LATEST).build_id == current.id

    def test_force_latest(self, session, pipeline, settings, docker):
        """force_latest moves the tag regardless of ancestry."""
        build_or_reuse(session, pipeline, SHA_B, settings)
        docker.ancestor.return_value = False

        forced, _ = build_or_reuse(
            session, pipeline, SHA_A, settings, force_latest=True
        )

        assert get_tag(session, LATEST).build_id == forced.id

    def test_always_policy(self, session, pipeline, settings, docker):
        """The always policy skips the ancestry check."""
        settings.latest_policy = "always"
        build_or_reuse(session, pipeline, SHA_B, settings)
        newest, _ = build_or_reuse(session, pipeline, SHA_A, settings)

        docker.ancestor.assert_not_called()
        assert get_tag(session, LATEST).build_id == newest.id

    def test_direct_call_returns_decision(self, session, pipeline, settings, docker):
        """promote_latest reports whether the tag moved."""
        first, _ = build_or_reuse(session, pipeline, SHA_A, settings)
        second, _ = build_or_reuse(
            session, pipeline, SHA_B, settings, update_latest=False
        )
        docker.ancestor.return_value = False

        assert promote_latest(session, second, pipeline, settings) is False
        assert promote_latest(session, second, pipeline, settings, force=True) is True
        assert get_tag(session, LATEST).build_id == second.id
        assert first.is_succeeded()

    def test_failed_build_not_promotable(self, session, pipeline, settings):
        """Only succeeded full builds can become latest."""
        build = make_build(session, status=BuildStatus.FAILED)

        with pytest.raises(BuildServiceError) as exc_info:
            promote_latest(session, build, pipeline, settings)
        assert exc_info.value.code == "not_promotable"

    def test_partial_build_not_promotable(self, session, pipeline, settings):
        """Intermediate stages never become latest."""
        build = make_build(session, target="builder")

        with pytest.raises(BuildServiceError):
            promote_latest(session, build, pipeline, settings)


class TestQueries:
    """Tests for read-only service functions."""

    def test_get_build(self, session):
        """Should return build by ID."""
        build = make_build(session)
        assert get_build(session, build.id).revision == SHA_A

    def test_get_build_not_found(self, session):
        """Should raise BuildNotFoundError for invalid ID."""
        with pytest.raises(BuildNotFoundError) as exc_info:
            get_build(session, 99999)
        assert exc_info.value.build_id == 99999
        assert exc_info.value.code == "build_not_found"

    def test_get_build_or_none(self, session):
        """Should return None for invalid ID."""
        assert get_build_or_none(session, 99999) is None

    def test_list_builds_newest_first(self, session):
        """Builds are listed newest first."""
        first = make_build(session, SHA_A)
        second = make_build(session, SHA_B)
        assert [b.id for b in list_builds(session)] == [second.id, first.id]

    def test_list_builds_revision_prefix(self, session):
        """Revision filter matches abbreviated hashes."""
        make_build(session, SHA_A)
        make_build(session, SHA_B)
        result = list_builds(session, revision="2222222")
        assert [b.revision for b in result] == [SHA_B]

    def test_list_builds_status(self, session):
        """Should filter by status."""
        make_build(session, SHA_A, BuildStatus.SUCCEEDED)
        make_build(session, SHA_B, BuildStatus.FAILED)
        result = list_builds(session, status=BuildStatus.FAILED)
        assert [b.revision for b in result] == [SHA_B]

    def test_list_builds_limit(self, session):
        """Should respect limit parameter."""
        for i in range(5):
            make_build(session, cache_key=f"sha256:key{i}")
        assert len(list_builds(session, limit=3)) == 3

    def test_get_build_artifacts_not_found(self, session):
        """Should raise BuildNotFoundError for invalid build."""
        with pytest.raises(BuildNotFoundError):
            get_build_artifacts(session, 99999)

    def test_get_tag_not_found(self, session):
        """Unknown tags raise TagNotFoundError."""
        with pytest.raises(TagNotFoundError) as exc_info:
            get_tag(session, LATEST)
        assert exc_info.value.tag == LATEST

    def test_list_tags_by_repository(self, session, pipeline, settings, docker):
        """Tags can be filtered by repository."""
        build_or_reuse(session, pipeline, SHA_A, settings)
        assert len(list_tags(session, repository="aptos-core")) == 2
        assert list_tags(session, repository="other") == []


class TestCompareBuilds:
    """Tests for compare_builds."""

    def test_reproducible(self, session, pipeline, settings, docker):
        """Two builds of one revision with identical binaries match."""
        first, _ = build_or_reuse(session, pipeline, SHA_A, settings)
        second, _ = build_or_reuse(
            session, pipeline, SHA_A, settings, force_rebuild=True
        )

        report = compare_builds(session, first.id, second.id)
        assert report.reproducible
        assert report.matching == ["aptos-node", "aptos-rosetta"]

    def test_differing(self, session):
        """Different checksums are reported by name."""
        builds = []
        for revision, digest in ((SHA_A, "a" * 64), (SHA_B, "b" * 64)):
            build = make_build(session, revision)
            session.add(
                Artifact(
                    build=build,
                    name="aptos-rosetta",
                    path_in_image="/usr/local/bin/aptos-rosetta",
                    size_bytes=1,
                    sha256=digest,
                    is_default_command=True,
                )
            )
            builds.append(build)
        session.commit()

        report = compare_builds(session, builds[0].id, builds[1].id)
        assert report.differing == ["aptos-rosetta"]
        assert not report.reproducible

    def test_no_artifacts(self, session):
        """Builds without recorded artifacts cannot be compared."""
        first = make_build(session, SHA_A)
        second = make_build(session, SHA_B)

        with pytest.raises(BuildServiceError) as exc_info:
            compare_builds(session, first.id, second.id)
        assert exc_info.value.code == "no_artifacts"
