"""Tests for pipeline/render.py module."""

import pytest

from rosetta_imagegen.pipeline.defaults import default_pipeline
from rosetta_imagegen.pipeline.render import (
    DOCKERFILE_SYNTAX,
    RenderError,
    render_cache_mount,
    render_dockerfile,
    write_dockerfile,
)
from rosetta_imagegen.pipeline.schema import CacheMountSchema, PortSchema

DIGEST = "sha256:" + "0f" * 32


@pytest.fixture
def dockerfile() -> str:
    """Rendered Dockerfile of the built-in pipeline."""
    return render_dockerfile(default_pipeline(), base_digest=DIGEST)


def stage_block(dockerfile: str, stage: str) -> str:
    """Return the instructions of one stage."""
    for block in dockerfile.split("\n\n"):
        if block.startswith("FROM ") and block.splitlines()[0].endswith(f" AS {stage}"):
            return block
    raise AssertionError(f"stage {stage} not rendered")


class TestRenderCacheMount:
    """Tests for render_cache_mount."""

    def test_minimal(self):
        """Only the target is required."""
        mount = CacheMountSchema(target="/aptos/aptos-core/target")
        assert render_cache_mount(mount) == (
            "--mount=type=cache,target=/aptos/aptos-core/target"
        )

    def test_id_and_sharing(self):
        """Optional id and non-default sharing are rendered."""
        mount = CacheMountSchema(target="/cache", id="cargo", sharing="locked")
        assert render_cache_mount(mount) == (
            "--mount=type=cache,target=/cache,id=cargo,sharing=locked"
        )


class TestRenderDockerfile:
    """Tests for render_dockerfile."""

    def test_syntax_header(self, dockerfile):
        """The file starts with the frontend syntax directive."""
        assert dockerfile.splitlines()[0] == f"# syntax={DOCKERFILE_SYNTAX}"

    def test_stage_order(self, dockerfile):
        """Stages are emitted in dependency order."""
        froms = [line for line in dockerfile.splitlines() if line.startswith("FROM ")]
        assert froms == [
            f"FROM debian:bullseye@{DIGEST} AS debian-base",
            "FROM rust:1.63.0-bullseye AS rust-base",
            "FROM rust-base AS builder",
            "FROM debian-base AS runtime",
        ]

    def test_base_pinned_by_digest(self, dockerfile):
        """The base image is referenced immutably."""
        assert f"debian:bullseye@{DIGEST}" in dockerfile
        assert "FROM debian:bullseye AS" not in dockerfile

    def test_toolchain_packages(self, dockerfile):
        """The toolchain installs the compile-time dependencies."""
        block = stage_block(dockerfile, "rust-base")
        assert "WORKDIR /aptos" in block
        assert (
            "RUN apt-get update && apt-get install -y cmake curl clang git "
            "pkg-config libssl-dev libpq-dev"
        ) in block

    def test_builder_checks_out_revision(self, dockerfile):
        """The builder resets the clone to the revision argument."""
        block = stage_block(dockerfile, "builder")
        lines = block.splitlines()
        assert "ARG GIT_SHA" in lines
        assert (
            "RUN git clone https://github.com/aptos-labs/aptos-core.git aptos-core"
            in lines
        )
        assert (
            'RUN cd aptos-core && test -n "${GIT_SHA}" && git reset "${GIT_SHA}" --hard'
            in lines
        )

    def test_arg_declared_before_use(self, dockerfile):
        """The revision ARG must precede the reset that reads it."""
        block = stage_block(dockerfile, "builder")
        assert block.index("ARG GIT_SHA") < block.index("git reset")

    def test_builder_compiles_with_cache_mounts(self, dockerfile):
        """Both targets compile in one step with the caches attached."""
        block = stage_block(dockerfile, "builder")
        assert "--mount=type=cache,target=/aptos/aptos-core/target" in block
        assert "--mount=type=cache,target=$CARGO_HOME/registry" in block
        assert "cargo build --release -p aptos-node -p aptos-rosetta" in block
        assert "cp target/release/aptos-node dist/aptos-node" in block
        assert "cp target/release/aptos-rosetta dist/aptos-rosetta" in block

    def test_runtime_installs_and_cleans(self, dockerfile):
        """Runtime packages are installed and the package index removed."""
        block = stage_block(dockerfile, "runtime")
        assert "apt-get install -y libssl1.1 ca-certificates" in block
        assert "rm -rf /var/lib/apt/lists/*" in block

    def test_runtime_copies_binaries(self, dockerfile):
        """Both binaries land on the executable search path."""
        block = stage_block(dockerfile, "runtime")
        assert (
            "COPY --from=builder /aptos/aptos-core/dist/aptos-node "
            "/usr/local/bin/aptos-node"
        ) in block
        assert (
            "COPY --from=builder /aptos/aptos-core/dist/aptos-rosetta "
            "/usr/local/bin/aptos-rosetta"
        ) in block

    def test_runtime_ports_env_and_command(self, dockerfile):
        """Ports are documented and the API server is the default command."""
        block = stage_block(dockerfile, "runtime")
        for port in (8000, 6180, 9101, 6186):
            assert f"EXPOSE {port}" in block
        assert "# Rosetta API" in block
        assert "ENV RUST_BACKTRACE=1" in block
        assert block.splitlines()[-1] == 'CMD ["aptos-rosetta"]'

    def test_udp_port(self):
        """Non-TCP ports carry their protocol."""
        pipeline = default_pipeline()
        pipeline.runtime.ports = [PortSchema(port=53, protocol="udp")]
        content = render_dockerfile(pipeline, base_digest=DIGEST)
        assert "EXPOSE 53/udp" in content

    def test_never_copies_from_context(self, dockerfile):
        """The build context is never read."""
        for line in dockerfile.splitlines():
            if line.startswith(("COPY", "ADD")):
                assert "--from=" in line

    def test_pipeline_digest_used(self):
        """A digest recorded in the pipeline is used when none is passed."""
        pipeline = default_pipeline()
        pipeline.base_image.digest = DIGEST
        assert f"@{DIGEST} AS debian-base" in render_dockerfile(pipeline)

    def test_unpinned_rejected(self):
        """Rendering a mutable base reference requires opting in."""
        with pytest.raises(RenderError) as exc_info:
            render_dockerfile(default_pipeline())
        assert exc_info.value.code == "unpinned_base_image"

    def test_unpinned_allowed(self):
        """The mutable tag is used when explicitly allowed."""
        content = render_dockerfile(default_pipeline(), allow_unpinned=True)
        assert "FROM debian:bullseye AS debian-base" in content

    def test_invalid_digest(self):
        """Malformed digests are rejected before rendering."""
        with pytest.raises(RenderError) as exc_info:
            render_dockerfile(default_pipeline(), base_digest="sha256:xyz")
        assert exc_info.value.code == "invalid_digest"

    def test_deterministic(self):
        """The same pipeline renders to the same text."""
        assert render_dockerfile(
            default_pipeline(), base_digest=DIGEST
        ) == render_dockerfile(default_pipeline(), base_digest=DIGEST)


class TestWriteDockerfile:
    """Tests for write_dockerfile."""

    def test_writes_file(self, tmp_path, dockerfile):
        """Creates parent directories and writes the content."""
        path = tmp_path / "builds" / "1" / "Dockerfile"
        result = write_dockerfile(dockerfile, path)
        assert result == path
        assert path.read_text() == dockerfile
