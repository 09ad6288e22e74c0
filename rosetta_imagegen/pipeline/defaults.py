"""Built-in Rosetta runtime image pipeline.

Used whenever no pipeline file is configured. The base image is left
unpinned here and is resolved to a content digest at build time; use
`imagegen pipeline pin` to freeze it into a pipeline file.
"""

from rosetta_imagegen.pipeline.schema import (
    BaseImageSchema,
    BuilderSchema,
    BuildTargetSchema,
    CacheMountSchema,
    PipelineSchema,
    PortSchema,
    RuntimeSchema,
    ToolchainSchema,
)

DEFAULT_REPOSITORY = "aptos-core"
DEFAULT_KIND = "rosetta"
DEFAULT_SOURCE_URL = "https://github.com/aptos-labs/aptos-core.git"

NODE_BINARY = "aptos-node"
ROSETTA_BINARY = "aptos-rosetta"


def default_pipeline() -> PipelineSchema:
    """Return the reference pipeline for the Rosetta image."""
    return PipelineSchema(
        name="rosetta",
        repository=DEFAULT_REPOSITORY,
        kind=DEFAULT_KIND,
        base_image=BaseImageSchema(
            stage_name="debian-base",
            image="debian:bullseye",
        ),
        toolchain=ToolchainSchema(
            stage_name="rust-base",
            image="rust:1.63.0-bullseye",
            workdir="/aptos",
            packages=[
                "cmake",
                "curl",
                "clang",
                "git",
                "pkg-config",
                "libssl-dev",
                "libpq-dev",
            ],
        ),
        builder=BuilderSchema(
            stage_name="builder",
            source_url=DEFAULT_SOURCE_URL,
            checkout_dir="aptos-core",
            revision_arg="GIT_SHA",
            build_command=["cargo", "build", "--release"],
            target_flag="-p",
            targets=[
                BuildTargetSchema(name=NODE_BINARY),
                BuildTargetSchema(name=ROSETTA_BINARY),
            ],
            cache_mounts=[
                # compiler output
                CacheMountSchema(target="/aptos/aptos-core/target"),
                # crate registry
                CacheMountSchema(target="$CARGO_HOME/registry"),
            ],
            output_dir="dist",
        ),
        runtime=RuntimeSchema(
            stage_name="runtime",
            packages=["libssl1.1", "ca-certificates"],
            install_dir="/usr/local/bin",
            ports=[
                PortSchema(port=8000, description="Rosetta API"),
                PortSchema(port=6180, description="Validator network"),
                PortSchema(port=9101, description="Metrics"),
                PortSchema(port=6186, description="Backup service"),
            ],
            env={"RUST_BACKTRACE": "1"},
            command=ROSETTA_BINARY,
        ),
    )


__all__ = [
    "DEFAULT_KIND",
    "DEFAULT_REPOSITORY",
    "DEFAULT_SOURCE_URL",
    "NODE_BINARY",
    "ROSETTA_BINARY",
    "default_pipeline",
]
