"""Pydantic models for pipeline description validation.

A pipeline describes the four stages of the runtime image build:

- base image: an OS image pinned by content digest
- toolchain: a compiler image with system build dependencies
- builder: clones the source at a revision and compiles the targets
- runtime: the base image plus the compiled binaries

These models validate YAML/JSON pipeline files before use and are the
single input to Dockerfile rendering and cache key computation.
"""

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")
STAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")
TARGET_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_unique(values: list[str], what: str) -> list[str]:
    seen: set[str] = set()
    dupes: set[str] = set()
    for v in values:
        if v in seen:
            dupes.add(v)
        seen.add(v)
    if dupes:
        raise ValueError(f"duplicate {what}: {', '.join(sorted(dupes))}")
    return values


def _check_stage_name(v: str) -> str:
    if not STAGE_NAME_PATTERN.match(v):
        raise ValueError(
            f"stage name must be lowercase alphanumeric with '.', '_' or '-', got '{v}'"
        )
    return v


class BaseImageSchema(BaseModel):
    """Schema for the base image stage.

    Attributes:
        stage_name: Name of the stage in the rendered Dockerfile.
        image: Image reference without digest (e.g., 'debian:bullseye').
        digest: Content digest pinning the image ('sha256:<hex>').
    """

    model_config = ConfigDict(extra="forbid")

    stage_name: str = Field(default="debian-base", description="Stage name")
    image: Annotated[str, Field(min_length=1, description="Image reference")]
    digest: str | None = Field(default=None, description="Pinned content digest")

    @field_validator("stage_name")
    @classmethod
    def validate_stage_name(cls, v: str) -> str:
        """Validate stage name is a legal Dockerfile stage name."""
        return _check_stage_name(v)

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Validate image reference carries no digest of its own."""
        if "@" in v:
            raise ValueError("image must not contain a digest; use the digest field")
        return v

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v: str | None) -> str | None:
        """Validate digest is a sha256 content digest."""
        if v is None:
            return v
        v = v.lower()
        if not DIGEST_PATTERN.match(v):
            raise ValueError(f"digest must look like 'sha256:<64 hex>', got '{v}'")
        return v

    def pinned_reference(self, digest: str | None = None) -> str:
        """Return the immutable 'image@digest' reference.

        Args:
            digest: Digest to use instead of the configured one.

        Raises:
            ValueError: If no digest is available.
        """
        effective = digest or self.digest
        if not effective:
            raise ValueError(f"base image {self.image} is not pinned to a digest")
        return f"{self.image}@{effective}"


class ToolchainSchema(BaseModel):
    """Schema for the toolchain provisioning stage.

    Attributes:
        stage_name: Name of the stage in the rendered Dockerfile.
        image: Compiler/runtime base image.
        workdir: Working directory for later stages.
        packages: System packages required to compile the source.
    """

    model_config = ConfigDict(extra="forbid")

    stage_name: str = Field(default="rust-base")
    image: Annotated[str, Field(min_length=1)]
    workdir: str = Field(default="/aptos")
    packages: Annotated[list[str], Field(min_length=1)]

    @field_validator("stage_name")
    @classmethod
    def validate_stage_name(cls, v: str) -> str:
        """Validate stage name is a legal Dockerfile stage name."""
        return _check_stage_name(v)

    @field_validator("workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        """Validate workdir is absolute."""
        if not v.startswith("/"):
            raise ValueError("workdir must start with '/'")
        return v.rstrip("/") or "/"

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: list[str]) -> list[str]:
        """Validate package names are unique."""
        return _check_unique(v, "packages")


class CacheMountSchema(BaseModel):
    """Schema for a persistent cache mount on the builder stage.

    Attributes:
        target: Mount point inside the builder (absolute or $VAR-prefixed).
        id: Optional cache identifier.
        sharing: BuildKit sharing mode.
    """

    model_config = ConfigDict(extra="forbid")

    target: Annotated[str, Field(min_length=1)]
    id: str | None = Field(default=None)
    sharing: Literal["shared", "private", "locked"] = Field(default="shared")

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        """Validate target is an absolute or variable-rooted path."""
        if not (v.startswith("/") or v.startswith("$")):
            raise ValueError("cache mount target must start with '/' or '$'")
        return v


class BuildTargetSchema(BaseModel):
    """Schema for one compiled target.

    Attributes:
        name: Compiler target name; also the installed binary name.
        source_path: Binary path relative to the checkout.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    source_path: str | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate target name is usable as a file name."""
        if not TARGET_NAME_PATTERN.match(v):
            raise ValueError(f"invalid target name '{v}'")
        return v

    @property
    def effective_source_path(self) -> str:
        """Path of the compiled binary relative to the checkout."""
        return self.source_path or f"target/release/{self.name}"


class BuilderSchema(BaseModel):
    """Schema for the builder stage.

    Attributes:
        stage_name: Name of the stage in the rendered Dockerfile.
        source_url: Git URL of the external source.
        checkout_dir: Directory name of the clone inside the workdir.
        revision_arg: Build argument carrying the revision.
        build_command: Compiler invocation in release mode.
        target_flag: Flag preceding each target name.
        targets: Targets to compile.
        cache_mounts: Persistent caches attached to the compile step.
        output_dir: Directory (relative to the checkout) staging the binaries.
    """

    model_config = ConfigDict(extra="forbid")

    stage_name: str = Field(default="builder")
    source_url: Annotated[str, Field(min_length=1)]
    checkout_dir: str = Field(default="aptos-core")
    revision_arg: str = Field(default="GIT_SHA")
    build_command: list[str] = Field(
        default_factory=lambda: ["cargo", "build", "--release"], min_length=1
    )
    target_flag: str = Field(default="-p")
    targets: Annotated[list[BuildTargetSchema], Field(min_length=1)]
    cache_mounts: list[CacheMountSchema] = Field(default_factory=list)
    output_dir: str = Field(default="dist")

    @field_validator("stage_name")
    @classmethod
    def validate_stage_name(cls, v: str) -> str:
        """Validate stage name is a legal Dockerfile stage name."""
        return _check_stage_name(v)

    @field_validator("revision_arg")
    @classmethod
    def validate_revision_arg(cls, v: str) -> str:
        """Validate the build argument name."""
        if not ENV_NAME_PATTERN.match(v):
            raise ValueError(f"invalid build argument name '{v}'")
        return v

    @field_validator("checkout_dir", "output_dir")
    @classmethod
    def validate_relative(cls, v: str) -> str:
        """Validate directory is a plain relative path."""
        if not v or v.startswith("/") or ".." in v.split("/"):
            raise ValueError(f"must be a relative path without '..', got '{v}'")
        return v.rstrip("/")

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: list[BuildTargetSchema]) -> list[BuildTargetSchema]:
        """Validate target names are unique."""
        _check_unique([t.name for t in v], "targets")
        return v

    @field_validator("cache_mounts")
    @classmethod
    def validate_cache_mounts(cls, v: list[CacheMountSchema]) -> list[CacheMountSchema]:
        """Validate cache mount targets are unique."""
        _check_unique([m.target for m in v], "cache mount targets")
        return v

    @property
    def target_names(self) -> list[str]:
        """Names of all targets in declaration order."""
        return [t.name for t in self.targets]


class PortSchema(BaseModel):
    """Schema for a documented network port."""

    model_config = ConfigDict(extra="forbid")

    port: Annotated[int, Field(ge=1, le=65535)]
    protocol: Literal["tcp", "udp"] = Field(default="tcp")
    description: str | None = Field(default=None)


class RuntimeSchema(BaseModel):
    """Schema for the runtime image assembly stage.

    Attributes:
        stage_name: Name of the stage in the rendered Dockerfile.
        packages: Runtime packages (TLS libraries, certificate store).
        install_dir: Executable search path the binaries are copied to.
        ports: Ports the binaries are expected to use (documentation only).
        env: Environment variables set in the image.
        command: Binary launched by default; must be one of the targets.
    """

    model_config = ConfigDict(extra="forbid")

    stage_name: str = Field(default="runtime")
    packages: list[str] = Field(default_factory=list)
    install_dir: str = Field(default="/usr/local/bin")
    ports: list[PortSchema] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=lambda: {"RUST_BACKTRACE": "1"})
    command: Annotated[str, Field(min_length=1)]

    @field_validator("stage_name")
    @classmethod
    def validate_stage_name(cls, v: str) -> str:
        """Validate stage name is a legal Dockerfile stage name."""
        return _check_stage_name(v)

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: list[str]) -> list[str]:
        """Validate package names are unique."""
        return _check_unique(v, "packages")

    @field_validator("install_dir")
    @classmethod
    def validate_install_dir(cls, v: str) -> str:
        """Validate install_dir is absolute."""
        if not v.startswith("/"):
            raise ValueError("install_dir must start with '/'")
        return v.rstrip("/") or "/"

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[PortSchema]) -> list[PortSchema]:
        """Validate each port/protocol pair appears once."""
        _check_unique([f"{p.port}/{p.protocol}" for p in v], "ports")
        return v

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate environment variable names."""
        for name in v:
            if not ENV_NAME_PATTERN.match(name):
                raise ValueError(f"invalid environment variable name '{name}'")
        return v


class PipelineSchema(BaseModel):
    """Complete pipeline description.

    Attributes:
        name: Pipeline name.
        repository: Image repository the result is tagged into.
        kind: Fixed label identifying this image variant (tag prefix).
        base_image: Base image stage.
        toolchain: Toolchain stage.
        builder: Builder stage.
        runtime: Runtime stage.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    repository: Annotated[str, Field(min_length=1, max_length=255)]
    kind: Annotated[str, Field(min_length=1, max_length=64)]
    base_image: BaseImageSchema
    toolchain: ToolchainSchema
    builder: BuilderSchema
    runtime: RuntimeSchema

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate repository has no tag or digest."""
        last = v.rsplit("/", 1)[-1]
        if ":" in last or "@" in v:
            raise ValueError("repository must not include a tag or digest")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate kind is usable inside a tag."""
        if not re.match(r"^[a-z0-9][a-z0-9_.\-]*$", v):
            raise ValueError(f"kind must be a lowercase tag fragment, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_pipeline(self) -> "PipelineSchema":
        """Cross-stage checks: unique stage names, valid default command."""
        _check_unique(
            [
                self.base_image.stage_name,
                self.toolchain.stage_name,
                self.builder.stage_name,
                self.runtime.stage_name,
            ],
            "stage names",
        )
        if self.runtime.command not in self.builder.target_names:
            raise ValueError(
                f"runtime command '{self.runtime.command}' must be one of the "
                f"build targets: {', '.join(self.builder.target_names)}"
            )
        return self

    @property
    def stage_names(self) -> list[str]:
        """Stage names in declaration order."""
        return [
            self.base_image.stage_name,
            self.toolchain.stage_name,
            self.builder.stage_name,
            self.runtime.stage_name,
        ]


__all__ = [
    "DIGEST_PATTERN",
    "BaseImageSchema",
    "BuildTargetSchema",
    "BuilderSchema",
    "CacheMountSchema",
    "PipelineSchema",
    "PortSchema",
    "RuntimeSchema",
    "ToolchainSchema",
]
