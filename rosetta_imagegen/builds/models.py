"""Build ORM models.

This module defines the BuildRecord, Artifact and ImageTagRecord models
for storing build executions, the binaries they produced, and where each
image tag currently points.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rosetta_imagegen.db import Base
from rosetta_imagegen.types import BuildStatus


class BuildRecord(Base):
    """ORM model for build execution records.

    A BuildRecord captures a single pipeline invocation: the revision and
    target built, the pinned base image, its status, the input snapshot for
    cache key computation, and references to artifacts and tags.

    Attributes:
        id: Primary key.
        revision: Source revision built.
        target: Stage the build stopped at ('all' for the full pipeline).
        status: Build status (pending, running, succeeded, failed).
        requested_at: Timestamp when build was requested.
        started_at: Timestamp when build started executing.
        finished_at: Timestamp when build finished.
        input_snapshot: JSON representation of all build inputs.
        cache_key: Hash of input_snapshot for cache lookup.
        base_image_digest: Digest the base image stage was pinned to.
        dockerfile_path: Rendered Dockerfile.
        build_dir: Path to the build directory.
        log_path: Path to build log file.
        image_id: Content-addressed id of the built image.
        error_type: Type of error if build failed.
        error_message: Error message if build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    revision: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target: Mapped[str] = mapped_column(String(100), nullable=False, default="all")

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Cache key and input snapshot
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    base_image_digest: Mapped[str | None] = mapped_column(String(80), nullable=True)

    # Build paths
    dockerfile_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    build_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    image_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="build", cascade="all, delete-orphan"
    )
    tags: Mapped[list["ImageTagRecord"]] = relationship(
        "ImageTagRecord", back_populates="build"
    )

    __table_args__ = (Index("ix_build_records_revision_status", "revision", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, revision='{self.revision[:12]}', "
            f"status='{self.status}', cache_key='{self.cache_key[:16]}...')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value

    @property
    def is_full_build(self) -> bool:
        """Whether the build produced the final runtime image."""
        return self.target == "all"


class Artifact(Base):
    """ORM model for a binary shipped in a built image.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        name: Binary name.
        path_in_image: Absolute path of the binary inside the image.
        local_path: Extracted copy on disk.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        is_default_command: Whether the image launches this binary by default.
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    path_in_image: Mapped[str] = mapped_column(String(500), nullable=False)
    local_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    is_default_command: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    build: Mapped["BuildRecord"] = relationship(
        "BuildRecord", back_populates="artifacts"
    )

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, name='{self.name}', "
            f"sha256='{self.sha256[:12]}', size={self.size_bytes})>"
        )


class ImageTagRecord(Base):
    """ORM model for the current target of an image tag.

    One row per tag string. Revision tags are written once; the floating
    latest tag is updated in place when promoted.

    Attributes:
        id: Primary key.
        tag: Full tag ('repo:label').
        repository: Image repository.
        label: Tag label.
        revision: Revision of the tagged build.
        build_id: Foreign key to the tagged BuildRecord.
        image_id: Image id the tag points at.
        updated_at: When the tag last moved.
    """

    __tablename__ = "image_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tag: Mapped[str] = mapped_column(String(400), nullable=False, unique=True)
    repository: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[str] = mapped_column(String(128), nullable=False)

    revision: Mapped[str] = mapped_column(String(64), nullable=False)
    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )
    image_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    build: Mapped["BuildRecord"] = relationship("BuildRecord", back_populates="tags")

    def __repr__(self) -> str:
        """Return string representation of ImageTagRecord."""
        return f"<ImageTagRecord(tag='{self.tag}', revision='{self.revision[:12]}')>"


__all__ = ["Artifact", "BuildRecord", "ImageTagRecord"]
