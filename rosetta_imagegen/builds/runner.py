"""Build runner for executing docker buildx builds.

This module handles:
- Composing `docker buildx build` commands from a rendered pipeline
- Executing builds with subprocess
- Capturing stdout/stderr to log files
- Inspecting and tagging the resulting images
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rosetta_imagegen.builds.tags import ImageTag

logger = logging.getLogger(__name__)

# Timeout for short docker commands (inspect, tag, create, cp)
DOCKER_COMMAND_TIMEOUT = 120


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class BuildResult:
    """Result of a build execution.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        tags: Tags requested for the image.
        error_message: Error message if build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    tags: list[str]
    error_message: str | None = None


def check_tool_available(executable: str) -> str:
    """Ensure an external tool is on PATH.

    Args:
        executable: Tool name or path.

    Returns:
        Resolved path of the tool.

    Raises:
        BuildExecutionError: If the tool cannot be found.
    """
    resolved = shutil.which(executable)
    if resolved is None:
        raise BuildExecutionError(
            f"Required tool not found: {executable}",
            code="tool_not_found",
        )
    return resolved


def compose_build_command(
    dockerfile: Path,
    context_dir: Path,
    revision: str,
    tags: list[ImageTag],
    target: str | None = None,
    revision_arg: str = "GIT_SHA",
    docker_bin: str = "docker",
    load: bool = True,
) -> list[str]:
    """Compose the `docker buildx build` command.

    The same revision value feeds the checkout build argument; the tags
    are derived from it by the caller.

    Args:
        dockerfile: Rendered Dockerfile.
        context_dir: Build context directory.
        revision: Revision identifier passed as build argument.
        tags: Tags to apply on success.
        target: Stage to stop at (None builds the whole pipeline).
        revision_arg: Build argument name carrying the revision.
        docker_bin: Docker CLI executable.
        load: Load the result into the local image store.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [docker_bin, "buildx", "build"]
    cmd.extend(["--file", str(dockerfile)])
    cmd.append(f"--build-arg={revision_arg}={revision}")

    for tag in tags:
        cmd.extend(["-t", str(tag)])

    if target:
        cmd.extend(["--target", target])

    if load:
        cmd.append("--load")

    cmd.append(str(context_dir))
    return cmd


def run_build(
    dockerfile: Path,
    context_dir: Path,
    build_dir: Path,
    revision: str,
    tags: list[ImageTag],
    target: str | None = None,
    revision_arg: str = "GIT_SHA",
    docker_bin: str = "docker",
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> BuildResult:
    """Execute a docker buildx build.

    Args:
        dockerfile: Rendered Dockerfile.
        context_dir: Build context directory.
        build_dir: Directory for the build log.
        revision: Revision identifier.
        tags: Tags to apply on success.
        target: Stage to stop at.
        revision_arg: Build argument name carrying the revision.
        docker_bin: Docker CLI executable.
        timeout: Build timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        BuildResult with execution details.

    Raises:
        BuildExecutionError: If build execution fails to start or times out.
    """
    build_dir.mkdir(parents=True, exist_ok=True)
    context_dir.mkdir(parents=True, exist_ok=True)
    log_path = build_dir / "build.log"

    cmd = compose_build_command(
        dockerfile=dockerfile,
        context_dir=context_dir,
        revision=revision,
        tags=tags,
        target=target,
        revision_arg=revision_arg,
        docker_bin=docker_bin,
    )

    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)
    logger.info("Build log: %s", log_path)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# Revision: {revision}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env = dict(os.environ)
            # Plain progress keeps the log readable outside a terminal
            env.setdefault("BUILDKIT_PROGRESS", "plain")
            if env_override:
                env.update(env_override)

            result = subprocess.run(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Build failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Build timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise BuildExecutionError(
            error_message,
            exit_code=-1,
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute build: {e}"
        logger.error(error_message)
        raise BuildExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return BuildResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        tags=[str(t) for t in tags],
        error_message=error_message,
    )


def run_docker(
    args: list[str],
    docker_bin: str = "docker",
    timeout: int = DOCKER_COMMAND_TIMEOUT,
) -> str:
    """Run a short docker command and return its stdout.

    Raises:
        BuildExecutionError: If the command fails or cannot be started.
    """
    cmd = [docker_bin, *args]
    logger.debug("Running: %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise BuildExecutionError(
            f"{shlex.join(cmd)} timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise BuildExecutionError(
            f"{shlex.join(cmd)} failed: {(e.stderr or '').strip()}",
            exit_code=e.returncode,
            code="docker_error",
        ) from e
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to run {docker_bin}: {e}",
            code="execution_error",
        ) from e
    return result.stdout.strip()


def inspect_image_id(image: str, docker_bin: str = "docker") -> str:
    """Return the content-addressed id of a local image.

    Raises:
        BuildExecutionError: If the image does not exist.
    """
    return run_docker(
        ["image", "inspect", "--format", "{{.Id}}", image], docker_bin=docker_bin
    )


def tag_image(source: str, dest: str, docker_bin: str = "docker") -> None:
    """Point tag dest at the image named by source.

    Raises:
        BuildExecutionError: If tagging fails.
    """
    run_docker(["tag", source, dest], docker_bin=docker_bin)
    logger.info("Tagged %s as %s", source, dest)


__all__ = [
    "BuildExecutionError",
    "BuildResult",
    "check_tool_available",
    "compose_build_command",
    "inspect_image_id",
    "run_build",
    "run_docker",
    "tag_image",
]
