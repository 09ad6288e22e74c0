"""Revision resolution from the local git working copy.

The revision identifier selects the exact source commit to build and is
also embedded in the image tag, so it must be resolved once per invocation
and passed unchanged to both.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

REVISION_PATTERN = re.compile(r"^[0-9a-f]{4,64}$")


class RevisionError(Exception):
    """Raised when the revision cannot be resolved from the working copy."""

    def __init__(self, message: str, code: str = "revision_error") -> None:
        super().__init__(message)
        self.code = code


def validate_revision(revision: str) -> str:
    """Validate and normalise a revision identifier.

    Args:
        revision: Commit hash, abbreviated (at least 4 characters, as git
            allows) or full (40 for SHA-1, 64 for SHA-256 repositories).

    Returns:
        Lowercase revision.

    Raises:
        ValueError: If the revision is not 4-64 hex characters.
    """
    normalised = revision.strip().lower()
    if not REVISION_PATTERN.match(normalised):
        raise ValueError(
            f"Revision must be a 4-64 character hex commit hash, got {revision!r}"
        )
    return normalised


def _run_git(
    args: list[str],
    repo_dir: Path,
    git_bin: str,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            [git_bin, *args],
            cwd=repo_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as e:
        raise RevisionError(
            f"git executable not found: {git_bin}",
            code="git_not_found",
        ) from e
    except NotADirectoryError as e:
        raise RevisionError(
            f"Not a directory: {repo_dir}",
            code="not_a_repository",
        ) from e


def resolve_revision(repo_dir: Path | None = None, git_bin: str = "git") -> str:
    """Resolve the checked-out commit of a working copy.

    Args:
        repo_dir: Working copy directory (current directory if None).
        git_bin: Git executable.

    Returns:
        Full commit hash of HEAD.

    Raises:
        RevisionError: If git is missing or repo_dir is not a working copy.
    """
    repo_dir = repo_dir or Path.cwd()
    if not repo_dir.is_dir():
        raise RevisionError(
            f"Working copy does not exist: {repo_dir}",
            code="not_a_repository",
        )

    result = _run_git(["rev-parse", "HEAD"], repo_dir, git_bin)
    if result.returncode != 0:
        raise RevisionError(
            f"Cannot resolve revision in {repo_dir}: {result.stderr.strip()}",
            code="not_a_repository",
        )

    try:
        revision = validate_revision(result.stdout)
    except ValueError as e:
        raise RevisionError(
            f"Unexpected output from git rev-parse: {result.stdout.strip()!r}",
            code="invalid_revision",
        ) from e

    logger.info("Resolved revision %s from %s", revision, repo_dir)
    return revision


def is_ancestor(
    repo_dir: Path,
    older: str,
    newer: str,
    git_bin: str = "git",
) -> bool | None:
    """Check whether one commit is an ancestor of another.

    Args:
        repo_dir: Working copy containing both commits.
        older: Candidate ancestor.
        newer: Candidate descendant.
        git_bin: Git executable.

    Returns:
        True or False, or None if ancestry cannot be determined
        (unknown commits, missing git, not a working copy).
    """
    if older == newer:
        return True
    try:
        result = _run_git(
            ["merge-base", "--is-ancestor", older, newer], repo_dir, git_bin
        )
    except RevisionError as e:
        logger.warning("Cannot check ancestry: %s", e)
        return None

    if result.returncode == 0:
        return True
    if result.returncode == 1:
        return False
    logger.warning(
        "Cannot check ancestry of %s..%s: %s", older, newer, result.stderr.strip()
    )
    return None


__all__ = [
    "REVISION_PATTERN",
    "RevisionError",
    "is_ancestor",
    "resolve_revision",
    "validate_revision",
]
