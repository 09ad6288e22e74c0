"""Base image digest resolution.

This module handles:
- Parsing image references into registry, repository, tag and digest
- Resolving a mutable tag to its content digest via the registry v2 API
- Anonymous bearer-token authentication against registry token services
- Pinning a pipeline's base image

Registry unavailability is fatal: there are no retries.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import httpx

from rosetta_imagegen.pipeline.schema import DIGEST_PATTERN, PipelineSchema

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DEFAULT_TAG = "latest"

# Timeout for registry requests (seconds)
REGISTRY_TIMEOUT = 30.0

# Multi-arch indexes first so the digest covers every platform
MANIFEST_MEDIA_TYPES = [
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
]

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Raised when a base image digest cannot be resolved."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        """Initialize RegistryError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference."""

    registry: str
    repository: str
    tag: str = DEFAULT_TAG
    digest: str | None = None

    @property
    def api_host(self) -> str:
        """Host serving the registry v2 API."""
        if self.registry == DOCKER_HUB_REGISTRY:
            return DOCKER_HUB_API_HOST
        return self.registry

    @property
    def manifest_url(self) -> str:
        """URL of the manifest for this reference's tag."""
        return f"https://{self.api_host}/v2/{self.repository}/manifests/{self.tag}"

    def __str__(self) -> str:
        name = self.repository
        if self.registry != DOCKER_HUB_REGISTRY:
            name = f"{self.registry}/{name}"
        elif name.startswith("library/"):
            name = name[len("library/") :]
        ref = f"{name}:{self.tag}"
        if self.digest:
            ref = f"{ref}@{self.digest}"
        return ref


def parse_image_reference(reference: str) -> ImageReference:
    """Parse an image reference.

    Follows Docker conventions: a first path component containing '.' or
    ':' (or equal to 'localhost') is a registry host; otherwise Docker Hub
    is assumed and single-component names live under 'library/'.

    Args:
        reference: Reference such as 'debian:bullseye' or
            'ghcr.io/org/image:1.0@sha256:...'.

    Returns:
        Parsed ImageReference.

    Raises:
        ValueError: If the reference is empty or malformed.
    """
    if not reference or reference != reference.strip():
        raise ValueError(f"Invalid image reference: {reference!r}")

    name, _, digest = reference.partition("@")
    if digest and not DIGEST_PATTERN.match(digest):
        raise ValueError(f"Invalid digest in image reference: {digest}")

    tag = DEFAULT_TAG
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1 :]
        if not tag:
            raise ValueError(f"Empty tag in image reference: {reference}")

    parts = name.split("/")
    if len(parts) > 1 and (
        "." in parts[0] or ":" in parts[0] or parts[0] == "localhost"
    ):
        registry = parts[0]
        repository = "/".join(parts[1:])
    else:
        registry = DOCKER_HUB_REGISTRY
        repository = name if len(parts) > 1 else f"library/{name}"

    if not repository:
        raise ValueError(f"Missing repository in image reference: {reference}")

    return ImageReference(
        registry=registry,
        repository=repository,
        tag=tag,
        digest=digest or None,
    )


def parse_bearer_challenge(header: str) -> dict[str, str]:
    """Parse a 'WWW-Authenticate: Bearer ...' challenge.

    Args:
        header: Header value.

    Returns:
        Challenge parameters (realm, service, scope).

    Raises:
        RegistryError: If the challenge is not a bearer challenge.
    """
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        raise RegistryError(
            f"Unsupported registry auth scheme: {scheme or '(none)'}",
            code="registry_auth_error",
        )
    challenge = dict(_CHALLENGE_PARAM.findall(params))
    if "realm" not in challenge:
        raise RegistryError(
            "Registry auth challenge has no realm",
            code="registry_auth_error",
        )
    return challenge


def fetch_token(
    client: httpx.Client,
    challenge: dict[str, str],
    ref: ImageReference,
    timeout: float = REGISTRY_TIMEOUT,
) -> str:
    """Fetch an anonymous pull token from a registry token service.

    Raises:
        RegistryError: If the token cannot be obtained.
    """
    params = {"scope": challenge.get("scope", f"repository:{ref.repository}:pull")}
    if "service" in challenge:
        params["service"] = challenge["service"]

    try:
        response = client.get(challenge["realm"], params=params, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPStatusError as e:
        raise RegistryError(
            f"Registry token request failed: {e.response.status_code}",
            code="registry_auth_error",
        ) from e
    except httpx.RequestError as e:
        raise RegistryError(
            f"Registry token service unavailable: {e}",
            code="registry_unavailable",
        ) from e
    except ValueError as e:
        raise RegistryError(
            "Registry token response is not JSON",
            code="registry_auth_error",
        ) from e

    token = payload.get("token") or payload.get("access_token")
    if not token:
        raise RegistryError(
            "Registry token response has no token",
            code="registry_auth_error",
        )
    return str(token)


def _head_manifest(
    client: httpx.Client,
    ref: ImageReference,
    token: str | None,
    timeout: float,
) -> httpx.Response:
    headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    try:
        return client.head(ref.manifest_url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise RegistryError(
            f"Timeout contacting registry {ref.api_host}",
            code="registry_unavailable",
        ) from e
    except httpx.RequestError as e:
        raise RegistryError(
            f"Registry {ref.api_host} unavailable: {e}",
            code="registry_unavailable",
        ) from e


def resolve_digest(
    reference: str,
    client: httpx.Client | None = None,
    timeout: float = REGISTRY_TIMEOUT,
) -> str:
    """Resolve an image reference to its content digest.

    Args:
        reference: Image reference (a digest in it is returned as-is).
        client: Optional HTTPX client; a short-lived one is created if None.
        timeout: Request timeout in seconds.

    Returns:
        Content digest ('sha256:...').

    Raises:
        RegistryError: If the registry cannot be reached or has no such tag.
        ValueError: If the reference is malformed.
    """
    ref = parse_image_reference(reference)
    if ref.digest:
        return ref.digest

    if client is None:
        with httpx.Client(follow_redirects=True) as own_client:
            return resolve_digest(reference, client=own_client, timeout=timeout)

    logger.info("Resolving digest for %s via %s", reference, ref.api_host)

    response = _head_manifest(client, ref, None, timeout)
    if response.status_code == 401:
        challenge = parse_bearer_challenge(response.headers.get("www-authenticate", ""))
        token = fetch_token(client, challenge, ref, timeout=timeout)
        response = _head_manifest(client, ref, token, timeout)

    if response.status_code == 404:
        raise RegistryError(
            f"Image not found in registry: {reference}",
            code="manifest_not_found",
        )
    if response.status_code in (401, 403):
        raise RegistryError(
            f"Not authorized to pull {reference}",
            code="registry_auth_error",
        )
    if response.status_code >= 400:
        raise RegistryError(
            f"Registry error for {reference}: {response.status_code}",
            code="registry_error",
        )

    digest = response.headers.get("docker-content-digest", "").lower()
    if not DIGEST_PATTERN.match(digest):
        raise RegistryError(
            f"Registry did not return a content digest for {reference}",
            code="digest_missing",
        )

    logger.info("Resolved %s to %s", reference, digest)
    return digest


def pin_base_image(
    pipeline: PipelineSchema,
    offline: bool = False,
    client: httpx.Client | None = None,
    timeout: float = REGISTRY_TIMEOUT,
) -> str:
    """Return the digest the base image stage should use.

    A digest already recorded in the pipeline wins; otherwise the image tag
    is resolved against its registry.

    Args:
        pipeline: Pipeline description.
        offline: Refuse to contact the registry.
        client: Optional HTTPX client.
        timeout: Request timeout in seconds.

    Raises:
        RegistryError: If the image is unpinned and cannot be resolved.
    """
    base = pipeline.base_image
    if base.digest:
        return base.digest
    if offline:
        raise RegistryError(
            f"Base image {base.image} is not pinned and offline mode is enabled",
            code="offline",
        )
    return resolve_digest(base.image, client=client, timeout=timeout)


__all__ = [
    "DOCKER_HUB_API_HOST",
    "DOCKER_HUB_REGISTRY",
    "MANIFEST_MEDIA_TYPES",
    "ImageReference",
    "RegistryError",
    "fetch_token",
    "parse_bearer_challenge",
    "parse_image_reference",
    "pin_base_image",
    "resolve_digest",
]
