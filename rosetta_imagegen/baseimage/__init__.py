"""Base image selection.

Resolves the runtime base image to an immutable content digest so the
assembled image is reproducible across invocations.
"""

from rosetta_imagegen.baseimage.resolve import (
    RegistryError,
    pin_base_image,
    resolve_digest,
)

__all__ = ["RegistryError", "pin_base_image", "resolve_digest"]
