"""Image source variants.

An image comes from exactly one kind of source. Each variant carries only
the fields that kind needs; the acquirer dispatches on the variant once.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from repro_verify.errors import UsageError


class SourceType(str, Enum):
    """Image source kind as named on the command line."""

    LOCAL = "local"
    REMOTE = "remote"
    AWS = "aws"


@dataclass(frozen=True)
class LocalImage:
    """Raw image file on the local filesystem."""

    path: Path


@dataclass(frozen=True)
class RemoteImage:
    """Raw image downloadable over HTTP(S)."""

    url: str


@dataclass(frozen=True)
class CloudImage:
    """Cloud-managed machine image (export is not supported)."""

    image_id: str
    region: str | None = None


ImageSource = LocalImage | RemoteImage | CloudImage


def make_source(source_type: SourceType, locator: str) -> ImageSource:
    """Build the source variant for a CLI type and locator.

    Args:
        source_type: Kind of source.
        locator: Path, URL or cloud image ID.

    Returns:
        The matching source variant.

    Raises:
        UsageError: If the locator is empty.
    """
    if not locator:
        raise UsageError("An image locator is required")

    if source_type is SourceType.LOCAL:
        return LocalImage(path=Path(locator).expanduser())
    if source_type is SourceType.REMOTE:
        return RemoteImage(url=locator)
    return CloudImage(image_id=locator)


def describe_source(source: ImageSource) -> str:
    """Human-readable locator of a source for log messages."""
    if isinstance(source, LocalImage):
        return str(source.path)
    if isinstance(source, RemoteImage):
        return source.url
    return f"cloud image {source.image_id}"


__all__ = [
    "CloudImage",
    "ImageSource",
    "LocalImage",
    "RemoteImage",
    "SourceType",
    "describe_source",
    "make_source",
]
