"""Image acquisition.

This module handles:
- Validating image formats from the file name or URL path alone
- Downloading remote images with httpx
- Decompressing xz, gzip, bzip2 and zstd compressed raw images
- Placing the raw image in the run's work directory

Every file produced here is registered with the run's ResourceTracker.
"""

from __future__ import annotations

import bz2
import gzip
import hashlib
import logging
import lzma
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlsplit

import httpx

from repro_verify.errors import FormatError, NetworkError, ResourceError, UsageError
from repro_verify.image.source import CloudImage, ImageSource, LocalImage, RemoteImage
from repro_verify.types import ResourceKind

if TYPE_CHECKING:
    from repro_verify.config import Settings
    from repro_verify.resources import ResourceTracker

logger = logging.getLogger(__name__)

RAW_SUFFIXES = {".raw", ".img"}
COMPRESSION_SUFFIXES = {".xz", ".gz", ".bz2", ".zst"}
# Copy-on-write and container disk formats that cannot be attached directly
CONTAINER_SUFFIXES = {".qcow2", ".qcow", ".vmdk", ".vhd", ".vhdx", ".vdi"}
ALLOWED_SCHEMES = {"http", "https"}

# Environment variables required before any cloud image path is attempted
CLOUD_CREDENTIAL_VARS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")
CLOUD_REGION_VARS = ("AWS_REGION", "AWS_DEFAULT_REGION")

# Chunk size for downloads and decompression (bytes)
CHUNK_SIZE = 1024 * 1024

DEFAULT_IMAGE_NAME = "original.raw"


@dataclass
class DownloadResult:
    """Result of a remote image download."""

    path: Path
    checksum: str
    size_bytes: int


def classify_image_name(name: str, source: str | None = None) -> str | None:
    """Check that a file name denotes a raw or compressed raw image.

    Args:
        name: File name (last path component).
        source: Locator used in error messages; defaults to ``name``.

    Returns:
        The compression suffix (e.g. '.xz'), or None for an uncompressed image.

    Raises:
        FormatError: If the name does not end in a supported suffix.
    """
    suffixes = [s.lower() for s in PurePosixPath(name).suffixes]
    if not suffixes:
        raise FormatError(source or name, "")

    compression: str | None = None
    if suffixes[-1] in COMPRESSION_SUFFIXES:
        compression = suffixes.pop()

    image_suffix = suffixes[-1] if suffixes else ""
    if image_suffix not in RAW_SUFFIXES:
        if image_suffix in CONTAINER_SUFFIXES:
            logger.error("Refusing container disk format %s", image_suffix)
        raise FormatError(source or name, image_suffix + (compression or ""))

    return compression


def validate_remote_url(url: str) -> str | None:
    """Validate a remote image URL without touching the network.

    Args:
        url: Image URL.

    Returns:
        The compression suffix, or None for an uncompressed image.

    Raises:
        UsageError: If the scheme is not allowed or the URL has no path.
        FormatError: If the path does not name a raw or compressed raw image.
    """
    parts = urlsplit(url)
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        allowed = ", ".join(sorted(ALLOWED_SCHEMES))
        raise UsageError(
            f"Unsupported URL scheme '{parts.scheme}' in {url} (allowed: {allowed})"
        )
    name = PurePosixPath(unquote(parts.path)).name
    if not parts.netloc or not name:
        raise UsageError(f"URL does not name an image file: {url}")
    return classify_image_name(name, source=url)


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float,
    chunk_size: int = CHUNK_SIZE,
) -> DownloadResult:
    """Stream a URL to a file.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        NetworkError: If the download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        raise NetworkError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise NetworkError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise NetworkError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    checksum = sha256.hexdigest()
    logger.info(
        "Downloaded %s (%d bytes, sha256: %s)",
        dest_path.name,
        total_bytes,
        checksum[:16] + "...",
    )
    return DownloadResult(path=dest_path, checksum=checksum, size_bytes=total_bytes)


def decompress(
    source_path: Path,
    dest_path: Path,
    compression: str,
    chunk_size: int = CHUNK_SIZE,
) -> Path:
    """Decompress a compressed raw image.

    Args:
        source_path: Compressed file.
        dest_path: Output raw file.
        compression: One of '.xz', '.gz', '.bz2', '.zst'.
        chunk_size: Size of chunks to copy.

    Returns:
        ``dest_path``.

    Raises:
        FormatError: If the data is not valid for the compression format.
        ResourceError: If the zstd tool is missing or fails.
    """
    logger.info("Decompressing %s to %s", source_path.name, dest_path)

    if compression == ".zst":
        # The stdlib has no zstd codec; use the system tool (list args, no shell)
        try:
            result = subprocess.run(
                ["zstd", "-d", "-q", "-f", "-o", str(dest_path), str(source_path)],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ResourceError(f"Failed to run zstd: {e}") from e
        if result.returncode != 0:
            raise ResourceError(
                f"Failed to decompress {source_path}: {result.stderr.strip()}"
            )
        return dest_path

    openers = {".xz": lzma.open, ".gz": gzip.open, ".bz2": bz2.open}
    try:
        opener = openers[compression]
    except KeyError:
        raise FormatError(str(source_path), compression) from None

    try:
        with opener(source_path, "rb") as src, dest_path.open("wb") as dst:
            shutil.copyfileobj(src, dst, chunk_size)
    except (lzma.LZMAError, gzip.BadGzipFile, EOFError) as e:
        raise FormatError(str(source_path), compression) from e
    except OSError as e:
        # bz2 reports corrupt data as a plain OSError
        if compression == ".bz2" and "Invalid data stream" in str(e):
            raise FormatError(str(source_path), compression) from e
        raise ResourceError(f"Failed to decompress {source_path}: {e}") from e

    return dest_path


def _place_raw(source_path: Path, dest_path: Path) -> None:
    """Hard-link a raw image into place, copying across filesystems."""
    try:
        os.link(source_path, dest_path)
        logger.debug("Linked %s to %s", source_path, dest_path)
    except OSError:
        shutil.copyfile(source_path, dest_path)
        logger.debug("Copied %s to %s", source_path, dest_path)


def _acquire_local(
    source: LocalImage,
    work_dir: Path,
    tracker: ResourceTracker,
    dest_name: str,
) -> Path:
    compression = classify_image_name(source.path.name, source=str(source.path))

    if not source.path.is_file():
        raise UsageError(f"Image file not found: {source.path}")

    dest_path = work_dir / dest_name
    tracker.track(dest_path, ResourceKind.FILE)
    try:
        if compression:
            decompress(source.path, dest_path, compression)
        else:
            _place_raw(source.path, dest_path)
    except OSError as e:
        raise ResourceError(f"Failed to stage image {source.path}: {e}") from e
    return dest_path


def _acquire_remote(
    source: RemoteImage,
    work_dir: Path,
    tracker: ResourceTracker,
    settings: Settings,
    client: httpx.Client | None,
    dest_name: str,
) -> Path:
    compression = validate_remote_url(source.url)

    dest_path = work_dir / dest_name
    download_path = work_dir / f"download{compression}" if compression else dest_path
    download = tracker.track(download_path, ResourceKind.FILE)

    if client is None:
        with httpx.Client(follow_redirects=True) as own_client:
            result = download_file(
                own_client, source.url, download_path, settings.download_timeout
            )
    else:
        result = download_file(
            client, source.url, download_path, settings.download_timeout
        )

    if result.size_bytes == 0:
        raise NetworkError(f"Empty response body from {source.url}", code="empty_download")
    logger.debug("Original image download sha256: %s", result.checksum)

    if compression:
        tracker.track(dest_path, ResourceKind.FILE)
        decompress(download_path, dest_path, compression)
        tracker.release(download)
    return dest_path


def check_cloud_environment(environ: dict[str, str] | None = None) -> str:
    """Check the credential and region variables for a cloud image.

    Args:
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        The configured region.

    Raises:
        UsageError: If a credential or the region is missing.
    """
    env = os.environ if environ is None else environ
    missing = [name for name in CLOUD_CREDENTIAL_VARS if not env.get(name)]
    region = next((env[n] for n in CLOUD_REGION_VARS if env.get(n)), None)
    if region is None:
        missing.append(" or ".join(CLOUD_REGION_VARS))
    if missing:
        raise UsageError(
            f"Missing environment for cloud images: {', '.join(missing)}"
        )
    return region


def acquire(
    source: ImageSource,
    work_dir: Path,
    tracker: ResourceTracker,
    settings: Settings,
    client: httpx.Client | None = None,
    dest_name: str = DEFAULT_IMAGE_NAME,
) -> Path:
    """Obtain a raw image in the work directory.

    Args:
        source: Where the image comes from.
        work_dir: Run work directory.
        tracker: Run resource tracker; every produced file is registered.
        settings: Application settings (download timeout).
        client: Optional HTTPX client for remote sources.
        dest_name: File name of the raw image in ``work_dir``.

    Returns:
        Path to the raw image.

    Raises:
        FormatError: If the image is not raw or compressed raw.
        UsageError: If the locator is invalid or the source is unsupported.
        NetworkError: If a download fails.
        ResourceError: If staging or decompression fails.
    """
    if isinstance(source, LocalImage):
        path = _acquire_local(source, work_dir, tracker, dest_name)
    elif isinstance(source, RemoteImage):
        path = _acquire_remote(source, work_dir, tracker, settings, client, dest_name)
    elif isinstance(source, CloudImage):
        env_region = check_cloud_environment()
        region = source.region or env_region
        raise UsageError(
            f"Exporting cloud image {source.image_id} ({region}) is not supported",
            code="unsupported_source",
        )
    else:
        raise UsageError(f"Unknown image source: {source!r}")

    logger.info("Raw image ready at %s", path)
    return path


__all__ = [
    "ALLOWED_SCHEMES",
    "COMPRESSION_SUFFIXES",
    "CONTAINER_SUFFIXES",
    "RAW_SUFFIXES",
    "DownloadResult",
    "acquire",
    "check_cloud_environment",
    "classify_image_name",
    "decompress",
    "download_file",
    "validate_remote_url",
]
