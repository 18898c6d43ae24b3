"""Content manifests of directory trees.

This module handles:
- Walking a tree in a fixed lexicographic order
- Computing SHA-256 digests of regular files
- Rendering, writing and reading ``path|digest`` manifest files

Symbolic links, directories and special files are left out of a manifest.
A file that cannot be read aborts the whole manifest: a partial manifest is
useless for a bit-for-bit comparison.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from repro_verify.errors import HashingError

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

FIELD_SEPARATOR = "|"


@dataclass(frozen=True, order=True)
class ManifestEntry:
    """One file of a manifest."""

    path: str
    digest: str

    def render(self) -> str:
        return f"{self.path}{FIELD_SEPARATOR}{self.digest}"


@dataclass(frozen=True)
class Manifest:
    """Sorted, immutable list of (relative path, digest) entries.

    Two manifests are equal iff their sorted entries are identical.
    """

    entries: tuple[ManifestEntry, ...] = ()

    @classmethod
    def from_entries(cls, entries: Iterable[ManifestEntry]) -> Manifest:
        return cls(entries=tuple(sorted(entries)))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def as_dict(self) -> dict[str, str]:
        """Map of relative path to digest."""
        return {e.path: e.digest for e in self.entries}

    def lines(self) -> list[str]:
        """Manifest lines without line terminators."""
        return [e.render() for e in self.entries]

    def render(self) -> str:
        """Manifest file content: one newline-terminated line per file."""
        return "".join(line + "\n" for line in self.lines())

    def write(self, output_path: Path) -> Path:
        """Write the manifest to a UTF-8 text file.

        Args:
            output_path: Output file path.

        Returns:
            Path to the written manifest file.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("w", encoding="utf-8", newline="\n") as f:
            f.write(self.render())
        logger.info("Wrote manifest with %d entries to %s", len(self), output_path)
        return output_path

    @classmethod
    def parse(cls, text: str) -> Manifest:
        """Parse manifest file content.

        Raises:
            ValueError: If a non-empty line is not ``path|digest``.
        """
        entries: list[ManifestEntry] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line:
                continue
            path, sep, digest = line.rpartition(FIELD_SEPARATOR)
            if not sep or not path or not digest:
                raise ValueError(f"Malformed manifest line {lineno}: {line!r}")
            entries.append(ManifestEntry(path=path, digest=digest))
        return cls.from_entries(entries)

    @classmethod
    def read(cls, path: Path) -> Manifest:
        """Read a manifest file written by ``write``."""
        return cls.parse(path.read_text(encoding="utf-8"))


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def manifest_path(relative: Path) -> str:
    """Manifest form of a path relative to the hashed root.

    Names that are not valid UTF-8 reach Python as surrogate escapes; their
    undecodable bytes are written as ``\\xNN`` so manifests stay UTF-8 text.
    """
    return os.fsencode(relative.as_posix()).decode("utf-8", "backslashreplace")


def _raise_walk_error(error: OSError) -> None:
    raise HashingError(error.filename or "?", error.strerror or str(error))


def iter_regular_files(root: Path) -> list[tuple[str, Path]]:
    """Regular files below ``root`` as (relative posix path, path), sorted.

    Raises:
        HashingError: If a directory cannot be listed.
    """
    files: list[tuple[str, Path]] = []
    for dirpath, _dirnames, filenames in os.walk(
        root, onerror=_raise_walk_error, followlinks=False
    ):
        for filename in filenames:
            path = Path(dirpath) / filename
            try:
                mode = path.lstat().st_mode
            except OSError as e:
                raise HashingError(str(path), e.strerror or str(e)) from e
            if not stat.S_ISREG(mode):
                continue
            files.append((manifest_path(path.relative_to(root)), path))
    files.sort(key=lambda item: item[0])
    return files


def hash_tree(root: Path, chunk_size: int = HASH_CHUNK_SIZE) -> Manifest:
    """Build the content manifest of a directory tree.

    Args:
        root: Directory to hash.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        Manifest sorted by relative path.

    Raises:
        HashingError: If the tree cannot be walked or a file cannot be read.
    """
    if not root.is_dir():
        raise HashingError(str(root), "not a directory")

    logger.info("Hashing files under %s", root)
    entries: list[ManifestEntry] = []
    for relative_path, path in iter_regular_files(root):
        try:
            digest = compute_file_hash(path, chunk_size)
        except OSError as e:
            raise HashingError(str(path), e.strerror or str(e)) from e
        entries.append(ManifestEntry(path=relative_path, digest=digest))

    manifest = Manifest.from_entries(entries)
    logger.info("Hashed %d files under %s", len(manifest), root)
    return manifest


__all__ = [
    "HASH_CHUNK_SIZE",
    "Manifest",
    "ManifestEntry",
    "compute_file_hash",
    "hash_tree",
    "iter_regular_files",
    "manifest_path",
]
