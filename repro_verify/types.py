"""Shared type definitions for repro_verify.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path

from repro_verify.errors import UsageError

BRANCH_PATTERN = re.compile(r"^(main|stable/\d+|releng/\d+(\.\d+)?)$")
COMMIT_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")


class Platform(str, Enum):
    """FreeBSD machine platform (TARGET)."""

    AMD64 = "amd64"
    ARM = "arm"
    ARM64 = "arm64"
    I386 = "i386"
    POWERPC = "powerpc"
    RISCV = "riscv"


class Arch(str, Enum):
    """FreeBSD machine architecture (TARGET_ARCH)."""

    AMD64 = "amd64"
    I386 = "i386"
    AARCH64 = "aarch64"
    ARMV6 = "armv6"
    ARMV7 = "armv7"
    POWERPC = "powerpc"
    POWERPC64 = "powerpc64"
    POWERPC64LE = "powerpc64le"
    POWERPCSPE = "powerpcspe"
    RISCV64 = "riscv64"


# Valid architectures per platform, most specific variant first.
PLATFORM_ARCHES: dict[Platform, tuple[Arch, ...]] = {
    Platform.AMD64: (Arch.AMD64,),
    Platform.ARM: (Arch.ARMV7, Arch.ARMV6),
    Platform.ARM64: (Arch.AARCH64,),
    Platform.I386: (Arch.I386,),
    Platform.POWERPC: (
        Arch.POWERPC64LE,
        Arch.POWERPC64,
        Arch.POWERPCSPE,
        Arch.POWERPC,
    ),
    Platform.RISCV: (Arch.RISCV64,),
}

# Platforms whose architecture follows from the platform alone.
DEFAULT_ARCH: dict[Platform, Arch] = {
    Platform.AMD64: Arch.AMD64,
    Platform.ARM64: Arch.AARCH64,
    Platform.I386: Arch.I386,
}


class FilesystemKind(str, Enum):
    """Filesystem found on an image's data partition."""

    UFS = "ufs"
    ZFS = "zfs"


class ResourceKind(str, Enum):
    """Kind of ephemeral resource held by a run."""

    FILE = "file"
    DIRECTORY = "directory"
    DEVICE = "device"
    MOUNT = "mount"
    POOL = "pool"


class ResourceState(str, Enum):
    """Lifecycle state of a tracked resource."""

    ACTIVE = "active"
    RELEASED = "released"


@dataclass(frozen=True)
class BuildIdentity:
    """Source identity of a FreeBSD image.

    Fields stay ``None`` until they are supplied by the caller or recovered
    from the image. ``merged`` never overwrites a field that is already set.
    """

    platform: Platform | None = None
    arch: Arch | None = None
    branch: str | None = None
    commit_hash: str | None = None

    def missing_fields(self) -> list[str]:
        """Names of fields that are still unset."""
        return [f.name for f in fields(self) if getattr(self, f.name) is None]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def merged(self, other: BuildIdentity) -> BuildIdentity:
        """Return a copy with unset fields filled from ``other``."""
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(self)
            if getattr(self, f.name) is None and getattr(other, f.name) is not None
        }
        return replace(self, **updates)

    def validate(self) -> BuildIdentity:
        """Check the fields that are set.

        Returns:
            The identity itself, for chaining.

        Raises:
            UsageError: If a set field is malformed or the arch does not
                belong to the platform.
        """
        if self.branch is not None and not BRANCH_PATTERN.match(self.branch):
            raise UsageError(
                f"Invalid branch '{self.branch}': expected main, stable/<N> "
                "or releng/<N>[.<N>]"
            )
        if self.commit_hash is not None and not COMMIT_PATTERN.match(
            self.commit_hash
        ):
            raise UsageError(
                f"Invalid commit hash '{self.commit_hash}': expected 7-40 "
                "lowercase hex characters"
            )
        if (
            self.platform is not None
            and self.arch is not None
            and self.arch not in PLATFORM_ARCHES[self.platform]
        ):
            valid = ", ".join(a.value for a in PLATFORM_ARCHES[self.platform])
            raise UsageError(
                f"Architecture '{self.arch.value}' is not valid for platform "
                f"'{self.platform.value}' (expected one of: {valid})"
            )
        return self

    def result_prefix(self, date: str) -> str:
        """File name prefix for result artifacts of a complete identity."""
        platform, arch = self.platform, self.arch
        if platform is None or arch is None or not self.is_complete:
            raise ValueError(
                f"Identity is incomplete: missing {', '.join(self.missing_fields())}"
            )
        return f"{date}-{platform.value}-{arch.value}-{self.commit_hash}"


@dataclass
class ImageHandle:
    """A raw image attached as a memory disk and, once mounted, its root.

    Attributes:
        backing_file: Raw image file backing the device.
        device_id: Memory disk unit name (e.g. 'md0') once attached.
        mounted_at: Directory where the image's root filesystem is mounted.
        filesystem_kind: Filesystem of the selected data partition.
        partition: Selected partition name (e.g. 'md0p4').
        pool_name: Temporary pool name when the filesystem is ZFS.
    """

    backing_file: Path
    device_id: str | None = None
    mounted_at: Path | None = None
    filesystem_kind: FilesystemKind | None = None
    partition: str | None = None
    pool_name: str | None = None


__all__ = [
    "BRANCH_PATTERN",
    "COMMIT_PATTERN",
    "DEFAULT_ARCH",
    "PLATFORM_ARCHES",
    "Arch",
    "BuildIdentity",
    "FilesystemKind",
    "ImageHandle",
    "Platform",
    "ResourceKind",
    "ResourceState",
]
