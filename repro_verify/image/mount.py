"""Memory disk attachment and filesystem mounting for raw images.

This module handles:
- Attaching a raw image read-only as an md(4) memory disk
- Discovering the data partition with gpart(8)
- Mounting UFS directly, or importing a ZFS pool under a temporary,
  per-run name and mounting its boot dataset
- Reversing each of those steps through the ResourceTracker

Only one image is mounted at a time. Every step registers its undo action
with the tracker before the next step starts, so a failure at any point
leaves nothing attached once the tracker (or ``unmount``) has run.
"""

from __future__ import annotations

import logging
import re
import secrets
import shlex
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from repro_verify.errors import ResourceError
from repro_verify.resources import ResourceTracker, TrackedResource
from repro_verify.types import FilesystemKind, ImageHandle, ResourceKind

logger = logging.getLogger(__name__)

PARTITION_FILESYSTEMS = {
    "freebsd-ufs": FilesystemKind.UFS,
    "freebsd-zfs": FilesystemKind.ZFS,
}

KERNEL_RELATIVE_PATH = Path("boot") / "kernel" / "kernel"

_MD_DEVICE_PATTERN = re.compile(r"^md\d+$")
_POOL_LINE_PATTERN = re.compile(r"^\s*pool:\s*(\S+)\s*$")
_ID_LINE_PATTERN = re.compile(r"^\s*id:\s*(\d+)\s*$")


@dataclass
class Partition:
    """A partition reported by gpart.

    Attributes:
        name: Provider name (e.g. 'md0p4').
        type: Partition type tag (e.g. 'freebsd-ufs').
    """

    name: str
    type: str


@dataclass
class PoolCandidate:
    """A pool reported as importable by ``zpool import``."""

    name: str
    pool_id: str


def parse_gpart_show(output: str, device: str) -> list[Partition]:
    """Parse ``gpart show -p <device>`` output.

    Args:
        output: Command output.
        device: Memory disk name the partitions belong to.

    Returns:
        Partitions in on-disk order; free space entries are skipped.
    """
    partitions: list[Partition] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4 or parts[0] == "=>":
            continue
        name, part_type = parts[2], parts[3]
        if not name.startswith(device) or name == device:
            continue
        partitions.append(Partition(name=name, type=part_type))
    return partitions


def select_data_partition(
    partitions: list[Partition],
) -> tuple[Partition, FilesystemKind]:
    """Pick the first UFS or ZFS partition.

    Raises:
        ResourceError: If no partition carries a supported filesystem.
    """
    for partition in partitions:
        kind = PARTITION_FILESYSTEMS.get(partition.type)
        if kind is not None:
            return partition, kind

    seen = ", ".join(sorted({p.type for p in partitions})) or "none"
    raise ResourceError(
        f"Unsupported filesystem: no freebsd-ufs or freebsd-zfs partition "
        f"found (partition types: {seen})",
        code="unsupported_filesystem",
    )


def parse_zpool_import(output: str) -> list[PoolCandidate]:
    """Parse the pool listing printed by ``zpool import -d <dev>``.

    Args:
        output: Command output.

    Returns:
        Importable pools, in the order listed.
    """
    candidates: list[PoolCandidate] = []
    pending_name: str | None = None
    for line in output.splitlines():
        pool_match = _POOL_LINE_PATTERN.match(line)
        if pool_match:
            pending_name = pool_match.group(1)
            continue
        id_match = _ID_LINE_PATTERN.match(line)
        if id_match and pending_name is not None:
            candidates.append(PoolCandidate(name=pending_name, pool_id=id_match.group(1)))
            pending_name = None
    return candidates


def temporary_pool_name(pool: str) -> str:
    """Per-run pool name that cannot collide with a pool on the host."""
    return f"{pool}-repro-{secrets.token_hex(4)}"


class ImageMounter:
    """Attach, mount and tear down raw FreeBSD images.

    Args:
        tracker: Run resource tracker.
        work_dir: Directory under which mount points are created.
        command_timeout: Timeout in seconds for each system command.
    """

    def __init__(
        self,
        tracker: ResourceTracker,
        work_dir: Path,
        command_timeout: int = 300,
    ) -> None:
        self.tracker = tracker
        self.work_dir = work_dir
        self.command_timeout = command_timeout
        self._held: list[TrackedResource] = []

    def _run(self, cmd: list[str]) -> str:
        """Run a system command and return its stdout.

        Raises:
            ResourceError: If the command cannot run, times out or fails.
        """
        cmd_str = shlex.join(cmd)
        logger.debug("Running: %s", cmd_str)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ResourceError(
                f"Timed out after {self.command_timeout}s: {cmd_str}",
                command=cmd,
                code="timeout",
            ) from e
        except OSError as e:
            raise ResourceError(f"Failed to run {cmd_str}: {e}", command=cmd) from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise ResourceError(
                f"{cmd_str} exited with {result.returncode}: {stderr}",
                command=cmd,
            )
        return result.stdout

    def _hold(
        self,
        path: str | Path,
        kind: ResourceKind,
        cmd: list[str] | None = None,
    ) -> TrackedResource:
        hook = None
        if cmd is not None:

            def hook(_resource: TrackedResource) -> None:
                self._run(cmd)

        resource = self.tracker.track(path, kind, release_hook=hook)
        self._held.append(resource)
        return resource

    def _attach(self, handle: ImageHandle) -> str:
        output = self._run(
            [
                "mdconfig",
                "-a",
                "-t",
                "vnode",
                "-o",
                "readonly",
                "-f",
                str(handle.backing_file),
            ]
        )
        device = output.strip()
        if not _MD_DEVICE_PATTERN.match(device):
            raise ResourceError(f"Unexpected mdconfig output: {output!r}")

        handle.device_id = device
        self._hold(device, ResourceKind.DEVICE, ["mdconfig", "-d", "-u", device])
        logger.info("Attached %s as /dev/%s", handle.backing_file, device)
        return device

    def _mount_ufs(self, partition: Partition, mount_point: Path) -> None:
        self._run(
            ["mount", "-t", "ufs", "-o", "ro", f"/dev/{partition.name}", str(mount_point)]
        )
        self._hold(mount_point, ResourceKind.MOUNT, ["umount", str(mount_point)])

    def _import_zfs(self, partition: Partition, mount_point: Path) -> str:
        provider = f"/dev/{partition.name}"
        candidates = parse_zpool_import(self._run(["zpool", "import", "-d", provider]))
        if len(candidates) != 1:
            names = ", ".join(c.name for c in candidates) or "none"
            raise ResourceError(
                f"Expected exactly one importable pool on {provider}, "
                f"found {len(candidates)} ({names})",
                code="pool_selection",
            )
        candidate = candidates[0]
        alt_name = temporary_pool_name(candidate.name)

        self._run(
            [
                "zpool",
                "import",
                "-f",
                "-N",
                "-t",
                "-o",
                "readonly=on",
                "-R",
                str(mount_point),
                "-d",
                provider,
                candidate.pool_id,
                alt_name,
            ]
        )
        self._hold(alt_name, ResourceKind.POOL, ["zpool", "export", "-f", alt_name])
        logger.info("Imported pool %s as %s", candidate.name, alt_name)

        bootfs = self._run(["zpool", "get", "-H", "-o", "value", "bootfs", alt_name])
        root_dataset = bootfs.strip()
        if root_dataset in ("", "-"):
            root_dataset = f"{alt_name}/ROOT/default"
        elif root_dataset.startswith(f"{candidate.name}/"):
            root_dataset = alt_name + root_dataset[len(candidate.name) :]

        self._run(["zfs", "mount", root_dataset])
        logger.debug("Mounted dataset %s", root_dataset)
        return alt_name

    def mount(self, image_path: Path, name: str = "image") -> ImageHandle:
        """Attach an image and mount its root filesystem read-only.

        Args:
            image_path: Raw image file.
            name: Label used for the mount point directory.

        Returns:
            Handle with device, partition and mount point set.

        Raises:
            ResourceError: If any step fails. Steps already taken are undone
                before the error propagates.
        """
        if self._held:
            raise ResourceError("Another image is still mounted")

        handle = ImageHandle(backing_file=image_path)
        try:
            device = self._attach(handle)
            partitions = parse_gpart_show(
                self._run(["gpart", "show", "-p", device]), device
            )
            partition, kind = select_data_partition(partitions)
            handle.partition = partition.name
            handle.filesystem_kind = kind

            mount_point = self.work_dir / f"mnt-{name}"
            mount_point.mkdir(parents=True, exist_ok=False)
            self._hold(mount_point, ResourceKind.DIRECTORY)

            if kind is FilesystemKind.UFS:
                self._mount_ufs(partition, mount_point)
            else:
                handle.pool_name = self._import_zfs(partition, mount_point)
            handle.mounted_at = mount_point
        except OSError as e:
            self.unmount(handle, strict=False)
            raise ResourceError(f"Failed to prepare mount point: {e}") from e
        except Exception:
            self.unmount(handle, strict=False)
            raise

        logger.info(
            "Mounted %s (%s on %s) at %s",
            image_path.name,
            kind.value,
            partition.name,
            handle.mounted_at,
        )
        return handle

    def unmount(self, handle: ImageHandle, strict: bool = True) -> None:
        """Undo every step taken by ``mount`` in reverse order.

        Args:
            handle: Handle returned by ``mount`` (or partially built by it).
            strict: Raise if any step fails; otherwise only log.

        Raises:
            ResourceError: If ``strict`` and a release step failed. All steps
                are still attempted.
        """
        failed = [r for r in reversed(self._held) if not self.tracker.release(r)]
        self._held.clear()
        handle.mounted_at = None
        handle.device_id = None
        handle.pool_name = None

        if failed:
            names = ", ".join(f"{r.kind.value} {r.path}" for r in failed)
            if strict:
                raise ResourceError(f"Failed to release {names}")
            logger.warning("Failed to release %s", names)
        else:
            logger.info("Unmounted and detached %s", handle.backing_file.name)

    @contextmanager
    def mounted(self, image_path: Path, name: str = "image") -> Iterator[ImageHandle]:
        """Scope a mounted image to a ``with`` block."""
        handle = self.mount(image_path, name=name)
        try:
            yield handle
        except BaseException:
            self.unmount(handle, strict=False)
            raise
        self.unmount(handle)


def kernel_path(handle: ImageHandle) -> Path:
    """Path of the kernel binary inside a mounted image."""
    if handle.mounted_at is None:
        raise ResourceError(f"{handle.backing_file} is not mounted")
    return handle.mounted_at / KERNEL_RELATIVE_PATH


__all__ = [
    "KERNEL_RELATIVE_PATH",
    "PARTITION_FILESYSTEMS",
    "ImageMounter",
    "Partition",
    "PoolCandidate",
    "kernel_path",
    "parse_gpart_show",
    "parse_zpool_import",
    "select_data_partition",
    "temporary_pool_name",
]
