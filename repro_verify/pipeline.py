"""Verification pipeline.

This module provides the high-level API:
- verify_image(): acquire, mount, identify, hash, rebuild, hash, compare
- identify_image(): acquire, mount and recover the build identity only

Each run owns a RunContext that is passed down explicitly; all ephemeral
resources belong to the run's ResourceTracker, which is unwound on every
exit path, including termination signals.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import httpx

from repro_verify.builds.runner import build
from repro_verify.config import Settings, get_settings
from repro_verify.errors import ResourceError
from repro_verify.image.fetch import acquire
from repro_verify.image.metadata import extract
from repro_verify.image.mount import ImageMounter, kernel_path
from repro_verify.image.source import ImageSource, describe_source
from repro_verify.manifest.compare import (
    VerificationReport,
    compare,
    result_paths,
    write_diff,
)
from repro_verify.manifest.hasher import Manifest, hash_tree
from repro_verify.resources import ResourceTracker, terminate_on_signals
from repro_verify.types import BuildIdentity, FilesystemKind, ImageHandle, ResourceKind

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y%m%d"


@dataclass
class RunContext:
    """State of one verification run.

    Attributes:
        settings: Effective settings.
        tracker: Owner of every ephemeral resource of the run.
        work_dir: Per-run scratch directory.
        identity: Build identity, completed once the image is inspected.
        date: Run date used in result file names.
        filesystem_kind: Filesystem of the original image, once mounted.
    """

    settings: Settings
    tracker: ResourceTracker
    work_dir: Path
    identity: BuildIdentity
    date: str
    filesystem_kind: FilesystemKind | None = None

    @classmethod
    def create(
        cls,
        settings: Settings,
        tracker: ResourceTracker,
        identity: BuildIdentity,
        now: datetime | None = None,
    ) -> RunContext:
        """Create the work directory and the context of a new run."""
        if settings.tmp_dir is not None:
            settings.tmp_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="repro-verify-", dir=settings.tmp_dir))
        if settings.keep_work_dir:
            logger.info("Keeping work directory %s", work_dir)
        else:
            tracker.track(work_dir, ResourceKind.DIRECTORY)
        logger.debug("Work directory: %s", work_dir)

        now = now or datetime.now(timezone.utc)
        return cls(
            settings=settings,
            tracker=tracker,
            work_dir=work_dir,
            identity=identity,
            date=now.strftime(DATE_FORMAT),
        )

    def mounter(self) -> ImageMounter:
        return ImageMounter(
            self.tracker, self.work_dir, command_timeout=self.settings.command_timeout
        )


def _mounted_root(handle: ImageHandle) -> Path:
    if handle.mounted_at is None:
        raise ResourceError(f"{handle.backing_file} is not mounted")
    return handle.mounted_at


def _identify(
    ctx: RunContext,
    source: ImageSource,
    client: httpx.Client | None,
    hash_original: bool,
) -> Manifest:
    """Acquire and mount the original image; fill in ``ctx.identity``.

    Returns the original's manifest, or an empty one unless ``hash_original``.
    """
    logger.info("Acquiring image from %s", describe_source(source))
    raw_image = acquire(source, ctx.work_dir, ctx.tracker, ctx.settings, client=client)

    manifest = Manifest()
    with ctx.mounter().mounted(raw_image, name="original") as handle:
        ctx.filesystem_kind = handle.filesystem_kind
        ctx.identity = extract(kernel_path(handle), ctx.identity).validate()
        if hash_original:
            manifest = hash_tree(_mounted_root(handle))
    return manifest


def _run_verification(
    ctx: RunContext,
    source: ImageSource,
    client: httpx.Client | None,
) -> VerificationReport:
    original = _identify(ctx, source, client, hash_original=True)

    paths = result_paths(ctx.settings.results_dir, ctx.identity, ctx.date)
    original.write(paths.image_manifest)

    result = build(ctx.identity, ctx.work_dir, ctx.settings, ctx.filesystem_kind)

    with ctx.mounter().mounted(result.image_path, name="rebuilt") as handle:
        rebuilt = hash_tree(_mounted_root(handle))
    rebuilt.write(paths.obj_manifest)

    report = compare(
        original,
        rebuilt,
        original_label=paths.image_manifest.name,
        rebuilt_label=paths.obj_manifest.name,
    )
    write_diff(report, paths.diff)
    report.paths = paths
    return report


def verify_image(
    source: ImageSource,
    identity: BuildIdentity | None = None,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
    tracker: ResourceTracker | None = None,
) -> VerificationReport:
    """Verify that an image is reproducible from its recorded source.

    Args:
        source: Where the original image comes from.
        identity: Caller-supplied identity fields; the rest is recovered
            from the image kernel.
        settings: Application settings; loaded from the environment if None.
        client: Optional HTTPX client for remote sources.
        tracker: Optional tracker to own the run's resources.

    Returns:
        VerificationReport with the result file paths set. A mismatch is a
        successful outcome with ``reproducible`` False.

    Raises:
        ReproError: Any fatal condition. Teardown has already run.
    """
    settings = settings or get_settings()
    known = (identity or BuildIdentity()).validate()
    tracker = tracker or ResourceTracker()

    with terminate_on_signals(tracker):
        try:
            ctx = RunContext.create(settings, tracker, known)
            report = _run_verification(ctx, source, client)
        finally:
            tracker.release_all()

    logger.info(
        "Verdict for %s: %s",
        describe_source(source),
        "reproducible" if report.reproducible else "NOT reproducible",
    )
    return report


def identify_image(
    source: ImageSource,
    identity: BuildIdentity | None = None,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
    tracker: ResourceTracker | None = None,
) -> BuildIdentity:
    """Recover the build identity of an image without rebuilding it.

    Raises:
        ReproError: Any fatal condition. Teardown has already run.
    """
    settings = settings or get_settings()
    known = (identity or BuildIdentity()).validate()
    tracker = tracker or ResourceTracker()

    with terminate_on_signals(tracker):
        try:
            ctx = RunContext.create(settings, tracker, known)
            _identify(ctx, source, client, hash_original=False)
        finally:
            tracker.release_all()
    return ctx.identity


__all__ = ["DATE_FORMAT", "RunContext", "identify_image", "verify_image"]
