"""Manifest comparison and result files.

The verdict is a unified diff of the two manifest renderings: the image is
reproducible iff the diff is empty. Added, removed and changed paths are
derived for the summary only; why a digest differs is left to the reader of
the diff.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from pathlib import Path

from repro_verify.manifest.hasher import Manifest
from repro_verify.types import BuildIdentity

logger = logging.getLogger(__name__)

IMAGE_MANIFEST_SUFFIX = "-image.sha256"
OBJ_MANIFEST_SUFFIX = "-obj.sha256"
DIFF_SUFFIX = ".diff"


@dataclass
class ResultPaths:
    """Result files of one run."""

    image_manifest: Path
    obj_manifest: Path
    diff: Path


@dataclass
class VerificationReport:
    """Outcome of comparing an original and a rebuilt manifest.

    Attributes:
        diff: Unified diff text; empty when the images match.
        added: Paths only in the rebuilt manifest.
        removed: Paths only in the original manifest.
        changed: Paths present in both with different digests.
        paths: Result files, once written.
    """

    diff: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    paths: ResultPaths | None = None

    @property
    def reproducible(self) -> bool:
        return not self.diff


def result_paths(results_dir: Path, identity: BuildIdentity, date: str) -> ResultPaths:
    """Result file names for a run.

    Args:
        results_dir: Directory receiving the files.
        identity: Complete build identity.
        date: Run date as YYYYMMDD.

    Returns:
        ``<date>-<platform>-<arch>-<commit>`` prefixed paths.
    """
    prefix = identity.result_prefix(date)
    return ResultPaths(
        image_manifest=results_dir / f"{prefix}{IMAGE_MANIFEST_SUFFIX}",
        obj_manifest=results_dir / f"{prefix}{OBJ_MANIFEST_SUFFIX}",
        diff=results_dir / f"{prefix}{DIFF_SUFFIX}",
    )


def unified_diff(
    original: Manifest,
    rebuilt: Manifest,
    original_label: str = "image",
    rebuilt_label: str = "obj",
) -> str:
    """Unified diff text of two manifests; empty when they are equal."""
    lines = difflib.unified_diff(
        original.lines(),
        rebuilt.lines(),
        fromfile=original_label,
        tofile=rebuilt_label,
        lineterm="",
    )
    return "".join(line + "\n" for line in lines)


def compare(
    original: Manifest,
    rebuilt: Manifest,
    original_label: str = "image",
    rebuilt_label: str = "obj",
) -> VerificationReport:
    """Compare the manifest of an original image with its rebuild.

    Args:
        original: Manifest of the original image.
        rebuilt: Manifest of the rebuilt image.
        original_label: Diff header name for the original.
        rebuilt_label: Diff header name for the rebuild.

    Returns:
        VerificationReport; ``reproducible`` is True iff the diff is empty.
    """
    before = original.as_dict()
    after = rebuilt.as_dict()

    report = VerificationReport(
        diff=unified_diff(original, rebuilt, original_label, rebuilt_label),
        added=sorted(after.keys() - before.keys()),
        removed=sorted(before.keys() - after.keys()),
        changed=sorted(p for p in before.keys() & after.keys() if before[p] != after[p]),
    )

    if report.reproducible:
        logger.info("Manifests match (%d files)", len(original))
    else:
        logger.warning(
            "Manifests differ: %d added, %d removed, %d changed",
            len(report.added),
            len(report.removed),
            len(report.changed),
        )
    return report


def write_diff(report: VerificationReport, diff_path: Path) -> Path:
    """Write the report's diff (possibly empty) to a file."""
    diff_path.parent.mkdir(parents=True, exist_ok=True)
    diff_path.write_text(report.diff, encoding="utf-8")
    logger.info("Wrote diff to %s", diff_path)
    return diff_path


__all__ = [
    "DIFF_SUFFIX",
    "IMAGE_MANIFEST_SUFFIX",
    "OBJ_MANIFEST_SUFFIX",
    "ResultPaths",
    "VerificationReport",
    "compare",
    "result_paths",
    "unified_diff",
    "write_diff",
]
