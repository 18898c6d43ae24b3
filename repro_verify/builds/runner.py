"""Build runner for rebuilding a FreeBSD image from source.

This module handles:
- Cloning the source repository and pinning the recorded commit
- Composing the buildworld, buildkernel and vm-image make commands
- Executing each stage with subprocess, output appended to one log file
- Enforcing per-stage timeouts

The build runs directly on the host; no jail or container isolates it from
the host toolchain.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from repro_verify.errors import BuildError

if TYPE_CHECKING:
    from repro_verify.config import Settings
    from repro_verify.types import BuildIdentity, FilesystemKind

logger = logging.getLogger(__name__)

# Raw image written by release/Makefile.vm on branches that build a single
# filesystem; newer branches write one vm.<fs>.raw per entry of VMFSLIST.
VM_IMAGE_NAME = "vm.raw"


class BuildStage(str, Enum):
    """Steps of a rebuild, in execution order."""

    CLONE = "clone"
    CHECKOUT = "checkout"
    WORLD = "world"
    KERNEL = "kernel"
    IMAGE = "image"


MAKE_STAGES = (BuildStage.WORLD, BuildStage.KERNEL, BuildStage.IMAGE)


@dataclass
class BuildResult:
    """Result of a rebuild.

    Attributes:
        object_dir: MAKEOBJDIRPREFIX of the build.
        image_path: Raw image produced by the image stage.
        source_dir: Checked-out source tree.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    object_dir: Path
    image_path: Path
    source_dir: Path
    log_path: Path
    started_at: datetime
    finished_at: datetime


def compose_clone_command(repo_url: str, branch: str, source_dir: Path) -> list[str]:
    """Full clone of ``branch``; the commit is pinned by a later checkout."""
    return ["git", "clone", "--branch", branch, repo_url, str(source_dir)]


def compose_checkout_command(source_dir: Path, commit_hash: str) -> list[str]:
    return ["git", "-C", str(source_dir), "checkout", "--detach", commit_hash]


def compose_target_args(identity: BuildIdentity) -> list[str]:
    """TARGET/TARGET_ARCH make arguments for an identity."""
    if identity.platform is None or identity.arch is None:
        raise ValueError("Build identity has no platform or arch")
    return [f"TARGET={identity.platform.value}", f"TARGET_ARCH={identity.arch.value}"]


def compose_stage_command(
    stage: BuildStage,
    identity: BuildIdentity,
    source_dir: Path,
    jobs: int = 1,
    filesystem: FilesystemKind | None = None,
) -> list[str]:
    """Compose the make command of a build stage.

    Args:
        stage: One of the make stages.
        identity: Complete build identity.
        source_dir: Checked-out source tree.
        jobs: Parallel make jobs.
        filesystem: Filesystem of the original image; the image stage then
            builds only that one. None keeps the branch default.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    target_args = compose_target_args(identity)

    if stage is BuildStage.WORLD:
        return ["make", "-C", str(source_dir), f"-j{jobs}", "buildworld", *target_args]
    if stage is BuildStage.KERNEL:
        return ["make", "-C", str(source_dir), f"-j{jobs}", "buildkernel", *target_args]
    if stage is BuildStage.IMAGE:
        fs_args = (
            [f"VMFS={filesystem.value}", f"VMFSLIST={filesystem.value}"] if filesystem else []
        )
        return [
            "make",
            "-C",
            str(source_dir / "release"),
            "vm-image",
            "WITH_VMIMAGES=yes",
            "VMFORMATS=raw",
            *fs_args,
            *target_args,
        ]
    raise ValueError(f"Not a make stage: {stage.value}")


def build_environment(object_dir: Path) -> dict[str, str]:
    """Environment for make; MAKEOBJDIRPREFIX is only honoured from the environment."""
    env = dict(os.environ)
    env["MAKEOBJDIRPREFIX"] = str(object_dir)
    return env


def run_stage(
    stage: BuildStage,
    cmd: list[str],
    log_path: Path,
    cwd: Path | None = None,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
) -> None:
    """Run one build stage, appending its output to the build log.

    Args:
        stage: Stage being run (named in errors).
        cmd: Command to execute.
        log_path: Build log file.
        cwd: Working directory.
        timeout: Stage timeout in seconds (None = no timeout).
        env: Full environment for the command (None = inherit).

    Raises:
        BuildError: If the stage cannot start, times out or exits non-zero.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Running %s stage: %s", stage.value, cmd_str)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Stage: {stage.value}\n")
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

    except subprocess.TimeoutExpired as e:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        logger.error("Stage %s timed out. See log: %s", stage.value, log_path)
        raise BuildError(
            stage.value,
            f"timed out after {timeout} seconds",
            exit_code=-1,
            code="build_timeout",
        ) from e

    except OSError as e:
        logger.error("Failed to execute %s: %s", cmd_str, e)
        raise BuildError(
            stage.value,
            f"failed to execute: {e}",
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)
    exit_code = result.returncode

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    if exit_code != 0:
        logger.error(
            "Stage %s failed with exit code %d. See log: %s",
            stage.value,
            exit_code,
            log_path,
        )
        raise BuildError(
            stage.value,
            f"exit code {exit_code} (see {log_path})",
            exit_code=exit_code,
        )


def image_names(filesystem: FilesystemKind | None = None) -> list[str]:
    """Candidate image file names, most specific first."""
    if filesystem is None:
        return [VM_IMAGE_NAME]
    return [f"vm.{filesystem.value}.raw", VM_IMAGE_NAME]


def locate_image(object_dir: Path, filesystem: FilesystemKind | None = None) -> Path | None:
    """Find the raw image written by the image stage under the object tree.

    With a filesystem, ``vm.<fs>.raw`` is preferred and ``vm.raw`` is the
    fallback for branches that predate per-filesystem images. An image of a
    different filesystem is never returned.
    """
    for name in image_names(filesystem):
        candidates = sorted(object_dir.rglob(name))
        if candidates:
            return candidates[0]
    return None


def build(
    identity: BuildIdentity,
    work_dir: Path,
    settings: Settings,
    filesystem: FilesystemKind | None = None,
) -> BuildResult:
    """Rebuild the image for a build identity.

    Clones ``identity.branch``, checks out ``identity.commit_hash`` and runs
    buildworld, buildkernel and vm-image in order. A stage only starts after
    the previous one exited with status zero.

    Args:
        identity: Complete build identity.
        work_dir: Run work directory; receives src/, obj/ and build.log.
        settings: Application settings (repository, jobs, timeout).
        filesystem: Filesystem of the original image, so the rebuilt image
            uses the same one.

    Returns:
        BuildResult with the object directory and produced image.

    Raises:
        BuildError: Naming the first stage that failed.
    """
    branch, commit_hash = identity.branch, identity.commit_hash
    if branch is None or commit_hash is None or not identity.is_complete:
        raise ValueError(
            f"Build identity is incomplete: missing {', '.join(identity.missing_fields())}"
        )

    source_dir = work_dir / "src"
    object_dir = work_dir / "obj"
    log_path = work_dir / "build.log"
    object_dir.mkdir(parents=True, exist_ok=True)

    started_at = datetime.now(timezone.utc)
    logger.info(
        "Rebuilding %s@%s for %s/%s (log: %s)",
        branch,
        commit_hash,
        identity.platform.value if identity.platform else "?",
        identity.arch.value if identity.arch else "?",
        log_path,
    )

    run_stage(
        BuildStage.CLONE,
        compose_clone_command(settings.src_repo_url, branch, source_dir),
        log_path,
        timeout=settings.build_timeout,
    )
    run_stage(
        BuildStage.CHECKOUT,
        compose_checkout_command(source_dir, commit_hash),
        log_path,
        timeout=settings.build_timeout,
    )

    env = build_environment(object_dir)
    for stage in MAKE_STAGES:
        run_stage(
            stage,
            compose_stage_command(
                stage, identity, source_dir, settings.build_jobs, filesystem
            ),
            log_path,
            cwd=source_dir,
            timeout=settings.build_timeout,
            env=env,
        )

    image_path = locate_image(object_dir, filesystem)
    if image_path is None:
        raise BuildError(
            BuildStage.IMAGE.value,
            f"no {' or '.join(image_names(filesystem))} produced under {object_dir}",
            code="missing_image",
        )

    finished_at = datetime.now(timezone.utc)
    logger.info("Rebuilt image at %s", image_path)
    return BuildResult(
        object_dir=object_dir,
        image_path=image_path,
        source_dir=source_dir,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
    )


__all__ = [
    "MAKE_STAGES",
    "VM_IMAGE_NAME",
    "BuildResult",
    "BuildStage",
    "build",
    "build_environment",
    "compose_checkout_command",
    "compose_clone_command",
    "compose_stage_command",
    "compose_target_args",
    "image_names",
    "locate_image",
    "run_stage",
]
