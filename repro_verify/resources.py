"""Resource tracking and guaranteed teardown.

Every ephemeral file, directory, memory disk, mount and imported pool a run
creates is registered with a ``ResourceTracker``. The tracker releases them
in reverse registration order, whether the run completes, fails, or is
terminated by a signal. Release is best-effort: failures are logged and the
remaining resources are still released.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from repro_verify.errors import PipelineInterrupted
from repro_verify.types import ResourceKind, ResourceState

logger = logging.getLogger(__name__)

# Signals that terminate a run; all of them trigger a full teardown.
TERMINATION_SIGNALS = (
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGTERM,
    signal.SIGALRM,
    signal.SIGHUP,
)


@dataclass(eq=False)
class TrackedResource:
    """A resource owned by the tracker until it is released.

    Attributes:
        path: File system path or device/pool name identifying the resource.
        kind: What the resource is.
        state: Whether the resource is still held.
        release_hook: Callable that releases devices, mounts and pools.
            Files and directories are removed by the tracker itself.
    """

    path: str
    kind: ResourceKind
    state: ResourceState = ResourceState.ACTIVE
    release_hook: Callable[[TrackedResource], None] | None = None

    @property
    def active(self) -> bool:
        return self.state is ResourceState.ACTIVE


def _remove_file(resource: TrackedResource) -> None:
    Path(resource.path).unlink(missing_ok=True)


def _clear_flags_and_retry(func: Callable[[str], Any], path: str, exc: Any) -> None:
    """rmtree error handler that clears BSD file flags and retries once.

    installworld leaves schg and sunlnk flags on files under the object
    tree; neither root nor rmtree can remove them until the flags of the
    entry and its parent directory are cleared.
    """
    error = exc[1] if isinstance(exc, tuple) else exc
    if (
        not hasattr(os, "chflags")
        or not isinstance(error, PermissionError)
        or func not in (os.unlink, os.rmdir)
    ):
        raise error
    os.chflags(os.path.dirname(path), 0)
    os.chflags(path, 0, follow_symlinks=False)
    func(path)


def _remove_directory(resource: TrackedResource) -> None:
    path = Path(resource.path)
    if not path.exists():
        return
    if os.path.ismount(path):
        # Never recurse into a live mount.
        raise OSError(f"refusing to remove mounted directory {path}")
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_clear_flags_and_retry)
    else:
        shutil.rmtree(path, onerror=_clear_flags_and_retry)


class ResourceTracker:
    """Registry of ephemeral resources released in reverse order."""

    def __init__(self) -> None:
        self._resources: list[TrackedResource] = []
        self._releasing = False

    @property
    def resources(self) -> list[TrackedResource]:
        """All resources registered so far, in registration order."""
        return list(self._resources)

    @property
    def active(self) -> list[TrackedResource]:
        return [r for r in self._resources if r.active]

    def track(
        self,
        path: str | Path,
        kind: ResourceKind,
        release_hook: Callable[[TrackedResource], None] | None = None,
    ) -> TrackedResource:
        """Register a resource for cleanup.

        Args:
            path: Path, device or pool name of the resource.
            kind: Resource kind.
            release_hook: Required for devices, mounts and pools.

        Returns:
            The tracked resource.
        """
        if release_hook is None and kind not in (
            ResourceKind.FILE,
            ResourceKind.DIRECTORY,
        ):
            raise ValueError(f"A release hook is required for {kind.value} resources")

        resource = TrackedResource(
            path=str(path), kind=kind, release_hook=release_hook
        )
        self._resources.append(resource)
        logger.debug("Tracking %s %s", kind.value, resource.path)
        return resource

    def release(self, resource: TrackedResource) -> bool:
        """Release a single resource.

        The resource is marked released before its teardown runs, so a
        resource is never released twice even if teardown fails.

        Args:
            resource: A resource returned by ``track``.

        Returns:
            True if teardown succeeded or was not needed, False if it failed.
        """
        if not resource.active:
            return True
        resource.state = ResourceState.RELEASED

        if resource.release_hook is not None:
            hook = resource.release_hook
        elif resource.kind is ResourceKind.DIRECTORY:
            hook = _remove_directory
        else:
            hook = _remove_file

        try:
            hook(resource)
        except Exception as e:
            logger.error(
                "Failed to release %s %s: %s", resource.kind.value, resource.path, e
            )
            return False

        logger.debug("Released %s %s", resource.kind.value, resource.path)
        return True

    def release_all(self) -> bool:
        """Release every active resource in reverse registration order.

        Safe to call more than once and from a signal handler while a
        previous call is running; nested calls return immediately.

        Returns:
            True if every release succeeded.
        """
        if self._releasing:
            return True
        self._releasing = True
        # Termination signals stay pending until teardown has finished.
        previous_mask = signal.pthread_sigmask(signal.SIG_BLOCK, TERMINATION_SIGNALS)
        ok = True
        try:
            for resource in reversed(self._resources):
                if resource.active:
                    ok = self.release(resource) and ok
        finally:
            self._releasing = False
            signal.pthread_sigmask(signal.SIG_SETMASK, previous_mask)

        if not ok:
            logger.warning("Teardown finished with errors; see messages above")
        return ok


@contextmanager
def terminate_on_signals(tracker: ResourceTracker) -> Iterator[None]:
    """Run a block with termination signals routed to a full teardown.

    On the first termination signal, further delivery of all termination
    signals is ignored and ``PipelineInterrupted`` is raised from the
    interrupted frame. Teardown is left to the caller's ``finally``, which
    runs once any child process the frame was waiting on has been killed
    and reaped, so nothing is still writing into the resources it removes.
    The previous handlers are restored when the block exits.

    Args:
        tracker: Tracker holding the run's resources.

    Yields:
        None.
    """
    original_handlers: list[tuple[int, Any]] = []

    def _handle_signal(signum: int, _frame: object) -> None:
        for sig in TERMINATION_SIGNALS:
            signal.signal(sig, signal.SIG_IGN)
        signame = signal.Signals(signum).name
        logger.warning(
            "Received %s, tearing down %d resources", signame, len(tracker.active)
        )
        raise PipelineInterrupted(signum, signame)

    try:
        for signum in TERMINATION_SIGNALS:
            original_handlers.append((signum, signal.getsignal(signum)))
            signal.signal(signum, _handle_signal)
        yield
    finally:
        for signum, previous in original_handlers:
            # None means the handler was not installed from Python.
            signal.signal(signum, signal.SIG_DFL if previous is None else previous)


__all__ = [
    "TERMINATION_SIGNALS",
    "ResourceTracker",
    "TrackedResource",
    "terminate_on_signals",
]
