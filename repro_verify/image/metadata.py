"""Build identity recovery from a FreeBSD kernel binary.

The kernel embeds its version banner, e.g.::

    FreeBSD 14.1-RELEASE-p1 releng/14.1-n267679-10e31f0946d8 GENERIC

and the object directory it was built in, e.g.
``/usr/obj/usr/src/amd64.amd64/sys/GENERIC``. Branch and commit come from
the banner; platform and architecture from the object path, or failing that
from standalone machine-name strings.

Lookups return ``None`` when a value is absent. ``extract`` turns any field
that is still missing into ``MetadataUnavailable``; nothing is guessed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path

from repro_verify.errors import MetadataUnavailable
from repro_verify.types import (
    DEFAULT_ARCH,
    PLATFORM_ARCHES,
    Arch,
    BuildIdentity,
    Platform,
)

logger = logging.getLogger(__name__)

# strings(1) default: runs of at least four printable ASCII characters
MIN_STRING_LENGTH = 4
_PRINTABLE_RUN = re.compile(rb"[\x20-\x7e\t]{%d,}" % MIN_STRING_LENGTH)

DESCRIPTOR_PATTERN = re.compile(
    r"(RELEASE|STABLE|CURRENT|MAIN).*\b(releng|stable|main)\b.*\bGENERIC\b"
)
BRANCH_TOKEN_PATTERN = re.compile(r"\b(main|stable/\d+|releng/\d+(?:\.\d+)?)")
COMMIT_TOKEN_PATTERN = re.compile(r"(?<![0-9a-f])[0-9a-f]{12}(?![0-9a-f])")
OBJDIR_PATTERN = re.compile(
    r"/(%s)\.(\w+)/sys/" % "|".join(re.escape(p.value) for p in Platform)
)

_PLATFORMS = {p.value: p for p in Platform}
_ARCHES = {a.value: a for a in Arch}


def read_strings(data: bytes) -> list[str]:
    """Printable strings embedded in binary data, in file order."""
    return [m.group().decode("ascii") for m in _PRINTABLE_RUN.finditer(data)]


def find_descriptor(strings: Iterable[str]) -> str | None:
    """First release descriptor line, or None."""
    for line in strings:
        if DESCRIPTOR_PATTERN.search(line):
            return line
    return None


def parse_branch(descriptor: str) -> str | None:
    """Branch token of a descriptor line, e.g. 'releng/14.1'."""
    match = BRANCH_TOKEN_PATTERN.search(descriptor)
    return match.group(1) if match else None


def parse_commit(descriptor: str) -> str | None:
    """Twelve-character abbreviated commit hash of a descriptor line."""
    match = COMMIT_TOKEN_PATTERN.search(descriptor)
    return match.group() if match else None


def find_target_from_objdir(
    strings: Iterable[str],
) -> tuple[Platform, Arch] | None:
    """Platform and arch from a ``<platform>.<arch>/sys/`` object path."""
    for line in strings:
        for match in OBJDIR_PATTERN.finditer(line):
            platform = _PLATFORMS[match.group(1)]
            arch = _ARCHES.get(match.group(2))
            if arch is not None and arch in PLATFORM_ARCHES[platform]:
                return platform, arch
    return None


def find_platform(strings: Iterable[str]) -> Platform | None:
    """First string that is exactly a platform name."""
    for line in strings:
        platform = _PLATFORMS.get(line.strip())
        if platform is not None:
            return platform
    return None


def find_arch(strings: Iterable[str], platform: Platform) -> Arch | None:
    """Architecture of ``platform``, scanning for its variant tokens.

    Variants are tried most specific first, so 'powerpc64le' wins over
    'powerpc' when both are present.
    """
    if platform in DEFAULT_ARCH:
        return DEFAULT_ARCH[platform]

    present = {line.strip() for line in strings}
    for arch in PLATFORM_ARCHES[platform]:
        if arch.value in present:
            return arch
    return None


def identify_from_strings(strings: list[str], known: BuildIdentity) -> BuildIdentity:
    """Fill the unset fields of ``known`` from kernel strings.

    Args:
        strings: Strings of the kernel binary.
        known: Caller-supplied fields; these are never overwritten.

    Returns:
        Complete identity.

    Raises:
        MetadataUnavailable: If a required field is neither supplied nor found.
    """
    found = BuildIdentity()
    details: list[str] = []

    if known.branch is None or known.commit_hash is None:
        descriptor = find_descriptor(strings)
        if descriptor is None:
            details.append("no release descriptor line")
        else:
            logger.info("Kernel descriptor: %s", descriptor.strip())
            found = BuildIdentity(
                branch=parse_branch(descriptor),
                commit_hash=parse_commit(descriptor),
            )

    if known.platform is None or known.arch is None:
        target = find_target_from_objdir(strings)
        platform = known.platform
        arch: Arch | None = None
        if target is not None and (platform is None or target[0] is platform):
            platform, arch = target
        else:
            platform = platform or find_platform(strings)
            if platform is not None:
                arch = find_arch(strings, platform)
        if platform is None:
            details.append("no platform string")
        found = BuildIdentity(
            platform=platform,
            arch=arch,
            branch=found.branch,
            commit_hash=found.commit_hash,
        )

    identity = known.merged(found)
    missing = identity.missing_fields()
    if missing:
        raise MetadataUnavailable(missing, "; ".join(details) or None)

    logger.info(
        "Build identity: %s/%s %s@%s",
        identity.platform.value if identity.platform else "?",
        identity.arch.value if identity.arch else "?",
        identity.branch,
        identity.commit_hash,
    )
    return identity


def extract(kernel_path: Path, known: BuildIdentity | None = None) -> BuildIdentity:
    """Recover the build identity of an image from its kernel.

    Args:
        kernel_path: Kernel binary inside the mounted image.
        known: Fields supplied by the caller.

    Returns:
        Complete identity; supplied fields are kept as they are.

    Raises:
        MetadataUnavailable: If the kernel is unreadable or lacks a field
            that was not supplied.
    """
    known = known or BuildIdentity()
    if known.is_complete:
        logger.debug("Build identity fully supplied; not reading %s", kernel_path)
        return known

    try:
        data = kernel_path.read_bytes()
    except OSError as e:
        raise MetadataUnavailable(
            known.missing_fields(), f"cannot read kernel {kernel_path}: {e}"
        ) from e

    return identify_from_strings(read_strings(data), known)


__all__ = [
    "BRANCH_TOKEN_PATTERN",
    "COMMIT_TOKEN_PATTERN",
    "DESCRIPTOR_PATTERN",
    "extract",
    "find_arch",
    "find_descriptor",
    "find_platform",
    "find_target_from_objdir",
    "identify_from_strings",
    "parse_branch",
    "parse_commit",
    "read_strings",
]
