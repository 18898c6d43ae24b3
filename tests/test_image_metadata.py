"""Tests for image/metadata.py - build identity recovery from kernel strings."""

import pytest

from repro_verify.errors import MetadataUnavailable
from repro_verify.image.metadata import (
    extract,
    find_arch,
    find_descriptor,
    find_target_from_objdir,
    identify_from_strings,
    parse_branch,
    parse_commit,
    read_strings,
)
from repro_verify.types import Arch, BuildIdentity, Platform

RELEASE_BANNER = "FreeBSD 14.1-RELEASE-p1 releng/14.1-n267679-10e31f0946d8 GENERIC"
STABLE_BANNER = "FreeBSD 13.3-STABLE stable/13-n257698-a1b2c3d4e5f6 GENERIC"
CURRENT_BANNER = "FreeBSD 15.0-CURRENT main-n270000-0123456789ab GENERIC"
AMD64_OBJDIR = "/usr/obj/usr/src/amd64.amd64/sys/GENERIC"


def _kernel_bytes(*strings: str) -> bytes:
    """Binary blob with strings separated by non-printable padding."""
    blob = b"\x7fELF\x02\x01\x01\x09\x00\x00"
    for s in strings:
        blob += s.encode("ascii") + b"\x00\x01\x02"
    return blob


class TestReadStrings:
    """Tests for read_strings function."""

    def test_extracts_printable_runs(self):
        """Runs of four or more printable characters should be returned in order."""
        data = _kernel_bytes(RELEASE_BANNER, "abc", AMD64_OBJDIR)
        strings = read_strings(data)

        assert RELEASE_BANNER in strings
        assert AMD64_OBJDIR in strings
        assert "abc" not in strings
        assert strings.index(RELEASE_BANNER) < strings.index(AMD64_OBJDIR)


class TestDescriptor:
    """Tests for descriptor matching and parsing."""

    @pytest.mark.parametrize(
        "banner,branch,commit",
        [
            (RELEASE_BANNER, "releng/14.1", "10e31f0946d8"),
            (STABLE_BANNER, "stable/13", "a1b2c3d4e5f6"),
            (CURRENT_BANNER, "main", "0123456789ab"),
        ],
    )
    def test_parse(self, banner, branch, commit):
        """Branch and commit should be parsed from each banner form."""
        assert find_descriptor(["@(#)", banner]) == banner
        assert parse_branch(banner) == branch
        assert parse_commit(banner) == commit

    def test_non_generic_kernel_ignored(self):
        """Banners of custom kernel configs should not match."""
        assert find_descriptor(["FreeBSD 14.1-RELEASE releng/14.1-n1-10e31f0946d8 MYKERNEL"]) is None

    def test_commit_must_be_twelve_hex(self):
        """Longer hex runs should not be taken as the abbreviated commit."""
        assert parse_commit("FreeBSD 14.1-RELEASE releng/14.1-n1-10e31f0946d8ff GENERIC") is None


class TestTarget:
    """Tests for platform and arch discovery."""

    @pytest.mark.parametrize(
        "objdir,platform,arch",
        [
            (AMD64_OBJDIR, Platform.AMD64, Arch.AMD64),
            ("/usr/obj/usr/src/arm64.aarch64/sys/GENERIC", Platform.ARM64, Arch.AARCH64),
            ("/usr/obj/usr/src/powerpc.powerpc64le/sys/GENERIC64LE", Platform.POWERPC, Arch.POWERPC64LE),
            ("/usr/obj/usr/src/riscv.riscv64/sys/GENERIC", Platform.RISCV, Arch.RISCV64),
        ],
    )
    def test_objdir_marker(self, objdir, platform, arch):
        """The object directory should give both platform and arch."""
        assert find_target_from_objdir(["x", objdir]) == (platform, arch)

    def test_objdir_with_mismatched_arch_ignored(self):
        """A marker pairing a platform with a foreign arch should be skipped."""
        assert find_target_from_objdir(["/usr/obj/amd64.aarch64/sys/GENERIC"]) is None

    def test_default_arch(self):
        """Single-arch platforms should resolve without scanning."""
        assert find_arch([], Platform.AMD64) is Arch.AMD64
        assert find_arch([], Platform.ARM64) is Arch.AARCH64

    def test_most_specific_variant_wins(self):
        """powerpc64le should win over powerpc when both appear."""
        strings = ["powerpc", "powerpc64le"]
        assert find_arch(strings, Platform.POWERPC) is Arch.POWERPC64LE

    def test_no_variant(self):
        """A multi-arch platform with no variant token should give None."""
        assert find_arch(["unrelated"], Platform.ARM) is None


class TestIdentifyFromStrings:
    """Tests for identify_from_strings function."""

    def test_full_identity(self):
        """Banner and objdir should produce a complete identity."""
        identity = identify_from_strings([RELEASE_BANNER, AMD64_OBJDIR], BuildIdentity())

        assert identity == BuildIdentity(
            platform=Platform.AMD64,
            arch=Arch.AMD64,
            branch="releng/14.1",
            commit_hash="10e31f0946d8",
        )

    def test_platform_string_fallback(self):
        """Without an objdir marker a standalone platform name should be used."""
        identity = identify_from_strings(
            [RELEASE_BANNER, "arm", "armv7"], BuildIdentity()
        )
        assert identity.platform is Platform.ARM
        assert identity.arch is Arch.ARMV7

    def test_supplied_fields_not_overwritten(self):
        """Caller-supplied fields should win over discovered values."""
        known = BuildIdentity(branch="stable/14", commit_hash="abcdef1")
        identity = identify_from_strings([RELEASE_BANNER, AMD64_OBJDIR], known)

        assert identity.branch == "stable/14"
        assert identity.commit_hash == "abcdef1"
        assert identity.platform is Platform.AMD64

    def test_missing_descriptor(self):
        """No descriptor should raise MetadataUnavailable naming the fields."""
        with pytest.raises(MetadataUnavailable) as exc_info:
            identify_from_strings([AMD64_OBJDIR], BuildIdentity())

        assert exc_info.value.missing == ["branch", "commit_hash"]
        assert "descriptor" in str(exc_info.value)

    def test_missing_descriptor_with_supplied_fields(self):
        """Supplied branch and commit should make the descriptor unnecessary."""
        known = BuildIdentity(branch="main", commit_hash="0123456789ab")
        identity = identify_from_strings([AMD64_OBJDIR], known)
        assert identity.is_complete

    def test_missing_platform(self):
        """No platform evidence should raise MetadataUnavailable."""
        with pytest.raises(MetadataUnavailable) as exc_info:
            identify_from_strings([RELEASE_BANNER], BuildIdentity())

        assert "platform" in exc_info.value.missing


class TestExtract:
    """Tests for extract function."""

    def test_extract_from_kernel_file(self, tmp_path):
        """extract should read the kernel binary and identify it."""
        kernel = tmp_path / "kernel"
        kernel.write_bytes(_kernel_bytes("@(#)" + RELEASE_BANNER, AMD64_OBJDIR))

        identity = extract(kernel)

        assert identity.branch == "releng/14.1"
        assert identity.commit_hash == "10e31f0946d8"
        assert identity.platform is Platform.AMD64

    def test_complete_identity_skips_kernel(self, tmp_path):
        """A fully supplied identity should be returned without reading."""
        known = BuildIdentity(
            platform=Platform.I386,
            arch=Arch.I386,
            branch="stable/14",
            commit_hash="abcdef1",
        )
        assert extract(tmp_path / "missing-kernel", known) == known

    def test_unreadable_kernel(self, tmp_path):
        """A missing kernel should raise MetadataUnavailable."""
        with pytest.raises(MetadataUnavailable) as exc_info:
            extract(tmp_path / "missing-kernel")

        assert exc_info.value.missing == ["platform", "arch", "branch", "commit_hash"]
