"""Tests for shared types module."""

import pytest

from repro_verify.errors import UsageError
from repro_verify.types import (
    DEFAULT_ARCH,
    PLATFORM_ARCHES,
    Arch,
    BuildIdentity,
    FilesystemKind,
    Platform,
    ResourceKind,
    ResourceState,
)


class TestEnums:
    """Test enum definitions."""

    def test_platform_values(self) -> None:
        """Platform should cover the supported machine platforms."""
        assert {p.value for p in Platform} == {
            "amd64",
            "arm",
            "arm64",
            "i386",
            "powerpc",
            "riscv",
        }

    def test_every_platform_has_arches(self) -> None:
        """Every platform should map to at least one architecture."""
        for platform in Platform:
            assert PLATFORM_ARCHES[platform]

    def test_default_arches_belong_to_platform(self) -> None:
        """Default arches should be valid for their platform."""
        for platform, arch in DEFAULT_ARCH.items():
            assert arch in PLATFORM_ARCHES[platform]

    def test_other_enum_values(self) -> None:
        """Filesystem and resource enums should have expected values."""
        assert FilesystemKind.UFS.value == "ufs"
        assert FilesystemKind.ZFS.value == "zfs"
        assert ResourceKind.DEVICE.value == "device"
        assert ResourceState.RELEASED.value == "released"


class TestBuildIdentity:
    """Tests for BuildIdentity."""

    def test_empty_identity_missing_everything(self) -> None:
        """An empty identity should report every field missing."""
        identity = BuildIdentity()
        assert identity.missing_fields() == [
            "platform",
            "arch",
            "branch",
            "commit_hash",
        ]
        assert identity.is_complete is False

    def test_merged_fills_only_unset_fields(self) -> None:
        """merged should never overwrite a field that is set."""
        known = BuildIdentity(branch="stable/14")
        found = BuildIdentity(
            platform=Platform.AMD64,
            arch=Arch.AMD64,
            branch="releng/14.1",
            commit_hash="10e31f0946d8",
        )

        merged = known.merged(found)

        assert merged.branch == "stable/14"
        assert merged.platform is Platform.AMD64
        assert merged.commit_hash == "10e31f0946d8"
        assert merged.is_complete

    def test_merged_ignores_unset_source_fields(self) -> None:
        """merged should keep None for fields the other side lacks."""
        merged = BuildIdentity().merged(BuildIdentity(branch="main"))
        assert merged.branch == "main"
        assert merged.commit_hash is None

    @pytest.mark.parametrize("branch", ["main", "stable/14", "releng/14.1", "releng/13"])
    def test_valid_branches(self, branch: str) -> None:
        """Valid branch names should pass validation."""
        assert BuildIdentity(branch=branch).validate().branch == branch

    @pytest.mark.parametrize("branch", ["master", "stable/", "releng/14.1.2", "feature/x"])
    def test_invalid_branches(self, branch: str) -> None:
        """Invalid branch names should raise UsageError."""
        with pytest.raises(UsageError):
            BuildIdentity(branch=branch).validate()

    @pytest.mark.parametrize(
        "commit", ["abc1234", "10e31f0946d8", "0123456789abcdef0123456789abcdef01234567"]
    )
    def test_valid_commits(self, commit: str) -> None:
        """7 to 40 lowercase hex characters should be accepted."""
        BuildIdentity(commit_hash=commit).validate()

    @pytest.mark.parametrize("commit", ["abc123", "ABCDEF1", "xyz1234", "0" * 41])
    def test_invalid_commits(self, commit: str) -> None:
        """Other commit strings should raise UsageError."""
        with pytest.raises(UsageError):
            BuildIdentity(commit_hash=commit).validate()

    def test_arch_must_match_platform(self) -> None:
        """An arch of another platform should raise UsageError."""
        with pytest.raises(UsageError) as exc_info:
            BuildIdentity(platform=Platform.ARM, arch=Arch.AMD64).validate()
        assert "armv7" in str(exc_info.value)

    def test_result_prefix(self) -> None:
        """result_prefix should join date, platform, arch and commit."""
        identity = BuildIdentity(
            platform=Platform.AMD64,
            arch=Arch.AMD64,
            branch="releng/14.1",
            commit_hash="10e31f0946d8",
        )
        assert identity.result_prefix("20240704") == "20240704-amd64-amd64-10e31f0946d8"

    def test_result_prefix_requires_complete_identity(self) -> None:
        """result_prefix should refuse an incomplete identity."""
        with pytest.raises(ValueError):
            BuildIdentity(branch="main").result_prefix("20240704")
