"""Tests for image/fetch.py module.

These tests use mocked HTTP responses for remote images and small
generated files for local ones.
"""

import bz2
import gzip
import hashlib
import lzma

import httpx
import pytest
import respx

from repro_verify.config import Settings
from repro_verify.errors import FormatError, NetworkError, UsageError
from repro_verify.image.fetch import (
    acquire,
    check_cloud_environment,
    classify_image_name,
    decompress,
    download_file,
    validate_remote_url,
)
from repro_verify.image.source import CloudImage, LocalImage, RemoteImage
from repro_verify.resources import ResourceTracker

RAW_CONTENT = b"\x00" * 512 + b"FreeBSD raw image payload" + b"\xff" * 512


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with results under tmp_path."""
    return Settings(results_dir=tmp_path / "results")


@pytest.fixture
def work_dir(tmp_path):
    """Run work directory."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def tracker() -> ResourceTracker:
    return ResourceTracker()


class TestClassifyImageName:
    """Tests for classify_image_name function."""

    @pytest.mark.parametrize("name", ["FreeBSD-14.1-RELEASE-amd64.raw", "disk.img"])
    def test_uncompressed_raw(self, name):
        """Raw images should need no decompression."""
        assert classify_image_name(name) is None

    @pytest.mark.parametrize(
        "name,compression",
        [
            ("FreeBSD-14.1-RELEASE-amd64.raw.xz", ".xz"),
            ("disk.img.gz", ".gz"),
            ("disk.raw.bz2", ".bz2"),
            ("disk.raw.zst", ".zst"),
            ("DISK.RAW.XZ", ".xz"),
        ],
    )
    def test_compressed_raw(self, name, compression):
        """Compressed raw images should report their compression."""
        assert classify_image_name(name) == compression

    @pytest.mark.parametrize(
        "name",
        [
            "FreeBSD-14.1-RELEASE-amd64.qcow2",
            "FreeBSD-14.1-RELEASE-amd64.qcow2.xz",
            "disk.vmdk",
            "disk.vhd",
            "disk.tar.gz",
            "disk",
        ],
    )
    def test_rejected_formats(self, name):
        """Container and unknown formats should raise FormatError."""
        with pytest.raises(FormatError):
            classify_image_name(name)


class TestValidateRemoteUrl:
    """Tests for validate_remote_url function."""

    def test_https_raw_xz(self):
        """An https raw.xz URL should be accepted."""
        url = "https://download.freebsd.org/releases/VM-IMAGES/14.1-RELEASE/amd64/Latest/FreeBSD-14.1-RELEASE-amd64.raw.xz"
        assert validate_remote_url(url) == ".xz"

    def test_query_string_ignored(self):
        """Query strings should not affect the suffix check."""
        assert validate_remote_url("http://example.com/disk.raw?token=abc") is None

    @pytest.mark.parametrize("url", ["ftp://example.com/disk.raw", "file:///tmp/disk.raw"])
    def test_disallowed_scheme(self, url):
        """Schemes outside the allow-list should raise UsageError."""
        with pytest.raises(UsageError):
            validate_remote_url(url)

    def test_url_without_file(self):
        """A URL without a file name should raise UsageError."""
        with pytest.raises(UsageError):
            validate_remote_url("https://example.com/")


class TestDecompress:
    """Tests for decompress function."""

    @pytest.mark.parametrize(
        "suffix,compressor",
        [(".xz", lzma.compress), (".gz", gzip.compress), (".bz2", bz2.compress)],
    )
    def test_stdlib_formats(self, tmp_path, suffix, compressor):
        """xz, gzip and bzip2 data should decompress to the original bytes."""
        source = tmp_path / f"disk.raw{suffix}"
        source.write_bytes(compressor(RAW_CONTENT))
        dest = tmp_path / "disk.raw"

        assert decompress(source, dest, suffix) == dest
        assert dest.read_bytes() == RAW_CONTENT

    def test_corrupt_xz(self, tmp_path):
        """Corrupt xz data should raise FormatError."""
        source = tmp_path / "disk.raw.xz"
        source.write_bytes(b"not xz data at all")

        with pytest.raises(FormatError):
            decompress(source, tmp_path / "disk.raw", ".xz")


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should download file successfully."""
        respx.get("https://example.com/disk.raw").mock(
            return_value=httpx.Response(200, content=RAW_CONTENT)
        )

        dest_path = tmp_path / "disk.raw"
        with httpx.Client() as client:
            result = download_file(client, "https://example.com/disk.raw", dest_path, 60)

        assert dest_path.read_bytes() == RAW_CONTENT
        assert result.checksum == hashlib.sha256(RAW_CONTENT).hexdigest()
        assert result.size_bytes == len(RAW_CONTENT)

    @respx.mock
    def test_http_error(self, tmp_path):
        """Should raise NetworkError on HTTP error."""
        respx.get("https://example.com/missing.raw").mock(
            return_value=httpx.Response(404)
        )

        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            download_file(
                client, "https://example.com/missing.raw", tmp_path / "m.raw", 60
            )

        assert exc_info.value.code == "http_error"
        assert "404" in str(exc_info.value)

    @respx.mock
    def test_timeout(self, tmp_path):
        """Should raise NetworkError on timeout."""
        respx.get("https://example.com/slow.raw").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            download_file(client, "https://example.com/slow.raw", tmp_path / "s.raw", 60)

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_connection_error(self, tmp_path):
        """Should raise NetworkError on connection failure."""
        respx.get("https://example.com/disk.raw").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            download_file(client, "https://example.com/disk.raw", tmp_path / "d.raw", 60)

        assert exc_info.value.code == "network_error"


class TestAcquireLocal:
    """Tests for acquire with local sources."""

    def test_raw_image_placed_in_work_dir(self, tmp_path, work_dir, tracker, settings):
        """A raw image should be linked or copied into the work dir and tracked."""
        source = tmp_path / "FreeBSD.raw"
        source.write_bytes(RAW_CONTENT)

        path = acquire(LocalImage(path=source), work_dir, tracker, settings)

        assert path.parent == work_dir
        assert path.read_bytes() == RAW_CONTENT
        assert [r.path for r in tracker.active] == [str(path)]

    def test_compressed_image_decompressed(self, tmp_path, work_dir, tracker, settings):
        """A compressed image should be decompressed into the work dir."""
        source = tmp_path / "FreeBSD.raw.xz"
        source.write_bytes(lzma.compress(RAW_CONTENT))

        path = acquire(LocalImage(path=source), work_dir, tracker, settings)

        assert path.read_bytes() == RAW_CONTENT

    def test_release_keeps_original(self, tmp_path, work_dir, tracker, settings):
        """Teardown should remove the working copy, not the caller's image."""
        source = tmp_path / "FreeBSD.raw"
        source.write_bytes(RAW_CONTENT)

        path = acquire(LocalImage(path=source), work_dir, tracker, settings)
        tracker.release_all()

        assert not path.exists()
        assert source.read_bytes() == RAW_CONTENT

    def test_container_format_rejected_before_io(self, tmp_path, work_dir, tracker, settings):
        """A qcow2 path should raise FormatError even if it does not exist."""
        with pytest.raises(FormatError):
            acquire(LocalImage(path=tmp_path / "missing.qcow2"), work_dir, tracker, settings)
        assert tracker.resources == []

    def test_missing_file(self, tmp_path, work_dir, tracker, settings):
        """A missing raw image should raise UsageError."""
        with pytest.raises(UsageError):
            acquire(LocalImage(path=tmp_path / "missing.raw"), work_dir, tracker, settings)


class TestAcquireRemote:
    """Tests for acquire with remote sources."""

    @respx.mock
    def test_remote_xz(self, work_dir, tracker, settings):
        """A remote raw.xz image should be downloaded and decompressed."""
        url = "https://example.com/FreeBSD-14.1-RELEASE-amd64.raw.xz"
        respx.get(url).mock(
            return_value=httpx.Response(200, content=lzma.compress(RAW_CONTENT))
        )

        with httpx.Client() as client:
            path = acquire(RemoteImage(url=url), work_dir, tracker, settings, client=client)

        assert path.read_bytes() == RAW_CONTENT
        # The compressed download is released once decompressed
        assert [r.path for r in tracker.active] == [str(path)]
        assert not (work_dir / "download.xz").exists()

    @respx.mock(assert_all_called=False)
    def test_unsupported_extension_rejected_before_network(
        self, work_dir, tracker, settings
    ):
        """A qcow2 URL should raise FormatError without any request."""
        route = respx.get("https://example.com/FreeBSD-14.1-RELEASE-amd64.qcow2.xz")

        with pytest.raises(FormatError):
            acquire(
                RemoteImage(url="https://example.com/FreeBSD-14.1-RELEASE-amd64.qcow2.xz"),
                work_dir,
                tracker,
                settings,
            )

        assert not route.called
        assert tracker.resources == []

    @respx.mock
    def test_download_failure(self, work_dir, tracker, settings):
        """A failed download should raise NetworkError."""
        url = "https://example.com/disk.raw"
        respx.get(url).mock(return_value=httpx.Response(500))

        with httpx.Client() as client, pytest.raises(NetworkError):
            acquire(RemoteImage(url=url), work_dir, tracker, settings, client=client)

    @respx.mock
    def test_empty_download(self, work_dir, tracker, settings):
        """An empty response body should fail before decompression."""
        url = "https://example.com/FreeBSD-14.1-RELEASE-amd64.raw.xz"
        respx.get(url).mock(return_value=httpx.Response(200, content=b""))

        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            acquire(RemoteImage(url=url), work_dir, tracker, settings, client=client)

        assert exc_info.value.code == "empty_download"
        assert not (work_dir / "original.raw").exists()


class TestCloudImages:
    """Tests for the cloud image boundary."""

    def test_missing_credentials(self):
        """Missing credentials should raise UsageError naming them."""
        with pytest.raises(UsageError) as exc_info:
            check_cloud_environment({})
        assert "AWS_ACCESS_KEY_ID" in str(exc_info.value)

    def test_region_from_environment(self):
        """The region should come from AWS_REGION or AWS_DEFAULT_REGION."""
        env = {
            "AWS_ACCESS_KEY_ID": "id",
            "AWS_SECRET_ACCESS_KEY": "secret",
            "AWS_DEFAULT_REGION": "eu-west-1",
        }
        assert check_cloud_environment(env) == "eu-west-1"

    def test_cloud_export_not_supported(self, work_dir, tracker, settings, monkeypatch):
        """Cloud sources should fail with UsageError even when configured."""
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "id")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "secret")
        monkeypatch.setenv("AWS_REGION", "us-east-1")

        with pytest.raises(UsageError) as exc_info:
            acquire(CloudImage(image_id="ami-123"), work_dir, tracker, settings)

        assert exc_info.value.code == "unsupported_source"
