"""Error taxonomy for repro_verify.

Every fatal condition of a verification run maps to one exception class with
a stable ``code`` attribute. The CLI turns any ``ReproError`` into a single
message on stderr and a non-zero exit status after teardown has run.
"""

from __future__ import annotations


class ReproError(Exception):
    """Base exception for all verification pipeline errors."""

    def __init__(self, message: str, code: str = "repro_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class UsageError(ReproError):
    """Raised for bad or missing caller input."""

    def __init__(self, message: str, code: str = "usage_error") -> None:
        super().__init__(message, code=code)


class FormatError(ReproError):
    """Raised when an image is not in a raw or compressed-raw format."""

    def __init__(self, source: str, suffix: str) -> None:
        super().__init__(
            f"Unsupported image format '{suffix or '(none)'}' for {source}. "
            "Only raw images (.raw, .img), optionally compressed with "
            ".xz, .gz, .bz2 or .zst, are supported.",
            code="unsupported_format",
        )
        self.source = source
        self.suffix = suffix


class NetworkError(ReproError):
    """Raised when downloading a remote image fails."""

    def __init__(self, message: str, code: str = "network_error") -> None:
        super().__init__(message, code=code)


class ResourceError(ReproError):
    """Raised when attaching, mounting, importing or detaching fails."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        code: str = "resource_error",
    ) -> None:
        super().__init__(message, code=code)
        self.command = command


class MetadataUnavailable(ReproError):
    """Raised when build identity fields cannot be recovered from an image."""

    def __init__(self, missing: list[str], detail: str | None = None) -> None:
        message = f"Could not determine {', '.join(missing)} from the image kernel"
        if detail:
            message = f"{message}: {detail}"
        message += "; supply the value(s) explicitly"
        super().__init__(message, code="metadata_unavailable")
        self.missing = missing


class BuildError(ReproError):
    """Raised when a build stage does not complete successfully."""

    def __init__(
        self,
        stage: str,
        message: str,
        exit_code: int | None = None,
        code: str = "build_failed",
    ) -> None:
        super().__init__(f"Build stage '{stage}' failed: {message}", code=code)
        self.stage = stage
        self.exit_code = exit_code


class HashingError(ReproError):
    """Raised when a file in a hashed tree cannot be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to hash {path}: {reason}", code="hashing_error")
        self.path = path


class PipelineInterrupted(ReproError):
    """Raised after teardown when a termination signal was received."""

    def __init__(self, signum: int, signame: str) -> None:
        super().__init__(f"Interrupted by {signame}", code="interrupted")
        self.signum = signum
        self.signame = signame

    @property
    def exit_code(self) -> int:
        """Conventional shell exit status for death by signal."""
        return 128 + self.signum


__all__ = [
    "BuildError",
    "FormatError",
    "HashingError",
    "MetadataUnavailable",
    "NetworkError",
    "PipelineInterrupted",
    "ReproError",
    "ResourceError",
    "UsageError",
]
