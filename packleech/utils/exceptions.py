"""Exception hierarchy for packleech.

Every error raised by the leecher derives from :class:`PackLeechError`, which
carries an optional ``details`` mapping for structured logging.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import RunResult


class PackLeechError(Exception):
    """Base exception for all packleech errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize packleech error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(PackLeechError):
    """Data validation errors."""


class MetadataParseError(ValidationError):
    """Pack metadata is malformed, truncated or inconsistent."""


class BencodeDecodeError(MetadataParseError):
    """Bencode decoding errors."""


class BencodeEncodeError(ValidationError):
    """Bencode encoding errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class SelectionEmptyError(PackLeechError):
    """The selection predicate matched no file in the pack."""


class DiskError(PackLeechError):
    """Disk I/O related errors."""


class DiskSpaceInsufficientError(DiskError):
    """Not enough free space on the target volume for the selection."""

    def __init__(self, required: int, available: int, path: str):
        """Initialize with the byte counts that failed the check."""
        super().__init__(
            f"Insufficient disk space at {path}: need {required} bytes, "
            f"{available} available",
            {"required": required, "available": available, "path": path},
        )
        self.required = required
        self.available = available
        self.path = path


class PreallocationError(DiskError):
    """File preallocation errors."""


class ResumeStateError(DiskError):
    """Resume state file is corrupted or belongs to another pack."""


class NetworkError(PackLeechError):
    """HTTP range fetch failure.

    ``transient`` marks failures worth another attempt (connection errors,
    timeouts, 5xx, rate limiting). A permanent error is either a client error
    or a transient one that exhausted its retry budget; ``retryable`` tells the
    orchestrator whether a fresh piece-level attempt can still help.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        status: int | None = None,
        url: str | None = None,
        attempts: int = 1,
        retryable: bool = True,
        retry_after: float | None = None,
    ):
        """Initialize network error."""
        super().__init__(
            message,
            {"status": status, "url": url, "attempts": attempts}
            if status is not None or url is not None
            else None,
        )
        self.transient = transient
        self.status = status
        self.url = url
        self.attempts = attempts
        self.retryable = retryable
        self.retry_after = retry_after

    @property
    def permanent(self) -> bool:
        """Whether the failure is final for this fetch."""
        return not self.transient


class HashMismatchError(PackLeechError):
    """Assembled piece bytes do not match the declared piece hash."""

    def __init__(self, index: int, expected: bytes, actual: bytes):
        """Initialize with the piece index and both digests."""
        super().__init__(
            f"Hash mismatch for piece {index}",
            {"expected": expected.hex(), "actual": actual.hex()},
        )
        self.index = index
        self.expected = expected
        self.actual = actual


class AbortedByUser(PackLeechError):
    """The run was stopped before completion; partial state was persisted."""

    def __init__(self, result: RunResult | None = None):
        """Initialize with the partial run result."""
        super().__init__("Run aborted by user")
        self.result = result
