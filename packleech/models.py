"""Pydantic models for packleech.

Provides validated data models for pack metadata, piece mapping, download
task state, run results, resume state and configuration.
"""

from __future__ import annotations

import math
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from packleech.utils.formatting import parse_size

HASH_LENGTH = 20


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class PreallocationStrategy(str, Enum):
    """File preallocation strategies."""

    SPARSE = "sparse"
    FULL = "full"
    FALLOCATE = "fallocate"


class AbortPolicy(str, Enum):
    """What to do with preallocated files when a run is abandoned."""

    KEEP = "keep"
    TRUNCATE = "truncate"
    REMOVE = "remove"


class TaskState(str, Enum):
    """Piece download task states."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    VERIFIED = "verified"
    FAILED = "failed"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    """Overall outcome of a leech run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


# Legal task transitions; VERIFIED and ABORTED are terminal.
TASK_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.IN_FLIGHT}),
    TaskState.IN_FLIGHT: frozenset({TaskState.VERIFIED, TaskState.FAILED}),
    TaskState.FAILED: frozenset({TaskState.PENDING, TaskState.ABORTED}),
    TaskState.VERIFIED: frozenset(),
    TaskState.ABORTED: frozenset(),
}


class FileEntry(BaseModel):
    """One file of the pack, located in the concatenated pack byte-space.

    ``path`` is relative and uses ``/`` separators; for multi-file packs it
    starts with the pack directory name.
    """

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Position in the pack file list")
    path: str = Field(..., min_length=1, description="Relative file path")
    offset: int = Field(..., ge=0, description="Offset in the pack byte-space")
    length: int = Field(..., ge=0, description="File length in bytes")
    attributes: str | None = Field(None, description="BEP 47 attribute string")

    @property
    def end(self) -> int:
        """Exclusive end offset in the pack byte-space."""
        return self.offset + self.length

    @property
    def parts(self) -> list[str]:
        """Path components."""
        return self.path.split("/")

    @property
    def name(self) -> str:
        """Final path component."""
        return self.parts[-1]

    @property
    def is_padding(self) -> bool:
        """Check if file is a padding file (BEP 47 attr='p')."""
        return self.attributes is not None and "p" in self.attributes


class PackMetadata(BaseModel):
    """Parsed pack metadata."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Pack name")
    piece_length: int = Field(..., gt=0, description="Piece length in bytes")
    pieces: list[bytes] = Field(..., description="Piece SHA-1 hashes")
    files: list[FileEntry] = Field(..., min_length=1, description="File list")
    info_hash: bytes = Field(
        ...,
        min_length=HASH_LENGTH,
        max_length=HASH_LENGTH,
        description="SHA-1 of the encoded info dictionary",
    )
    single_file: bool = Field(default=False, description="Single-file layout")
    announce: str | None = Field(None, description="Announce URL")
    webseeds: list[str] = Field(default_factory=list, description="BEP 19 url-list")
    comment: str | None = Field(None, description="Pack comment")
    created_by: str | None = Field(None, description="Created by")
    is_private: bool = Field(default=False, description="Private flag")

    @field_validator("pieces")
    @classmethod
    def _validate_piece_hashes(cls, v: list[bytes]) -> list[bytes]:
        for digest in v:
            if len(digest) != HASH_LENGTH:
                msg = f"piece hash must be {HASH_LENGTH} bytes, got {len(digest)}"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def _validate_layout(self) -> PackMetadata:
        offset = 0
        for position, entry in enumerate(self.files):
            if entry.index != position:
                msg = f"file {entry.path} has index {entry.index}, expected {position}"
                raise ValueError(msg)
            if entry.offset != offset:
                msg = f"file {entry.path} starts at {entry.offset}, expected {offset}"
                raise ValueError(msg)
            offset += entry.length
        expected = math.ceil(offset / self.piece_length)
        if expected != len(self.pieces):
            msg = (
                f"pack of {offset} bytes with piece length {self.piece_length} "
                f"needs {expected} piece hashes, got {len(self.pieces)}"
            )
            raise ValueError(msg)
        return self

    @property
    def total_length(self) -> int:
        """Total pack length in bytes."""
        last = self.files[-1]
        return last.offset + last.length

    @property
    def num_pieces(self) -> int:
        """Number of pieces."""
        return len(self.pieces)

    def piece_size(self, index: int) -> int:
        """Exact byte length of a piece; only the final one may be short."""
        if not 0 <= index < self.num_pieces:
            msg = f"piece index {index} out of range"
            raise IndexError(msg)
        if index < self.num_pieces - 1:
            return self.piece_length
        remainder = self.total_length % self.piece_length
        return remainder or self.piece_length

    def piece_offset(self, index: int) -> int:
        """Offset of a piece in the pack byte-space."""
        return index * self.piece_length


class PieceSpan(BaseModel):
    """The part of one file that a piece covers."""

    model_config = ConfigDict(frozen=True)

    file: FileEntry
    file_offset: int = Field(..., ge=0, description="Offset inside the file")
    piece_offset: int = Field(..., ge=0, description="Offset inside the piece")
    length: int = Field(..., gt=0, description="Span length in bytes")
    selected: bool = Field(..., description="Whether the file is being written")


class PieceRange(BaseModel):
    """A required piece and every file region it overlaps."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    offset: int = Field(..., ge=0, description="Offset in the pack byte-space")
    length: int = Field(..., gt=0, description="Exact piece length")
    hash: bytes = Field(..., min_length=HASH_LENGTH, max_length=HASH_LENGTH)
    spans: list[PieceSpan] = Field(default_factory=list)

    @property
    def selected_spans(self) -> list[PieceSpan]:
        """Spans that land in selected files."""
        return [span for span in self.spans if span.selected]

    @property
    def selected_files(self) -> frozenset[int]:
        """Indices of the selected files the piece writes into."""
        return frozenset(span.file.index for span in self.spans if span.selected)


class DownloadTask(BaseModel):
    """Per-piece download state owned by the orchestrator."""

    index: int = Field(..., ge=0)
    offset: int = Field(..., ge=0)
    length: int = Field(..., gt=0)
    state: TaskState = Field(default=TaskState.PENDING)
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = Field(default=None)

    def transition(self, new_state: TaskState) -> None:
        """Move to ``new_state``, rejecting transitions the state machine forbids."""
        if new_state not in TASK_TRANSITIONS[self.state]:
            msg = f"piece {self.index}: illegal transition {self.state.value} -> {new_state.value}"
            raise ValueError(msg)
        self.state = new_state


class RunResult(BaseModel):
    """Outcome of a leech run."""

    status: RunStatus
    verified: list[int] = Field(default_factory=list, description="Verified pieces")
    aborted: list[int] = Field(default_factory=list, description="Aborted pieces")
    pending: list[int] = Field(
        default_factory=list,
        description="Pieces never finished because the run was interrupted",
    )
    affected_files: list[str] = Field(
        default_factory=list,
        description="Selected files touched by aborted or pending pieces",
    )
    completed_files: list[str] = Field(
        default_factory=list,
        description="Selected files whose every piece is verified",
    )
    bytes_downloaded: int = Field(default=0, ge=0)
    elapsed: float = Field(default=0.0, ge=0.0)

    @property
    def ok(self) -> bool:
        """Whether every required piece was verified."""
        return self.status == RunStatus.SUCCESS


class ResumeState(BaseModel):
    """Persisted record of verified pieces for one pack.

    ``verified`` maps a piece index to the indices of the files its bytes
    were written into; a piece is only complete for those files.
    """

    version: int = Field(default=2)
    info_hash: str = Field(..., min_length=40, max_length=40)
    name: str = Field(...)
    num_pieces: int = Field(..., ge=0)
    piece_length: int = Field(..., gt=0)
    verified: dict[int, list[int]] = Field(default_factory=dict)
    updated_at: float = Field(default_factory=time.time)

    @field_validator("verified")
    @classmethod
    def _sorted_unique(cls, v: dict[int, list[int]]) -> dict[int, list[int]]:
        return {index: sorted(set(files)) for index, files in sorted(v.items())}


# Configuration models


class NetworkConfig(BaseModel):
    """HTTP fetch configuration."""

    concurrency: int = Field(default=4, ge=1, le=64, description="In-flight pieces")
    request_timeout: float = Field(
        default=30.0, gt=0, le=600.0, description="Per attempt timeout in seconds"
    )
    connect_timeout: float = Field(
        default=10.0, gt=0, le=120.0, description="Connect timeout in seconds"
    )
    max_attempts: int = Field(
        default=5, ge=1, le=50, description="HTTP attempts per range request"
    )
    base_delay: float = Field(
        default=1.0, ge=0.0, le=60.0, description="First backoff delay in seconds"
    )
    max_delay: float = Field(
        default=60.0, ge=0.0, le=3600.0, description="Backoff delay ceiling"
    )
    jitter: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Jitter as a fraction of the delay"
    )
    max_piece_attempts: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Fetch+verify attempts per piece before it is aborted",
    )
    user_agent: str = Field(default="packleech/0.1", description="User-Agent header")
    webseeds: list[str] = Field(
        default_factory=list,
        description="Extra webseed URLs tried after the pack's own url-list",
    )


class DiskConfig(BaseModel):
    """Disk configuration."""

    preallocate: PreallocationStrategy = Field(
        default=PreallocationStrategy.SPARSE,
        description="Preallocation strategy",
    )
    reserve_mib: int = Field(
        default=0, ge=0, description="Free space to leave untouched, in MiB"
    )
    memory_budget_mib: int = Field(
        default=0,
        ge=0,
        description="Upper bound for in-flight piece buffers in MiB (0 = no bound)",
    )
    keep_resume_file: bool = Field(
        default=False,
        description="Keep the resume file after a fully successful run",
    )
    abort_policy: AbortPolicy = Field(
        default=AbortPolicy.KEEP,
        description="What happens to preallocated files of a failed run",
    )


class SelectionConfig(BaseModel):
    """Batch sizing for small disks."""

    max_size: str = Field(default="5 GiB", description="Maximum batch size")
    max_size_percentage: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Batch size as percentage of free space (0 = use max_size)",
    )
    include_oversized: bool = Field(
        default=False,
        description="Leech files larger than the batch size on their own",
    )

    @field_validator("max_size")
    @classmethod
    def _valid_size(cls, v: str) -> str:
        parse_size(v)
        return v

    @property
    def max_size_bytes(self) -> int:
        """Absolute batch size in bytes."""
        return parse_size(self.max_size)


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=True, description="Write JSON lines to the log file"
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    disk: DiskConfig = Field(default_factory=DiskConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def _validate_delays(self) -> Config:
        if self.network.base_delay > self.network.max_delay:
            msg = "network.base_delay must not exceed network.max_delay"
            raise ValueError(msg)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Plain dictionary suitable for TOML export."""
        return self.model_dump(mode="json")
