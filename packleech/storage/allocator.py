"""Disk space gate and file preallocation.

Every selected file is created at its final length before the first byte is
fetched, so an interrupted run never leaves a truncated file whose size looks
complete. The free-space check runs before anything on disk is touched.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

import psutil

from packleech.models import AbortPolicy, PreallocationStrategy
from packleech.utils.exceptions import DiskSpaceInsufficientError, PreallocationError
from packleech.utils.formatting import format_size
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import FileEntry
    from packleech.piece.file_selection import SelectionSet

logger = get_logger(__name__)

FreeSpaceFn = Callable[[Path], int]

_ZERO_CHUNK = 1024 * 1024


def _existing_ancestor(path: Path) -> Path:
    path = path.absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def free_space(path: Path) -> int:
    """Free bytes on the volume holding ``path`` (or its nearest existing parent)."""
    return psutil.disk_usage(str(_existing_ancestor(path))).free


@dataclass
class DiskReservation:
    """A preallocated output file.

    ``created`` is True when the file did not exist at its final length
    before allocation; any previously recorded progress for it is stale.
    """

    entry: FileEntry
    path: Path
    length: int
    created: bool
    released: bool = False


class DiskAllocator:
    """Checks free space and preallocates the files of a selection."""

    def __init__(
        self,
        output_dir: str | Path,
        strategy: PreallocationStrategy = PreallocationStrategy.SPARSE,
        reserve_bytes: int = 0,
        free_space_fn: FreeSpaceFn | None = None,
    ):
        """Initialize allocator rooted at ``output_dir``."""
        self.output_dir = Path(output_dir)
        self.strategy = strategy
        self.reserve_bytes = reserve_bytes
        self.free_space_fn = free_space_fn or free_space

    def target_path(self, entry: FileEntry) -> Path:
        """Output path of a file."""
        return self.output_dir.joinpath(*entry.parts)

    def bytes_needed(self, selection: SelectionSet) -> int:
        """Bytes the selection still needs on disk, excluding the reserve."""
        needed = 0
        for entry in selection:
            path = self.target_path(entry)
            existing = path.stat().st_size if path.is_file() else 0
            needed += max(0, entry.length - existing)
        return needed

    def check_free_space(self, selection: SelectionSet) -> int:
        """Fail fast if the target volume cannot hold the selection.

        Returns:
            Free bytes reported for the target volume

        Raises:
            DiskSpaceInsufficientError: If needed bytes plus the reserve exceed
                the free space

        """
        required = self.bytes_needed(selection) + self.reserve_bytes
        available = self.free_space_fn(self.output_dir)
        if required > available:
            logger.error(
                "Not enough space in %s: need %s, have %s",
                self.output_dir,
                format_size(required),
                format_size(available),
            )
            raise DiskSpaceInsufficientError(required, available, str(self.output_dir))
        logger.debug(
            "Free space check passed: need %s, have %s",
            format_size(required),
            format_size(available),
        )
        return available

    def allocate(self, selection: SelectionSet) -> list[DiskReservation]:
        """Create every selected file at its final length."""
        reservations = []
        for entry in selection:
            path = self.target_path(entry)
            try:
                created = self._preallocate(path, entry.length)
            except OSError as e:
                msg = f"Failed to preallocate {path}: {e}"
                raise PreallocationError(msg, {"path": str(path), "length": entry.length}) from e
            reservations.append(
                DiskReservation(entry=entry, path=path, length=entry.length, created=created)
            )
        logger.info(
            "Preallocated %d files (%s) in %s using %s",
            len(reservations),
            format_size(selection.total_length),
            self.output_dir,
            self.strategy.value,
        )
        return reservations

    async def allocate_async(self, selection: SelectionSet) -> list[DiskReservation]:
        """Run :meth:`allocate` in a worker thread."""
        return await asyncio.to_thread(self.allocate, selection)

    def _preallocate(self, path: Path, length: int) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_file():
            current = path.stat().st_size
            if current == length:
                return False
            logger.warning(
                "Existing file %s has size %d instead of %d; reallocating",
                path,
                current,
                length,
            )

        with open(path, "wb") as f:
            if length == 0:
                return True
            if self.strategy == PreallocationStrategy.FULL:
                remaining = length
                zeros = b"\x00" * min(_ZERO_CHUNK, length)
                while remaining > 0:
                    n = min(remaining, len(zeros))
                    f.write(zeros[:n])
                    remaining -= n
            elif self.strategy == PreallocationStrategy.FALLOCATE and hasattr(
                os, "posix_fallocate"
            ):
                os.posix_fallocate(f.fileno(), 0, length)
            else:
                f.truncate(length)
        return True

    def release(
        self,
        reservations: Iterable[DiskReservation],
        policy: AbortPolicy = AbortPolicy.KEEP,
    ) -> None:
        """Release reservations of an abandoned run according to ``policy``."""
        count = 0
        for reservation in reservations:
            if reservation.released:
                continue
            if policy == AbortPolicy.REMOVE:
                reservation.path.unlink(missing_ok=True)
            elif policy == AbortPolicy.TRUNCATE and reservation.path.exists():
                with open(reservation.path, "r+b") as f:
                    f.truncate(0)
            reservation.released = True
            count += 1
        if policy != AbortPolicy.KEEP:
            logger.info("Released %d files with policy %s", count, policy.value)
