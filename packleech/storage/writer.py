"""Writes verified pieces into preallocated files."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from packleech.utils.exceptions import DiskError
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import PieceRange
    from packleech.storage.allocator import DiskReservation

logger = get_logger(__name__)


class PieceWriter:
    """Copies the selected spans of a verified piece to their file regions.

    Pieces never overlap, so concurrent writes touch disjoint byte ranges and
    need no locking.
    """

    def __init__(self, reservations: Iterable[DiskReservation], sync: bool = True):
        """Initialize writer.

        Args:
            reservations: Preallocated files, one per selected file
            sync: fsync every file after writing so the data is durable
                before the piece is recorded as verified

        """
        self.paths: dict[int, Path] = {r.entry.index: r.path for r in reservations}
        self.sync = sync

    async def write_piece(self, piece: PieceRange, data: bytes) -> int:
        """Write ``data`` (the full piece) and return the bytes kept on disk."""
        return await asyncio.to_thread(self._write_sync, piece, data)

    def _write_sync(self, piece: PieceRange, data: bytes) -> int:
        written = 0
        view = memoryview(data)
        for span in piece.selected_spans:
            path = self.paths.get(span.file.index)
            if path is None:
                msg = f"No preallocated file for {span.file.path}"
                raise DiskError(msg, {"piece": piece.index})
            try:
                with open(path, "r+b") as f:
                    f.seek(span.file_offset)
                    f.write(view[span.piece_offset : span.piece_offset + span.length])
                    if self.sync:
                        f.flush()
                        os.fsync(f.fileno())
            except OSError as e:
                msg = f"Failed to write piece {piece.index} to {path}: {e}"
                raise DiskError(msg, {"piece": piece.index, "path": str(path)}) from e
            written += span.length
        logger.debug("Wrote %d bytes of piece %d", written, piece.index)
        return written
