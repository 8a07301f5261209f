"""Piece-to-file mapping for a selection.

A piece is required when it overlaps at least one selected file. Every
required piece is described by a :class:`PieceRange` whose spans cover the
whole piece, including regions of unselected files: those bytes must still be
fetched so the piece hash can be checked, and are dropped after verification.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from packleech.models import FileEntry, PackMetadata, PieceRange, PieceSpan
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.piece.file_selection import SelectionSet

logger = get_logger(__name__)



def pieces_for_file(metadata: PackMetadata, entry: FileEntry) -> range:
    """Piece indices a file occupies; empty for zero-length files."""
    if entry.length == 0:
        return range(0)
    first = entry.offset // metadata.piece_length
    last = (entry.offset + entry.length - 1) // metadata.piece_length
    return range(first, last + 1)


class PieceMapper:
    """Maps selected files onto the pieces that must be fetched."""

    def map(self, metadata: PackMetadata, selection: SelectionSet) -> dict[int, PieceRange]:
        """Compute the required pieces, sorted ascending by index."""
        required: set[int] = set()
        for entry in selection:
            required.update(pieces_for_file(metadata, entry))

        selected = selection.indices
        ranges = {
            index: self._piece_range(metadata, index, selected)
            for index in sorted(required)
        }
        logger.debug(
            "Selection of %d files needs %d of %d pieces",
            len(selection),
            len(ranges),
            metadata.num_pieces,
        )
        return ranges

    def _piece_range(
        self,
        metadata: PackMetadata,
        index: int,
        selected: frozenset[int],
    ) -> PieceRange:
        piece_start = metadata.piece_offset(index)
        length = metadata.piece_size(index)
        piece_end = piece_start + length

        spans: list[PieceSpan] = []
        for entry in self._overlapping(metadata.files, piece_start, piece_end):
            overlap_start = max(piece_start, entry.offset)
            overlap_end = min(piece_end, entry.end)
            spans.append(
                PieceSpan(
                    file=entry,
                    file_offset=overlap_start - entry.offset,
                    piece_offset=overlap_start - piece_start,
                    length=overlap_end - overlap_start,
                    selected=entry.index in selected and not entry.is_padding,
                )
            )
        return PieceRange(
            index=index,
            offset=piece_start,
            length=length,
            hash=metadata.pieces[index],
            spans=spans,
        )

    @staticmethod
    def _overlapping(
        files: list[FileEntry], start: int, end: int
    ) -> Iterable[FileEntry]:
        # Files are sorted by offset; binary search for the first candidate.
        lo, hi = 0, len(files)
        while lo < hi:
            mid = (lo + hi) // 2
            if files[mid].end <= start:
                lo = mid + 1
            else:
                hi = mid
        for entry in files[lo:]:
            if entry.offset >= end:
                break
            if entry.length and entry.end > start:
                yield entry


def files_for_pieces(
    ranges: dict[int, PieceRange], indices: Iterable[int]
) -> list[FileEntry]:
    """Selected files touched by the given pieces, in pack order."""
    touched: dict[int, FileEntry] = {}
    for index in indices:
        piece = ranges.get(index)
        if piece is None:
            continue
        for span in piece.selected_spans:
            touched[span.file.index] = span.file
    return [touched[i] for i in sorted(touched)]


def map_pieces(metadata: PackMetadata, selection: SelectionSet) -> dict[int, PieceRange]:
    """Shortcut for ``PieceMapper().map``."""
    return PieceMapper().map(metadata, selection)
