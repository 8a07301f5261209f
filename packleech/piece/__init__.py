"""File selection, piece mapping and piece verification."""

from __future__ import annotations

from packleech.piece.file_selection import (
    AllOf,
    BatchPlan,
    GlobPredicate,
    MatchAll,
    PathListPredicate,
    RegexPredicate,
    SelectionPredicate,
    SelectionSet,
    SizePredicate,
    plan_batches,
    select_files,
)
from packleech.piece.mapper import PieceMapper, files_for_pieces, pieces_for_file
from packleech.piece.verifier import PieceVerifier

__all__ = [
    "AllOf",
    "BatchPlan",
    "GlobPredicate",
    "MatchAll",
    "PathListPredicate",
    "PieceMapper",
    "PieceVerifier",
    "RegexPredicate",
    "SelectionPredicate",
    "SelectionSet",
    "SizePredicate",
    "files_for_pieces",
    "pieces_for_file",
    "plan_batches",
    "select_files",
]
