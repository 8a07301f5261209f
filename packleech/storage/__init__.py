"""Disk allocation, piece writing and resume state."""

from __future__ import annotations

from packleech.storage.allocator import DiskAllocator, DiskReservation, free_space
from packleech.storage.resume import ResumeStore, resume_path
from packleech.storage.writer import PieceWriter

__all__ = [
    "DiskAllocator",
    "DiskReservation",
    "PieceWriter",
    "ResumeStore",
    "free_space",
    "resume_path",
]
