"""File selection for partial pack leeching.

Selection predicates are small capability objects with a single
``matches(entry)`` method; they compose with :class:`AllOf`. The planner
splits a selection into batches that fit a disk budget so huge packs can be
leeched on a small machine one batch at a time.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator, Protocol, runtime_checkable

from packleech.utils.exceptions import SelectionEmptyError
from packleech.utils.formatting import format_size
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import FileEntry, PackMetadata

logger = get_logger(__name__)


@runtime_checkable
class SelectionPredicate(Protocol):
    """Decides whether a file belongs to the selection."""

    def matches(self, entry: FileEntry) -> bool:
        """Return True if ``entry`` should be leeched."""
        ...


@dataclass(frozen=True)
class MatchAll:
    """Selects every file."""

    def matches(self, entry: FileEntry) -> bool:
        """Return True for every file."""
        return True


@dataclass(frozen=True)
class GlobPredicate:
    """Shell-style patterns matched against the relative path or file name."""

    patterns: tuple[str, ...]
    case_sensitive: bool = False

    def matches(self, entry: FileEntry) -> bool:
        """Return True if any pattern matches the path or the name."""
        path, name = entry.path, entry.name
        if not self.case_sensitive:
            path, name = path.lower(), name.lower()
        for pattern in self.patterns:
            pat = pattern if self.case_sensitive else pattern.lower()
            if fnmatch.fnmatchcase(path, pat) or fnmatch.fnmatchcase(name, pat):
                return True
        return False


@dataclass(frozen=True)
class RegexPredicate:
    """Regular expression searched in the relative path."""

    pattern: str
    flags: int = re.IGNORECASE
    _compiled: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Compile the expression once."""
        object.__setattr__(self, "_compiled", re.compile(self.pattern, self.flags))

    def matches(self, entry: FileEntry) -> bool:
        """Return True if the expression is found in the path."""
        return self._compiled.search(entry.path) is not None


@dataclass(frozen=True)
class SizePredicate:
    """Inclusive size bounds in bytes."""

    min_size: int | None = None
    max_size: int | None = None

    def matches(self, entry: FileEntry) -> bool:
        """Return True if the file length lies within the bounds."""
        if self.min_size is not None and entry.length < self.min_size:
            return False
        return not (self.max_size is not None and entry.length > self.max_size)


@dataclass(frozen=True)
class PathListPredicate:
    """Explicit list of relative paths.

    Paths may be given with or without the pack directory prefix.
    """

    paths: frozenset[str]

    @classmethod
    def of(cls, paths: Iterable[str]) -> PathListPredicate:
        """Build from any iterable of paths, normalising separators."""
        return cls(frozenset(p.replace("\\", "/").strip("/") for p in paths))

    def matches(self, entry: FileEntry) -> bool:
        """Return True if the path (or the path below the pack directory) is listed."""
        if entry.path in self.paths:
            return True
        _, _, inner = entry.path.partition("/")
        return bool(inner) and inner in self.paths


@dataclass(frozen=True)
class AllOf:
    """Conjunction of predicates."""

    predicates: tuple[SelectionPredicate, ...]

    def matches(self, entry: FileEntry) -> bool:
        """Return True if every predicate matches."""
        return all(p.matches(entry) for p in self.predicates)


@dataclass(frozen=True)
class SelectionSet:
    """Non-empty, order-preserving subset of the pack's files."""

    files: tuple[FileEntry, ...]

    def __post_init__(self) -> None:
        """Reject empty selections."""
        if not self.files:
            msg = "Selection is empty"
            raise SelectionEmptyError(msg)

    def __iter__(self) -> Iterator[FileEntry]:
        """Iterate selected files in pack order."""
        return iter(self.files)

    def __len__(self) -> int:
        """Number of selected files."""
        return len(self.files)

    @property
    def indices(self) -> frozenset[int]:
        """Pack indices of the selected files."""
        return frozenset(f.index for f in self.files)

    @property
    def total_length(self) -> int:
        """Sum of selected file lengths."""
        return sum(f.length for f in self.files)

    @property
    def paths(self) -> list[str]:
        """Relative paths of the selected files."""
        return [f.path for f in self.files]


def select_files(metadata: PackMetadata, predicate: SelectionPredicate) -> SelectionSet:
    """Filter the pack's files with ``predicate``.

    Raises:
        SelectionEmptyError: If no file matches

    """
    chosen = tuple(
        entry
        for entry in metadata.files
        if not entry.is_padding and predicate.matches(entry)
    )
    if not chosen:
        msg = f"No file in pack {metadata.name} matches the selection"
        raise SelectionEmptyError(msg, {"files_in_pack": len(metadata.files)})
    selection = SelectionSet(chosen)
    logger.info(
        "Selected %d of %d files (%s)",
        len(selection),
        len(metadata.files),
        format_size(selection.total_length),
    )
    return selection


@dataclass
class BatchPlan:
    """Consecutive batches of a selection, each within the size budget."""

    batches: list[SelectionSet] = field(default_factory=list)
    skipped: list[FileEntry] = field(default_factory=list)
    max_batch_bytes: int = 0

    def __len__(self) -> int:
        """Number of batches."""
        return len(self.batches)


def plan_batches(
    selection: SelectionSet,
    max_batch_bytes: int,
    include_oversized: bool = False,
) -> BatchPlan:
    """Split ``selection`` in pack order into batches of at most ``max_batch_bytes``.

    Files larger than the budget are skipped with a warning, or leeched as a
    batch of their own when ``include_oversized`` is set.
    """
    if max_batch_bytes <= 0:
        msg = "max_batch_bytes must be positive"
        raise ValueError(msg)

    plan = BatchPlan(max_batch_bytes=max_batch_bytes)
    current: list[FileEntry] = []
    current_size = 0

    def flush() -> None:
        nonlocal current, current_size
        if current:
            plan.batches.append(SelectionSet(tuple(current)))
            logger.debug(
                "Batch %d: %d files, %s",
                len(plan.batches),
                len(current),
                format_size(current_size),
            )
        current, current_size = [], 0

    for entry in selection:
        if entry.length > max_batch_bytes:
            if include_oversized:
                flush()
                plan.batches.append(SelectionSet((entry,)))
                continue
            logger.warning(
                "File %s has size %s which is larger than the batch size %s; skipping it",
                entry.path,
                format_size(entry.length),
                format_size(max_batch_bytes),
            )
            plan.skipped.append(entry)
            continue
        if current_size + entry.length > max_batch_bytes:
            flush()
        current.append(entry)
        current_size += entry.length
    flush()

    if not plan.batches:
        msg = "Every selected file is larger than the batch size"
        raise SelectionEmptyError(msg, {"max_batch_bytes": max_batch_bytes})
    return plan
