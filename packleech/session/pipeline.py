"""End-to-end leech pipeline.

metadata -> selection -> piece map -> disk gate -> orchestrated fetch.
Everything that can fail without touching the network (parsing, selection,
free-space check) runs before the first request is issued.
"""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from packleech.config.config import get_config
from packleech.core.metadata import load_metadata
from packleech.extensions.webseed import HttpFetcher
from packleech.models import PackMetadata, RunResult, RunStatus
from packleech.piece.file_selection import (
    MatchAll,
    SelectionPredicate,
    SelectionSet,
    plan_batches,
    select_files,
)
from packleech.piece.mapper import PieceMapper
from packleech.session.orchestrator import Orchestrator
from packleech.storage.allocator import DiskAllocator, FreeSpaceFn, free_space
from packleech.storage.resume import ResumeStore
from packleech.utils.events import EventType, Listener, RunContext
from packleech.utils.exceptions import AbortedByUser, ConfigurationError, PackLeechError
from packleech.utils.formatting import format_size
from packleech.utils.logging_config import get_logger, set_correlation_id

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.extensions.webseed import Fetcher
    from packleech.models import Config

logger = get_logger(__name__)

MIB = 1024 * 1024

AfterBatch = Callable[[SelectionSet, RunResult], Awaitable[None]]


def _resolve_metadata(metadata: PackMetadata | str | Path) -> PackMetadata:
    if isinstance(metadata, PackMetadata):
        return metadata
    return load_metadata(metadata)


def collect_webseeds(metadata: PackMetadata, config: Config) -> list[str]:
    """The pack's url-list followed by configured extra webseeds, deduplicated."""
    urls: list[str] = []
    for url in [*metadata.webseeds, *config.network.webseeds]:
        if url not in urls:
            urls.append(url)
    return urls


def _require_webseeds(metadata: PackMetadata, config: Config) -> list[str]:
    webseeds = collect_webseeds(metadata, config)
    if not webseeds:
        msg = f"Pack {metadata.name} has no webseed and none is configured"
        raise ConfigurationError(msg)
    return webseeds


async def leech(
    metadata: PackMetadata | str | Path,
    output_dir: str | Path,
    predicate: SelectionPredicate | None = None,
    config: Config | None = None,
    *,
    fetcher: Fetcher | None = None,
    listeners: Iterable[Listener] = (),
    context: RunContext | None = None,
    selection: SelectionSet | None = None,
    free_space_fn: FreeSpaceFn | None = None,
    keep_resume_file: bool | None = None,
    on_orchestrator: Callable[[Orchestrator], None] | None = None,
) -> RunResult:
    """Leech the selected files of a pack into ``output_dir``.

    Args:
        metadata: Parsed metadata or path of the metadata file
        output_dir: Directory receiving the files
        predicate: File selection (default: every file)
        config: Configuration (default: the global one)
        fetcher: Range fetcher (default: an :class:`HttpFetcher` from config)
        listeners: Progress event listeners
        context: Run context shared across runs
        selection: Precomputed selection, overriding ``predicate``
        free_space_fn: Free space probe, for tests
        keep_resume_file: Override ``disk.keep_resume_file``
        on_orchestrator: Called with the orchestrator before it starts, so the
            caller can request a graceful stop

    Returns:
        Result of the run

    Raises:
        MetadataParseError: Malformed metadata
        SelectionEmptyError: Nothing selected
        ConfigurationError: No webseed to fetch from
        DiskSpaceInsufficientError: Selection does not fit the target volume
        AbortedByUser: Run stopped; partial state persisted

    """
    config = config or get_config()
    meta = _resolve_metadata(metadata)
    output = Path(output_dir)
    set_correlation_id()

    if selection is None:
        selection = select_files(meta, predicate or MatchAll())
    webseeds = _require_webseeds(meta, config)

    ranges = PieceMapper().map(meta, selection)
    allocator = DiskAllocator(
        output,
        strategy=config.disk.preallocate,
        reserve_bytes=config.disk.reserve_mib * MIB,
        free_space_fn=free_space_fn,
    )
    allocator.check_free_space(selection)

    resume = ResumeStore(output, meta, discard_invalid=True)
    resume.load()
    reservations = await allocator.allocate_async(selection)

    async with contextlib.AsyncExitStack() as stack:
        if fetcher is None:
            fetcher = await stack.enter_async_context(
                HttpFetcher.from_config(config.network)
            )
        orchestrator = Orchestrator(
            meta,
            ranges,
            reservations,
            fetcher,
            resume,
            webseeds=webseeds,
            concurrency=config.network.concurrency,
            max_piece_attempts=config.network.max_piece_attempts,
            memory_budget=config.disk.memory_budget_mib * MIB,
            listeners=listeners,
            context=context,
        )
        if on_orchestrator is not None:
            on_orchestrator(orchestrator)
        result = await orchestrator.run()

    if result.ok:
        keep = config.disk.keep_resume_file if keep_resume_file is None else keep_resume_file
        if not keep:
            resume.clear()
    else:
        completed = set(result.completed_files)
        allocator.release(
            [r for r in reservations if r.entry.path not in completed],
            config.disk.abort_policy,
        )
        logger.warning(
            "Run %s: %d pieces aborted, affected files: %s",
            result.status.value,
            len(result.aborted),
            ", ".join(result.affected_files) or "-",
        )
    return result


def batch_budget(
    output_dir: str | Path,
    config: Config,
    free_space_fn: FreeSpaceFn | None = None,
) -> int:
    """Batch size in bytes: a share of free space, or the configured maximum."""
    percentage = config.selection.max_size_percentage
    if percentage > 0:
        available = (free_space_fn or free_space)(Path(output_dir))
        return max(1, available * percentage // 100)
    return config.selection.max_size_bytes


async def leech_in_batches(
    metadata: PackMetadata | str | Path,
    output_dir: str | Path,
    predicate: SelectionPredicate | None = None,
    config: Config | None = None,
    *,
    fetcher: Fetcher | None = None,
    listeners: Iterable[Listener] = (),
    max_batch_bytes: int | None = None,
    after_batch: AfterBatch | None = None,
    free_space_fn: FreeSpaceFn | None = None,
) -> list[RunResult]:
    """Leech a selection batch by batch, each batch fitting the disk budget.

    A failed batch does not stop the following ones; :class:`AbortedByUser`
    does. ``after_batch`` is awaited after every batch with its result.
    """
    config = config or get_config()
    meta = _resolve_metadata(metadata)
    selection = select_files(meta, predicate or MatchAll())
    _require_webseeds(meta, config)
    budget = max_batch_bytes or batch_budget(output_dir, config, free_space_fn)
    plan = plan_batches(selection, budget, config.selection.include_oversized)
    logger.info(
        "Leeching %d files in %d batches of at most %s",
        len(selection),
        len(plan),
        format_size(budget),
    )

    context = RunContext(list(listeners))
    results: list[RunResult] = []
    async with contextlib.AsyncExitStack() as stack:
        if fetcher is None:
            fetcher = await stack.enter_async_context(
                HttpFetcher.from_config(config.network)
            )
        for number, batch in enumerate(plan.batches, start=1):
            context.emit(
                EventType.BATCH_STARTED,
                batch=number,
                batches=len(plan),
                files=len(batch),
                size=batch.total_length,
            )
            try:
                result = await leech(
                    meta,
                    output_dir,
                    config=config,
                    fetcher=fetcher,
                    context=context,
                    selection=batch,
                    free_space_fn=free_space_fn,
                    keep_resume_file=True,
                )
            except AbortedByUser:
                raise
            except PackLeechError as e:
                logger.error("Batch %d of %d failed: %s", number, len(plan), e)
                result = RunResult(status=RunStatus.FAILED, affected_files=batch.paths)
            results.append(result)
            context.emit(
                EventType.BATCH_FINISHED,
                batch=number,
                batches=len(plan),
                status=result.status.value,
            )
            if after_batch is not None:
                await after_batch(batch, result)

    if results and all(r.ok for r in results) and not config.disk.keep_resume_file:
        ResumeStore(output_dir, meta).clear()
    return results
