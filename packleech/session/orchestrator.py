"""Concurrent piece download orchestration.

The orchestrator owns one :class:`DownloadTask` per required piece and drives
it through the state machine::

    PENDING -> IN_FLIGHT -> VERIFIED
                        \\-> FAILED -> PENDING (attempts left) | ABORTED

A fixed number of worker coroutines pull the lowest pending index, fetch
every span of the piece, verify it, write the selected spans and record the
piece in the resume store before taking the next one.
"""

from __future__ import annotations

import asyncio
import heapq
import time
from typing import TYPE_CHECKING, Iterable

from packleech.extensions.webseed import RangeRequest, resolve_webseed_url
from packleech.models import DownloadTask, RunResult, RunStatus, TaskState
from packleech.piece.mapper import files_for_pieces, pieces_for_file
from packleech.piece.verifier import PieceVerifier
from packleech.storage.writer import PieceWriter
from packleech.utils.events import EventType, Listener, RunContext
from packleech.utils.exceptions import AbortedByUser, HashMismatchError, NetworkError
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.extensions.webseed import Fetcher
    from packleech.models import FileEntry, PackMetadata, PieceRange
    from packleech.storage.allocator import DiskReservation
    from packleech.storage.resume import ResumeStore

logger = get_logger(__name__)


def effective_concurrency(concurrency: int, memory_budget: int, piece_length: int) -> int:
    """Worker count allowed by the memory budget (0 = unbounded)."""
    if memory_budget > 0:
        concurrency = min(concurrency, memory_budget // piece_length)
    return max(1, concurrency)


class Orchestrator:
    """Runs every required piece to a terminal state."""

    def __init__(
        self,
        metadata: PackMetadata,
        ranges: dict[int, PieceRange],
        reservations: list[DiskReservation],
        fetcher: Fetcher,
        resume_store: ResumeStore,
        *,
        webseeds: Iterable[str] = (),
        verifier: PieceVerifier | None = None,
        writer: PieceWriter | None = None,
        concurrency: int = 4,
        max_piece_attempts: int = 2,
        memory_budget: int = 0,
        listeners: Iterable[Listener] = (),
        context: RunContext | None = None,
    ):
        """Initialize orchestrator.

        Args:
            metadata: Parsed pack
            ranges: Required pieces from the mapper
            reservations: Preallocated selected files
            fetcher: Range fetcher
            resume_store: Verified-piece record, loaded or not
            webseeds: Base webseed URLs, in preference order
            verifier: Piece hash verifier
            writer: Writer for verified pieces (defaults to one over
                ``reservations``)
            concurrency: Maximum pieces in flight
            max_piece_attempts: Fetch and verify attempts per piece
            memory_budget: Bytes available for in-flight piece buffers
                (0 = unbounded)
            listeners: Event listeners, added to the context
            context: Run context shared with the caller

        """
        if max_piece_attempts < 1:
            msg = "max_piece_attempts must be at least 1"
            raise ValueError(msg)
        self.metadata = metadata
        self.ranges = ranges
        self.reservations = reservations
        self.fetcher = fetcher
        self.resume = resume_store
        self.webseeds = list(webseeds)
        self.verifier = verifier or PieceVerifier()
        self.writer = writer or PieceWriter(reservations)
        self.concurrency = effective_concurrency(
            concurrency, memory_budget, metadata.piece_length
        )
        self.max_piece_attempts = max_piece_attempts
        self.context = context or RunContext()
        for listener in listeners:
            self.context.subscribe(listener)

        self.tasks: dict[int, DownloadTask] = {}
        self._pending: list[int] = []
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._interrupted = False
        self._bytes_downloaded = 0

    def request_stop(self) -> None:
        """Stop dispatching; in-flight pieces finish on their own budget."""
        if not self._stop.is_set():
            logger.info("Stop requested; finishing in-flight pieces")
        self._interrupted = True
        self._stop.set()

    @property
    def stopping(self) -> bool:
        """Whether no further piece will be dispatched."""
        return self._stop.is_set()

    def _prepare(self) -> int:
        """Create tasks, skipping pieces already written into every selected file."""
        if not self.resume.loaded:
            self.resume.load()

        fresh = {r.entry.index for r in self.reservations if r.created}
        stale = self.resume.forget_files(fresh)
        if stale:
            logger.warning(
                "Discarded %d resumed pieces whose files were recreated", len(stale)
            )

        resumed = 0
        for index, piece in self.ranges.items():
            task = DownloadTask(index=index, offset=piece.offset, length=piece.length)
            if self.resume.covers(index, piece.selected_files):
                task.state = TaskState.VERIFIED
                resumed += 1
            else:
                if self.resume.is_verified(index):
                    logger.debug(
                        "Piece %d was verified for other files; fetching it again",
                        index,
                    )
                self._pending.append(index)
            self.tasks[index] = task
        heapq.heapify(self._pending)
        return resumed

    async def run(self) -> RunResult:
        """Drive every task to a terminal state and aggregate the result.

        Raises:
            AbortedByUser: If the run was stopped or cancelled; the exception
                carries the partial result

        """
        started = time.monotonic()
        resumed = self._prepare()
        if resumed:
            logger.info("Skipping %d pieces verified by a previous run", resumed)
        self.context.emit(
            EventType.RUN_STARTED,
            name=self.metadata.name,
            pieces=len(self._pending),
            resumed=resumed,
            concurrency=self.concurrency,
        )

        workers = [
            asyncio.create_task(self._worker(), name=f"packleech-worker-{n}")
            for n in range(min(self.concurrency, len(self._pending)))
        ]
        try:
            if workers:
                await asyncio.wait(workers)
        except (asyncio.CancelledError, KeyboardInterrupt):
            self.request_stop()
            # In-flight pieces are allowed to settle before state is persisted
            if workers:
                await asyncio.wait(workers)

        await self.resume.save_async()
        for worker in workers:
            if not worker.cancelled() and worker.exception() is not None:
                raise worker.exception()  # type: ignore[misc]

        result = self._result(time.monotonic() - started)
        self.context.emit(
            EventType.RUN_FINISHED,
            status=result.status.value,
            verified=len(result.verified),
            aborted=len(result.aborted),
            pending=len(result.pending),
        )
        logger.info(
            "Run finished: %s (%d verified, %d aborted, %d pending) in %.1fs",
            result.status.value,
            len(result.verified),
            len(result.aborted),
            len(result.pending),
            result.elapsed,
        )
        if result.status == RunStatus.INTERRUPTED:
            raise AbortedByUser(result)
        return result

    async def _worker(self) -> None:
        try:
            while not self._stop.is_set():
                task = await self._dispatch()
                if task is None:
                    return
                await self._process(task)
        except Exception:
            self._stop.set()
            raise

    async def _dispatch(self) -> DownloadTask | None:
        async with self._lock:
            if not self._pending or self._stop.is_set():
                return None
            task = self.tasks[heapq.heappop(self._pending)]
            task.transition(TaskState.IN_FLIGHT)
            task.attempts += 1
        self.context.emit(
            EventType.PIECE_DISPATCHED, index=task.index, attempt=task.attempts
        )
        return task

    async def _process(self, task: DownloadTask) -> None:
        piece = self.ranges[task.index]
        try:
            data = await self.fetch_piece(piece)
            await self.verifier.verify_async(piece.index, data, piece.hash)
        except HashMismatchError as e:
            logger.warning("Piece %d failed verification: %s", task.index, e)
            await self._fail(task, e, retryable=True)
            return
        except NetworkError as e:
            logger.warning("Piece %d fetch failed: %s", task.index, e.message)
            await self._fail(task, e, retryable=e.retryable)
            return

        await self.writer.write_piece(piece, data)
        async with self._lock:
            task.transition(TaskState.VERIFIED)
            task.last_error = None
            await self.resume.mark_verified(task.index, piece.selected_files)
            self._bytes_downloaded += piece.length
        self.context.emit(
            EventType.PIECE_VERIFIED,
            index=task.index,
            length=piece.length,
            attempt=task.attempts,
        )

    async def fetch_piece(self, piece: PieceRange) -> bytes:
        """Fetch and assemble the full bytes of a piece."""
        parts = []
        for span in piece.spans:
            if span.file.is_padding:
                # Padding files are all zeros and are never served
                parts.append(bytes(span.length))
                continue
            request = RangeRequest(
                urls=tuple(
                    resolve_webseed_url(url, self.metadata, span.file)
                    for url in self.webseeds
                ),
                start=span.file_offset,
                length=span.length,
                piece_index=piece.index,
            )
            parts.append(await self.fetcher.fetch(request))
        data = b"".join(parts)
        if len(data) != piece.length:
            msg = f"Assembled {len(data)} bytes for piece {piece.index}, expected {piece.length}"
            raise NetworkError(msg, transient=False, retryable=True)
        return data

    async def _fail(self, task: DownloadTask, error: Exception, retryable: bool) -> None:
        async with self._lock:
            task.transition(TaskState.FAILED)
            task.last_error = str(error)
            if retryable and task.attempts < self.max_piece_attempts:
                task.transition(TaskState.PENDING)
                heapq.heappush(self._pending, task.index)
                retry = True
            else:
                task.transition(TaskState.ABORTED)
                retry = False

        if retry:
            self.context.emit(
                EventType.PIECE_RETRY,
                index=task.index,
                attempt=task.attempts,
                error=task.last_error,
            )
        else:
            logger.error(
                "Piece %d aborted after %d attempts: %s",
                task.index,
                task.attempts,
                task.last_error,
            )
            self.context.emit(
                EventType.PIECE_ABORTED,
                index=task.index,
                attempts=task.attempts,
                error=task.last_error,
            )

    def _indices(self, *states: TaskState) -> list[int]:
        return sorted(i for i, t in self.tasks.items() if t.state in states)

    def _result(self, elapsed: float) -> RunResult:
        verified = self._indices(TaskState.VERIFIED)
        aborted = self._indices(TaskState.ABORTED)
        pending = self._indices(TaskState.PENDING, TaskState.IN_FLIGHT, TaskState.FAILED)

        done = set(verified)
        selected: list[FileEntry] = [r.entry for r in self.reservations]
        completed = [
            entry for entry in selected
            if all(i in done for i in pieces_for_file(self.metadata, entry))
        ]
        affected = files_for_pieces(self.ranges, [*aborted, *pending])

        if self._interrupted and pending:
            status = RunStatus.INTERRUPTED
        elif not aborted and not pending:
            status = RunStatus.SUCCESS
        elif any(entry.length > 0 for entry in completed):
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.FAILED

        return RunResult(
            status=status,
            verified=verified,
            aborted=aborted,
            pending=pending,
            affected_files=[e.path for e in affected],
            completed_files=[e.path for e in completed],
            bytes_downloaded=self._bytes_downloaded,
            elapsed=elapsed,
        )
