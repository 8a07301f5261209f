"""Rich progress rendering driven by run events."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from packleech.utils.events import Event, EventType

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from rich.console import Console


class LeechProgress:
    """Event listener that renders a progress bar per run.

    Use as a context manager around the run and register the instance as a
    listener.
    """

    def __init__(self, console: Console, piece_length: int):
        """Initialize progress renderer.

        Args:
            console: Rich console for output
            piece_length: Nominal piece length, to size the byte bar

        """
        self.console = console
        self.piece_length = piece_length
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(binary_units=True),
            TransferSpeedColumn(),
            TextColumn("{task.fields[status]}"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=console,
        )
        self.task_id: TaskID | None = None
        self.batch_label = ""

    def __enter__(self) -> LeechProgress:
        """Start rendering."""
        self.progress.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Stop rendering."""
        self.progress.stop()

    def __call__(self, event: Event) -> None:
        """Handle a run event."""
        data = event.data
        if event.event_type is EventType.BATCH_STARTED:
            self.batch_label = f"batch {data['batch']}/{data['batches']} "
        elif event.event_type is EventType.RUN_STARTED:
            if self.task_id is not None:
                self.progress.update(self.task_id, visible=False)
            self.task_id = self.progress.add_task(
                f"{self.batch_label}{data['name']}",
                total=data["pieces"] * self.piece_length,
                status="",
            )
        elif self.task_id is None:
            return
        elif event.event_type is EventType.PIECE_VERIFIED:
            self.progress.advance(self.task_id, data["length"])
        elif event.event_type is EventType.PIECE_RETRY:
            self.progress.update(self.task_id, status=f"retrying piece {data['index']}")
        elif event.event_type is EventType.PIECE_ABORTED:
            self.progress.update(
                self.task_id, status=f"[red]piece {data['index']} aborted"
            )
            self.progress.advance(self.task_id, self.piece_length)
        elif event.event_type is EventType.RUN_FINISHED:
            task = next(t for t in self.progress.tasks if t.id == self.task_id)
            self.progress.update(
                self.task_id, completed=task.total, status=data["status"]
            )
