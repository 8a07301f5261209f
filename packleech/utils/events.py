"""Run events and the per-run context that dispatches them.

Events are delivered synchronously to listeners registered on a
:class:`RunContext`; the context is owned by the caller of a run, so there is
no process-wide bus. A failing listener is logged and otherwise ignored.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from packleech.utils.logging_config import get_correlation_id, get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """Event types emitted during a leech run."""

    RUN_STARTED = "run_started"
    PIECE_DISPATCHED = "piece_dispatched"
    PIECE_VERIFIED = "piece_verified"
    PIECE_RETRY = "piece_retry"
    PIECE_ABORTED = "piece_aborted"
    RUN_FINISHED = "run_finished"
    BATCH_STARTED = "batch_started"
    BATCH_FINISHED = "batch_finished"


@dataclass
class Event:
    """A single run event."""

    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = field(default_factory=get_correlation_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "event_id": self.event_id,
            "data": self.data,
            "correlation_id": self.correlation_id,
        }


Listener = Callable[[Event], None]

_SETTLED = frozenset(
    {EventType.PIECE_VERIFIED, EventType.PIECE_RETRY, EventType.PIECE_ABORTED}
)


class RunContext:
    """Listeners and counters for one run (or one batched pipeline)."""

    def __init__(self, listeners: list[Listener] | None = None):
        """Initialize with optional listeners."""
        self._listeners: list[Listener] = list(listeners or [])
        self.counters: dict[str, int] = {}
        self.pieces_total = 0
        self.in_flight = 0
        self.bytes_downloaded = 0
        self.started_at: float | None = None

    def subscribe(self, listener: Listener) -> None:
        """Register a listener."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: EventType, **data: Any) -> Event:
        """Create an event, update counters and deliver it to every listener."""
        event = Event(event_type=event_type, data=data)
        self.counters[event_type.value] = self.counters.get(event_type.value, 0) + 1
        if event_type is EventType.PIECE_DISPATCHED:
            self.in_flight += 1
        elif event_type in _SETTLED:
            self.in_flight = max(0, self.in_flight - 1)
            if event_type is EventType.PIECE_VERIFIED:
                self.bytes_downloaded += int(data.get("length", 0))
        elif event_type is EventType.RUN_STARTED:
            self.pieces_total += int(data.get("pieces", 0))
            if self.started_at is None:
                self.started_at = event.timestamp

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener %r failed on %s", listener, event_type.value
                )
        return event

    def count(self, event_type: EventType) -> int:
        """How many events of ``event_type`` were emitted."""
        return self.counters.get(event_type.value, 0)

    @property
    def pieces_verified(self) -> int:
        """Pieces verified so far, across every run sharing this context."""
        return self.count(EventType.PIECE_VERIFIED)

    @property
    def pieces_aborted(self) -> int:
        """Pieces aborted so far."""
        return self.count(EventType.PIECE_ABORTED)
