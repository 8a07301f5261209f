"""Tests for run events and the run context."""

from __future__ import annotations

import logging

import pytest

pytestmark = [pytest.mark.unit]

from packleech.utils.events import Event, EventType, RunContext
from packleech.utils.logging_config import set_correlation_id


def test_emit_delivers_to_listeners_in_order():
    seen = []
    context = RunContext([lambda e: seen.append(("first", e.event_type))])
    context.subscribe(lambda e: seen.append(("second", e.event_type)))
    event = context.emit(EventType.RUN_STARTED, pieces=3)
    assert seen == [("first", EventType.RUN_STARTED), ("second", EventType.RUN_STARTED)]
    assert event.data == {"pieces": 3}


def test_unsubscribe():
    seen = []
    listener = seen.append
    context = RunContext([listener])
    context.unsubscribe(listener)
    context.unsubscribe(listener)
    context.emit(EventType.RUN_FINISHED)
    assert seen == []


def test_counters_track_pieces():
    context = RunContext()
    context.emit(EventType.RUN_STARTED, pieces=4)
    for index in range(3):
        context.emit(EventType.PIECE_DISPATCHED, index=index)
    assert context.in_flight == 3
    context.emit(EventType.PIECE_VERIFIED, index=0, length=16)
    context.emit(EventType.PIECE_RETRY, index=1)
    context.emit(EventType.PIECE_ABORTED, index=2)
    assert context.in_flight == 0
    assert context.pieces_total == 4
    assert context.pieces_verified == 1
    assert context.pieces_aborted == 1
    assert context.bytes_downloaded == 16
    assert context.count(EventType.PIECE_DISPATCHED) == 3
    assert context.started_at is not None


def test_failing_listener_does_not_break_emit(caplog):
    seen = []

    def broken(_event):
        raise RuntimeError("listener bug")

    context = RunContext([broken, seen.append])
    with caplog.at_level(logging.ERROR, logger="packleech"):
        context.emit(EventType.PIECE_VERIFIED, index=0, length=1)
    assert len(seen) == 1
    assert "listener" in caplog.text


def test_event_carries_correlation_id():
    set_correlation_id("run-42")
    event = Event(EventType.BATCH_STARTED, {"batch": 1})
    data = event.to_dict()
    assert data["event_type"] == "batch_started"
    assert data["correlation_id"] == "run-42"
    assert data["data"] == {"batch": 1}
