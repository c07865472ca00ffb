"""Tests for the periodic reminder scanner."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta

import pytest

from calendar_backend.domain.bus import EventBus
from calendar_backend.domain.events import RemindersDue
from calendar_backend.repos.memory import EventStore
from calendar_backend.services.reminders import ReminderScanner


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 1, 20, 13, 50))


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def store(bus, clock):
    return EventStore(bus=bus, clock=clock)


@pytest.fixture()
def published(bus):
    seen: list[RemindersDue] = []
    bus.subscribe(RemindersDue, seen.append)
    return seen


def test_scan_publishes_due_events(store, bus, published):
    event = store.add({"title": "Sync", "date": "2024-01-20", "time": "14:00", "type": "meeting"})
    scanner = ReminderScanner(store, bus, lead_minutes=15)

    due = scanner.scan_once()

    assert [r.event.id for r in due] == [event.id]
    assert len(published) == 1
    assert published[0].reminders[0].minutes_until == 10


def test_scan_with_nothing_due_publishes_nothing(store, bus, published):
    store.add({"title": "Later", "date": "2024-01-20", "time": "18:00", "type": "meeting"})
    assert ReminderScanner(store, bus).scan_once() == []
    assert published == []


def test_event_is_reported_on_every_tick_in_its_window(store, bus, published, clock):
    store.add({"title": "Sync", "date": "2024-01-20", "time": "14:00", "type": "meeting"})
    scanner = ReminderScanner(store, bus, lead_minutes=15)

    scanner.scan_once()
    clock.advance(minutes=1)
    scanner.scan_once()
    clock.advance(minutes=9)  # now == start time, window closed
    scanner.scan_once()

    assert [r.reminders[0].minutes_until for r in published] == [10, 9]


def test_background_thread_scans_until_stopped(store, bus):
    store.add({"title": "Sync", "date": "2024-01-20", "time": "14:00", "type": "meeting"})
    ticked = threading.Event()
    bus.subscribe(RemindersDue, lambda _evt: ticked.set())
    scanner = ReminderScanner(store, bus, interval=0.05)

    scanner.start()
    try:
        assert scanner.running
        assert ticked.wait(2.0)
    finally:
        scanner.stop()
    assert not scanner.running


def test_failing_scan_does_not_kill_the_thread(store, bus, monkeypatch):
    calls = []

    def flaky(_lead):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return []

    monkeypatch.setattr(store, "due_for_reminder", flaky)
    scanner = ReminderScanner(store, bus, interval=0.02)
    scanner.start()
    try:
        deadline = time.monotonic() + 2.0
        while len(calls) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scanner.stop()
    assert len(calls) >= 3
