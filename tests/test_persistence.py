"""Tests for the JSON documents and the debounced write-behind flush."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime

import pytest

from calendar_backend.domain.bus import EventBus
from calendar_backend.domain.errors import PersistenceError
from calendar_backend.domain.events import EventCreated, EventDeleted, EventUpdated
from calendar_backend.domain.models import NotificationRecord
from calendar_backend.repos.memory import EventStore, NotificationLog, WebhookRepository
from calendar_backend.repos.storage import EVENTS_FILE, JsonStorage
from calendar_backend.services.persistence import PersistenceWriter


def _fields(**overrides) -> dict:
    defaults = dict(title="Sync", date="2024-01-20", time="14:00", type="meeting")
    defaults.update(overrides)
    return defaults


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class CountingStorage(JsonStorage):
    """Counts event writes and can be told to fail them."""

    def __init__(self, data_dir) -> None:
        super().__init__(data_dir)
        self.event_writes = 0
        self.fail = False

    def save_events(self, events) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        self.event_writes += 1
        super().save_events(events)


@pytest.fixture()
def storage(tmp_path):
    storage = CountingStorage(tmp_path / "data")
    storage.initialize()
    storage.event_writes = 0
    return storage


@pytest.fixture()
def wired(storage):
    """Store whose mutations schedule a flush, the way the app wires it."""
    bus = EventBus()
    store = EventStore(bus=bus, clock=lambda: datetime(2024, 1, 20, 9, 0))
    writer = PersistenceWriter(store, storage, delay=0.1)
    for mutation in (EventCreated, EventUpdated, EventDeleted):
        bus.subscribe(mutation, lambda _evt: writer.schedule())
    yield store, writer
    writer.cancel()


# ---------------------------------------------------------------------------
# JsonStorage
# ---------------------------------------------------------------------------


def test_initialize_creates_documents(tmp_path):
    storage = JsonStorage(tmp_path / "nested" / "data")
    storage.initialize()

    document = json.loads((tmp_path / "nested" / "data" / EVENTS_FILE).read_text())
    assert document["events"] == []
    assert "last_modified" in document
    assert storage.load_webhooks() == []
    assert storage.load_notifications() == []


def test_events_round_trip_through_document(storage):
    store = EventStore()
    store.add(_fields(description="Weekly", notifications={"push": ["5m"]}))
    store.add(_fields(title="All day", time=""))

    storage.save_events(store.list_all())
    loaded = storage.load_events()

    assert loaded == store.list_all()
    raw = json.loads(storage.events_path.read_text())
    assert raw["events"][0]["time"] == "14:00"
    assert raw["events"][1]["time"] is None


def test_missing_document_loads_as_empty(tmp_path):
    storage = JsonStorage(tmp_path)
    assert storage.load_events() == []


def test_corrupt_document_raises_persistence_error(storage):
    storage.events_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceError):
        storage.load_events()


def test_unexpected_content_raises_persistence_error(storage):
    storage.events_path.write_text(json.dumps({"events": [{"title": "no id"}]}), encoding="utf-8")
    with pytest.raises(PersistenceError):
        storage.load_events()


def test_write_leaves_no_temporary_files(storage):
    storage.save_events([])
    leftovers = [p for p in storage.data_dir.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_webhooks_persist_without_losing_secret(storage):
    repo = WebhookRepository(storage)
    sub = repo.add("https://example.test/hook", ["*"], secret="s3cret")

    reloaded = WebhookRepository(storage)
    reloaded.load(storage.load_webhooks())
    assert reloaded.get(sub.id).secret == "s3cret"


def test_webhook_add_fails_cleanly_when_storage_fails(storage, monkeypatch):
    repo = WebhookRepository(storage)

    def boom(_subs):
        raise PersistenceError("read-only")

    monkeypatch.setattr(storage, "save_webhooks", boom)
    with pytest.raises(PersistenceError):
        repo.add("https://example.test/hook", ["*"])
    assert len(repo) == 0


def test_notification_log_is_bounded_and_persisted(storage):
    log = NotificationLog(storage, limit=3)
    for n in range(5):
        log.record(f"evt-{n}", method="push")

    assert len(log) == 3
    assert [r.event_id for r in log.history()] == ["evt-2", "evt-3", "evt-4"]
    assert [r.event_id for r in log.history(2)] == ["evt-3", "evt-4"]
    assert [r.event_id for r in storage.load_notifications()] == ["evt-2", "evt-3", "evt-4"]


def test_notification_log_keeps_record_when_storage_fails(storage, monkeypatch, caplog):
    log = NotificationLog(storage)

    def boom(_records):
        raise PersistenceError("read-only")

    monkeypatch.setattr(storage, "save_notifications", boom)
    with caplog.at_level(logging.WARNING):
        record = log.record("evt-1")
    assert isinstance(record, NotificationRecord)
    assert len(log) == 1
    assert "not persisted" in caplog.text


# ---------------------------------------------------------------------------
# PersistenceWriter
# ---------------------------------------------------------------------------


def test_burst_of_mutations_coalesces_into_one_write(wired, storage):
    store, writer = wired
    for n in range(10):
        store.add(_fields(title=f"Event {n}"))

    assert _wait_for(lambda: storage.event_writes >= 1)
    time.sleep(0.3)
    assert storage.event_writes == 1
    assert len(storage.load_events()) == 10
    assert writer.pending is False
    assert writer.last_flushed is not None


def test_change_is_not_durable_before_the_timer_fires(storage):
    store = EventStore()
    writer = PersistenceWriter(store, storage, delay=60)
    store.add(_fields())
    writer.schedule()
    try:
        assert writer.pending is True
        assert storage.load_events() == []
    finally:
        writer.cancel()
    assert writer.pending is False


def test_flush_now_writes_latest_state(storage):
    store = EventStore()
    writer = PersistenceWriter(store, storage, delay=60)
    event = store.add(_fields())
    writer.schedule()

    writer.flush_now()

    assert writer.pending is False
    assert storage.load_events() == [event]


def test_flush_now_raises_on_storage_failure(storage):
    store = EventStore()
    writer = PersistenceWriter(store, storage)
    storage.fail = True
    with pytest.raises(PersistenceError):
        writer.flush_now()
    assert writer.failures == 1


def test_failed_timer_flush_is_logged_and_not_retried(wired, storage, caplog):
    store, writer = wired
    storage.fail = True

    with caplog.at_level(logging.ERROR):
        store.add(_fields())
        assert _wait_for(lambda: writer.failures == 1)

    time.sleep(0.3)
    assert writer.failures == 1
    assert writer.pending is False
    assert "Scheduled flush failed" in caplog.text
    assert len(store) == 1

    storage.fail = False
    store.add(_fields(title="Next"))
    assert _wait_for(lambda: storage.event_writes == 1)
    assert len(storage.load_events()) == 2


def test_overlapping_records_persist_the_newest_history(storage):
    first_save_started = threading.Event()
    release_first_save = threading.Event()
    original_save = storage.save_notifications
    calls = []

    def slow_first_save(records) -> None:
        calls.append(len(records))
        if len(calls) == 1:
            first_save_started.set()
            release_first_save.wait(2.0)
        original_save(records)

    storage.save_notifications = slow_first_save
    log = NotificationLog(storage)

    first = threading.Thread(target=log.record, args=("evt-1",))
    second = threading.Thread(target=log.record, args=("evt-2",))
    first.start()
    assert first_save_started.wait(2.0)
    second.start()
    time.sleep(0.05)
    release_first_save.set()
    first.join(2.0)
    second.join(2.0)

    assert len(log) == 2
    assert [r.event_id for r in storage.load_notifications()] == ["evt-1", "evt-2"]
