"""In-memory repositories: the event store, webhook subscriptions and notification history."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError as PydanticValidationError

from calendar_backend.domain.bus import EventBus
from calendar_backend.domain.errors import (
    NotFoundError,
    PersistenceError,
    StoreClosedError,
    ValidationError,
)
from calendar_backend.domain.events import EventCreated, EventDeleted, EventUpdated
from calendar_backend.domain.models import (
    DueReminder,
    Event,
    EventFields,
    EventPage,
    EventQuery,
    NotificationRecord,
    WebhookSubscription,
)
from calendar_backend.repos.storage import JsonStorage

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset(EventFields.model_fields)


def _describe(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
        for err in exc.errors()
    )


def _validate_fields(data: Any) -> EventFields:
    try:
        return EventFields.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc


def _date_range(start: date, end: date) -> Iterator[date]:
    for offset in range((end - start).days + 1):
        yield start + timedelta(days=offset)


def _matches(event: Event, text: str) -> bool:
    needle = text.lower()
    return (
        needle in event.title.lower()
        or needle in (event.description or "").lower()
        or needle in event.type.lower()
    )


class EventStore:
    """Authoritative in-memory event set with a date-keyed secondary index.

    ``_events`` keeps insertion order and ``_by_date`` maps each calendar date
    to the ids stored under it, also in insertion order. Both are guarded by a
    single lock, so no reader sees one updated without the other. Change
    events are published on the bus after the lock is released.

    ``clock`` returns the current local wall-clock time as a naive datetime;
    event dates and times are compared against it.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self._lock = threading.RLock()
        self._events: dict[str, Event] = {}
        self._by_date: dict[date, list[str]] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, fields: Mapping[str, Any] | EventFields) -> Event:
        if isinstance(fields, EventFields):
            fields = fields.model_dump()
        validated = _validate_fields(fields)

        with self._lock:
            self._ensure_open()
            event = Event(id=self._new_id(), **validated.model_dump())
            self._events[event.id] = event
            self._by_date.setdefault(event.date, []).append(event.id)

        logger.info("Added event %s on %s", event.id, event.date)
        self._publish(EventCreated(event=event))
        return event

    def update(self, event_id: str, changes: Mapping[str, Any]) -> Event:
        if not isinstance(changes, Mapping):
            raise ValidationError("payload: update must be an object")
        with self._lock:
            self._ensure_open()
            current = self._events.get(event_id)
            if current is None:
                raise NotFoundError(event_id)

            merged = current.model_dump(include=set(_EDITABLE_FIELDS))
            merged.update({k: v for k, v in changes.items() if k in _EDITABLE_FIELDS})
            validated = _validate_fields(merged)
            updated = Event(
                id=current.id,
                created_at=current.created_at,
                updated_at=datetime.now(timezone.utc),
                **validated.model_dump(),
            )

            self._events[event_id] = updated
            if updated.date != current.date:
                self._unindex(current)
                self._by_date.setdefault(updated.date, []).append(event_id)

        logger.info("Updated event %s", event_id)
        self._publish(EventUpdated(event=updated, previous=current))
        return updated

    def delete(self, event_id: str) -> bool:
        with self._lock:
            self._ensure_open()
            event = self._events.pop(event_id, None)
            if event is None:
                return False
            self._unindex(event)

        logger.info("Deleted event %s", event_id)
        self._publish(EventDeleted(event=event))
        return True

    def load(self, events: Iterable[Event]) -> None:
        """Replace the whole contents, rebuilding the index. Publishes nothing."""
        with self._lock:
            self._events = {}
            self._by_date = {}
            for event in events:
                if event.id in self._events:
                    self._unindex(self._events[event.id])
                self._events[event.id] = event
                self._by_date.setdefault(event.date, []).append(event.id)
        logger.info("Loaded %d events", len(self._events))

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, event_id: str) -> Event:
        with self._lock:
            event = self._events.get(event_id)
        if event is None:
            raise NotFoundError(event_id)
        return event

    def list_all(self) -> list[Event]:
        with self._lock:
            return list(self._events.values())

    snapshot = list_all

    def list_events(self, query: EventQuery | None = None) -> EventPage:
        """Filter, then paginate. ``total`` and ``has_more`` describe the filtered set."""
        query = query or EventQuery()
        with self._lock:
            if query.start is not None and query.end is not None:
                events = self._collect(query.start, query.end)
            elif query.month is not None and query.year is not None:
                first = date(query.year, query.month, 1)
                # day=31 clamps to the month's last day, valid for December 9999 too
                events = self._collect(first, first + relativedelta(day=31))
            else:
                events = list(self._events.values())

        if query.type:
            events = [e for e in events if e.type == query.type]
        if query.search:
            events = [e for e in events if _matches(e, query.search)]

        total = len(events)
        end = query.offset + query.limit
        return EventPage(
            events=events[query.offset : end],
            total=total,
            limit=query.limit,
            offset=query.offset,
            has_more=total > end,
        )

    def search(self, text: str) -> list[Event]:
        with self._lock:
            return [e for e in self._events.values() if _matches(e, text)]

    def by_type(self, event_type: str) -> list[Event]:
        with self._lock:
            return [e for e in self._events.values() if e.type == event_type]

    def events_on(self, day: date) -> list[Event]:
        with self._lock:
            return [self._events[event_id] for event_id in self._by_date.get(day, [])]

    def ids_on(self, day: date) -> list[str]:
        with self._lock:
            return list(self._by_date.get(day, []))

    def indexed_dates(self) -> list[date]:
        with self._lock:
            return sorted(self._by_date)

    def today(self) -> date:
        return self._clock().date()

    def today_events(self) -> list[Event]:
        return self.events_on(self.today())

    def upcoming_events(self, days: int = 7) -> list[Event]:
        """Events from today through ``today + days`` inclusive, ordered by date."""
        start = self.today()
        try:
            end = start + timedelta(days=days)
        except OverflowError as exc:
            raise ValidationError(f"days: window of {days} days runs past the last representable date") from exc
        with self._lock:
            events = self._collect(start, end)
        return sorted(events, key=lambda e: e.date)

    def due_for_reminder(self, lead_minutes: int = 15) -> list[DueReminder]:
        """Timed events starting in ``(now, now + lead_minutes]``."""
        now = self._clock()
        try:
            horizon = now + timedelta(minutes=lead_minutes)
        except OverflowError:
            horizon = datetime.max
        with self._lock:
            events = list(self._events.values())

        due: list[DueReminder] = []
        for event in events:
            starts_at = event.starts_at()
            if starts_at is None or not (now < starts_at <= horizon):
                continue
            due.append(
                DueReminder(
                    event=event,
                    minutes_until=int((starts_at - now).total_seconds() // 60),
                    notification_time=now,
                )
            )
        return due

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        with self._lock:
            return event_id in self._events

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _collect(self, start: date, end: date) -> list[Event]:
        if end < start:
            return []
        if (end - start).days + 1 > len(self._by_date):
            days: Iterable[date] = sorted(d for d in self._by_date if start <= d <= end)
        else:
            days = _date_range(start, end)
        collected: list[Event] = []
        for day in days:
            collected.extend(self._events[event_id] for event_id in self._by_date.get(day, []))
        return collected

    def _unindex(self, event: Event) -> None:
        ids = self._by_date.get(event.date)
        if not ids:
            return
        if event.id in ids:
            ids.remove(event.id)
        if not ids:
            del self._by_date[event.date]

    def _new_id(self) -> str:
        event_id = uuid.uuid4().hex
        while event_id in self._events:
            event_id = uuid.uuid4().hex
        return event_id

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError("event store is closed to mutations")

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)


class WebhookRepository:
    """Registered webhook subscriptions, kept in sync with durable storage.

    Mutations write the new list to storage before swapping it in, so memory
    and disk agree even when the write fails. Readers see whole snapshots.
    """

    def __init__(self, storage: JsonStorage | None = None) -> None:
        self._storage = storage
        self._store: dict[str, WebhookSubscription] = {}
        self._write_lock = threading.Lock()

    def load(self, subscriptions: Iterable[WebhookSubscription]) -> None:
        with self._write_lock:
            self._store = {sub.id: sub for sub in subscriptions}

    def add(self, url: str, events: list[str], secret: str | None = None) -> WebhookSubscription:
        try:
            subscription = WebhookSubscription(url=url, events=events, secret=secret)
        except PydanticValidationError as exc:
            raise ValidationError(_describe(exc)) from exc

        with self._write_lock:
            store = dict(self._store)
            store[subscription.id] = subscription
            self._save(store)
            self._store = store
        logger.info("Registered webhook %s for %s", subscription.id, subscription.events)
        return subscription

    def remove(self, subscription_id: str) -> bool:
        with self._write_lock:
            if subscription_id not in self._store:
                return False
            store = {k: v for k, v in self._store.items() if k != subscription_id}
            self._save(store)
            self._store = store
        logger.info("Removed webhook %s", subscription_id)
        return True

    def get(self, subscription_id: str) -> WebhookSubscription | None:
        return self._store.get(subscription_id)

    def list_all(self) -> list[WebhookSubscription]:
        return list(self._store.values())

    def matching(self, event_type: str) -> list[WebhookSubscription]:
        return [sub for sub in self._store.values() if sub.wants(event_type)]

    def __len__(self) -> int:
        return len(self._store)

    def _save(self, store: dict[str, WebhookSubscription]) -> None:
        if self._storage is not None:
            self._storage.save_webhooks(list(store.values()))


class NotificationLog:
    """Bounded append-only history of notification deliveries (FIFO eviction)."""

    def __init__(self, storage: JsonStorage | None = None, limit: int = 1000) -> None:
        self._storage = storage
        self._records: deque[NotificationRecord] = deque(maxlen=limit)
        self._lock = threading.Lock()
        # held across append and save so the document never goes back in time
        self._write_lock = threading.Lock()

    def load(self, records: Iterable[NotificationRecord]) -> None:
        with self._lock:
            self._records.clear()
            self._records.extend(records)

    def record(self, event_id: str, method: str = "unknown", status: str = "sent") -> NotificationRecord:
        entry = NotificationRecord(event_id=event_id, method=method, status=status)
        with self._write_lock:
            with self._lock:
                self._records.append(entry)
                history = list(self._records)

            if self._storage is not None:
                try:
                    self._storage.save_notifications(history)
                except PersistenceError:
                    logger.warning("Notification history not persisted; kept in memory", exc_info=True)
        return entry

    def history(self, limit: int = 100) -> list[NotificationRecord]:
        """Newest ``limit`` records, oldest first."""
        with self._lock:
            records = list(self._records)
        return records[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
