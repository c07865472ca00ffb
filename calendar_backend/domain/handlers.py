"""Domain event handlers, wired up when the service container is built."""

from __future__ import annotations

from calendar_backend.domain.bus import EventBus
from calendar_backend.domain.events import (
    EventCreated,
    EventDeleted,
    EventUpdated,
    RemindersDue,
)
from calendar_backend.services.notifier import ChangeNotifier
from calendar_backend.services.persistence import PersistenceWriter


class HandlerRegistry:
    """Wires store and scanner events to the notifier and the persistence writer.

    Notification and persistence are registered as separate handlers so that
    a failure in one never skips the other.
    """

    def __init__(
        self,
        bus: EventBus,
        notifier: ChangeNotifier,
        writer: PersistenceWriter,
    ) -> None:
        self.bus = bus
        self.notifier = notifier
        self.writer = writer
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(EventCreated, self.on_event_created)
        self.bus.subscribe(EventUpdated, self.on_event_updated)
        self.bus.subscribe(EventDeleted, self.on_event_deleted)
        self.bus.subscribe(RemindersDue, self.on_reminders_due)
        for mutation in (EventCreated, EventUpdated, EventDeleted):
            self.bus.subscribe(mutation, self.on_store_changed)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_event_created(self, event: EventCreated) -> None:
        self.notifier.event_created(event.event)

    def on_event_updated(self, event: EventUpdated) -> None:
        self.notifier.event_updated(event.event)

    def on_event_deleted(self, event: EventDeleted) -> None:
        self.notifier.event_deleted(event.event)

    def on_reminders_due(self, event: RemindersDue) -> None:
        self.notifier.reminders_due(event.reminders)

    def on_store_changed(self, _event: EventCreated | EventUpdated | EventDeleted) -> None:
        self.writer.schedule()
