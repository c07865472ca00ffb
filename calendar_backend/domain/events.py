"""Domain events published by the event store and the reminder scanner."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from calendar_backend.domain.models import DueReminder, Event


class _DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)


class EventCreated(_DomainEvent):
    """Fired after a new Event is committed to the store."""

    event: Event


class EventUpdated(_DomainEvent):
    """Fired after an Event is replaced by its updated version."""

    event: Event
    previous: Event


class EventDeleted(_DomainEvent):
    """Fired after an Event is removed from the store."""

    event: Event


class RemindersDue(_DomainEvent):
    """Fired by a reminder scan when at least one event is due."""

    reminders: list[DueReminder]
