"""Error taxonomy shared by the store, persistence and notification layers."""

from __future__ import annotations


class CalendarError(Exception):
    """Base class for all calendar backend errors."""


class ValidationError(CalendarError):
    """A required field is missing or a field value is malformed."""


class NotFoundError(CalendarError):
    """An operation referenced an id that is not held by the store."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class PersistenceError(CalendarError):
    """A durable write failed. The in-memory state stays authoritative."""


class DeliveryError(CalendarError):
    """A webhook or live broadcast send failed for one recipient."""


class StoreClosedError(CalendarError):
    """The store is shutting down and no longer accepts mutations."""
