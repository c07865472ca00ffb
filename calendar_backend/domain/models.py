"""Domain models for the calendar backend."""

from __future__ import annotations

import datetime as dt
import re
import secrets
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

_LEAD_TIME_RE = re.compile(r"^(\d+)([mhd])$")
_UNIT_MINUTES = {"m": 1, "h": 60, "d": 24 * 60}


class LiveMessageType(StrEnum):
    CONNECTED = "connected"
    EVENT_ADDED = "event-added"
    EVENT_UPDATED = "event-updated"
    EVENT_DELETED = "event-deleted"
    REMINDERS_DUE = "reminders-due"


class WebhookEventType(StrEnum):
    CREATED = "event.created"
    UPDATED = "event.updated"
    DELETED = "event.deleted"
    REMINDER = "event.reminder"
    ALL = "*"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def lead_time_minutes(value: str) -> int:
    """Convert a lead time such as ``15m``, ``1h`` or ``2d`` to minutes."""
    match = _LEAD_TIME_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid lead time {value!r}, expected e.g. '15m', '1h' or '2d'")
    return int(match.group(1)) * _UNIT_MINUTES[match.group(2)]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class NotificationSchedule(BaseModel):
    """Reminder lead times per delivery channel."""

    model_config = ConfigDict(frozen=True)

    push: tuple[str, ...] = ()
    email: tuple[str, ...] = ()
    sms: tuple[str, ...] = ()

    @field_validator("push", "email", "sms")
    @classmethod
    def _valid_lead_times(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for item in value:
            lead_time_minutes(item)
        return value


def default_notifications() -> NotificationSchedule:
    return NotificationSchedule(push=("15m",), email=("1h",))


class EventFields(BaseModel):
    """User-editable fields of an event, validated on create and on update."""

    model_config = ConfigDict(extra="ignore")

    title: str
    date: dt.date
    time: dt.time | None = None
    type: str
    description: str | None = None
    location: str | None = None
    notifications: NotificationSchedule = Field(default_factory=default_notifications)

    @field_validator("title", "type")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("time", "description", "location", mode="before")
    @classmethod
    def _empty_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("time")
    @classmethod
    def _minute_precision(cls, value: dt.time | None) -> dt.time | None:
        if value is None:
            return None
        return value.replace(second=0, microsecond=0, tzinfo=None)

    @field_validator("notifications", mode="before")
    @classmethod
    def _default_schedule(cls, value: Any) -> Any:
        return default_notifications() if value is None else value

    @field_serializer("time", when_used="json-unless-none")
    def _serialize_time(self, value: dt.time) -> str:
        return value.strftime("%H:%M")

    def starts_at(self) -> dt.datetime | None:
        """Combined wall-clock timestamp, or ``None`` for all-day events."""
        if self.time is None:
            return None
        return dt.datetime.combine(self.date, self.time)


class Event(EventFields):
    """A stored calendar event. Instances are immutable snapshots."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    created_at: dt.datetime = Field(default_factory=_utcnow)
    updated_at: dt.datetime | None = None


class DueReminder(BaseModel):
    """An event whose reminder window is open at ``notification_time``."""

    model_config = ConfigDict(frozen=True)

    event: Event
    minutes_until: int
    notification_time: dt.datetime

    def payload(self) -> dict[str, Any]:
        data = self.event.model_dump(mode="json")
        data["minutes_until"] = self.minutes_until
        data["notification_time"] = self.notification_time.isoformat()
        return data


class EventQuery(BaseModel):
    start: dt.date | None = None
    end: dt.date | None = None
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = Field(default=None, ge=1, le=9999)
    type: str | None = None
    search: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class EventPage(BaseModel):
    events: list[Event]
    total: int
    limit: int
    offset: int
    has_more: bool


# ---------------------------------------------------------------------------
# Webhooks, notification history, access tokens
# ---------------------------------------------------------------------------


class WebhookSubscription(BaseModel):
    id: str = Field(default_factory=lambda: secrets.token_hex(16))
    url: str
    events: list[str] = Field(min_length=1)
    secret: str | None = None
    created_at: dt.datetime = Field(default_factory=_utcnow)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value

    def wants(self, event_type: str) -> bool:
        return event_type in self.events or WebhookEventType.ALL in self.events

    def public(self) -> dict[str, Any]:
        """Serializable view without the shared secret."""
        return self.model_dump(mode="json", exclude={"secret"})


class NotificationRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    event_id: str
    method: str = "unknown"
    status: str = "sent"
    sent_at: dt.datetime = Field(default_factory=_utcnow)


class TokenUsage(BaseModel):
    created_at: dt.datetime = Field(default_factory=_utcnow)
    last_used: dt.datetime | None = None
    requests: int = 0


# ---------------------------------------------------------------------------
# Request DTOs
# ---------------------------------------------------------------------------


class WebhookCreateRequest(BaseModel):
    url: str
    events: list[str] = Field(min_length=1)
    secret: str | None = None


class NotificationSentRequest(BaseModel):
    method: str = "unknown"
    status: str = "sent"


class BatchOperation(BaseModel):
    method: str
    url: str
    body: dict[str, Any] | None = None
    params: dict[str, Any] | None = None


class BatchRequest(BaseModel):
    operations: list[BatchOperation]
