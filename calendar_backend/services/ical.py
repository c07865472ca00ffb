"""iCalendar (RFC 5545) export of stored events."""

from __future__ import annotations

from datetime import timezone
from typing import Iterable

from calendar_backend.domain.models import Event

UID_DOMAIN = "calendar.app"
PRODID = "-//Calendar Backend//EN"


def escape_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def event_lines(event: Event) -> list[str]:
    """VEVENT block for one event.

    DTSTAMP is the last change time of the event, so exporting an unchanged
    store twice yields identical output. All-day events start at 000000.
    """
    stamp = (event.updated_at or event.created_at).astimezone(timezone.utc)
    start_time = event.time.strftime("%H%M%S") if event.time else "000000"
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event.id}@{UID_DOMAIN}",
        f"DTSTAMP:{stamp.strftime('%Y%m%dT%H%M%SZ')}",
        f"DTSTART:{event.date.strftime('%Y%m%d')}T{start_time}",
        f"SUMMARY:{escape_text(event.title)}",
    ]
    if event.description:
        lines.append(f"DESCRIPTION:{escape_text(event.description)}")
    if event.location:
        lines.append(f"LOCATION:{escape_text(event.location)}")
    lines.append("END:VEVENT")
    return lines


def to_ical(events: Iterable[Event]) -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    for event in events:
        lines.extend(event_lines(event))
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines)
