"""Tests for API key bookkeeping and the iCalendar export."""

from __future__ import annotations

from datetime import datetime, timezone

from calendar_backend.domain.models import Event
from calendar_backend.services.access import AccessRegistry
from calendar_backend.services.ical import escape_text, to_ical


def test_issued_keys_are_unique_and_validate():
    access = AccessRegistry()
    first, second = access.issue(), access.issue()

    assert first != second
    assert len(first) == 64
    assert access.validate(first)
    assert len(access) == 2


def test_validate_records_usage():
    access = AccessRegistry()
    key = access.issue()
    assert access.usage(key).requests == 0

    access.validate(key)
    access.validate(key)

    usage = access.usage(key)
    assert usage.requests == 2
    assert usage.last_used is not None


def test_unknown_or_missing_key_is_rejected():
    access = AccessRegistry()
    access.issue()
    assert not access.validate("nope")
    assert not access.validate(None)
    assert not access.validate("")
    assert access.usage("nope") is None


_STAMP = datetime(2024, 1, 10, 8, 30, tzinfo=timezone.utc)


def _event(**overrides) -> Event:
    fields = dict(id="abc", title="Sync", date="2024-01-20", time="14:00", type="meeting", created_at=_STAMP)
    fields.update(overrides)
    return Event(**fields)


def test_calendar_envelope_and_vevent():
    text = to_ical([_event(description="Agenda; notes, more", location="Room 1")])
    lines = text.split("\r\n")

    assert lines[:5] == [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Calendar Backend//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    assert lines[-1] == "END:VCALENDAR"
    assert "UID:abc@calendar.app" in lines
    assert "DTSTAMP:20240110T083000Z" in lines
    assert "DTSTART:20240120T140000" in lines
    assert "SUMMARY:Sync" in lines
    assert "DESCRIPTION:Agenda\\; notes\\, more" in lines
    assert "LOCATION:Room 1" in lines


def test_all_day_event_starts_at_midnight_and_omits_empty_fields():
    text = to_ical([_event(time=None)])
    assert "DTSTART:20240120T000000" in text
    assert "DESCRIPTION" not in text
    assert "LOCATION" not in text


def test_dtstamp_follows_last_update():
    updated = _event(updated_at=datetime(2024, 1, 12, 9, 0, tzinfo=timezone.utc))
    assert "DTSTAMP:20240112T090000Z" in to_ical([updated])


def test_export_is_stable_for_unchanged_events():
    events = [_event(), _event(id="def", title="Other")]
    assert to_ical(events) == to_ical(events)
    assert to_ical(events).count("BEGIN:VEVENT") == 2


def test_escape_text():
    assert escape_text("a\\b;c,d\ne") == "a\\\\b\\;c\\,d\\ne"
