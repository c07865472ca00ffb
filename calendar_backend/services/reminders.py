"""Periodic scan for events whose reminder window has opened."""

from __future__ import annotations

import logging
import threading

from calendar_backend.domain.bus import EventBus
from calendar_backend.domain.events import RemindersDue
from calendar_backend.domain.models import DueReminder
from calendar_backend.repos.memory import EventStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60.0  # seconds between scans
DEFAULT_LEAD_MINUTES = 15


class ReminderScanner:
    """Forward due events to the bus on a fixed tick.

    The scanner keeps no memory of earlier ticks: an event whose window spans
    several ticks is reported on each of them. Consumers wanting a single
    reminder track delivery in the notification history.
    """

    def __init__(
        self,
        store: EventStore,
        bus: EventBus,
        interval: float = DEFAULT_INTERVAL,
        lead_minutes: int = DEFAULT_LEAD_MINUTES,
    ) -> None:
        self.store = store
        self.bus = bus
        self.interval = interval
        self.lead_minutes = lead_minutes
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def scan_once(self) -> list[DueReminder]:
        due = self.store.due_for_reminder(self.lead_minutes)
        if due:
            logger.info("%d event(s) due within %d minutes", len(due), self.lead_minutes)
            self.bus.publish(RemindersDue(reminders=due))
        return due

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="calendar-reminders", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.scan_once()
            except Exception:
                logger.exception("Reminder scan failed")
