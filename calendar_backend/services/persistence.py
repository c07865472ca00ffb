"""Write-behind persistence of the event store."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from calendar_backend.domain.errors import PersistenceError
from calendar_backend.repos.memory import EventStore
from calendar_backend.repos.storage import JsonStorage

logger = logging.getLogger(__name__)

DEFAULT_WRITE_DELAY = 1.0  # seconds of quiet before a flush


class PersistenceWriter:
    """Debounced flush of the event store to durable storage.

    There is at most one pending flush. ``schedule()`` cancels it and arms a
    new timer, so a burst of mutations produces a single write of the latest
    state. Mutations made after the last flush are lost if the process dies
    before the timer fires.

    A failed timer flush is logged and not retried until the next mutation
    schedules another one.
    """

    def __init__(
        self,
        store: EventStore,
        storage: JsonStorage,
        delay: float = DEFAULT_WRITE_DELAY,
    ) -> None:
        self.store = store
        self.storage = storage
        self.delay = delay
        self.last_flushed: datetime | None = None
        self.failures = 0
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def schedule(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.delay, self._on_timer)
            timer.daemon = True
            timer.name = "calendar-persistence"
            self._timer = timer
            timer.start()

    @property
    def pending(self) -> bool:
        with self._timer_lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush_now(self) -> None:
        """Write the current state synchronously. Raises ``PersistenceError``."""
        self.cancel()
        self._write()

    def _on_timer(self) -> None:
        with self._timer_lock:
            if self._timer is not threading.current_thread():
                return
            self._timer = None
        try:
            self._write()
        except PersistenceError:
            logger.exception("Scheduled flush failed; in-memory state remains authoritative")

    def _write(self) -> None:
        with self._write_lock:
            events = self.store.snapshot()
            try:
                self.storage.save_events(events)
            except PersistenceError:
                self.failures += 1
                raise
            self.last_flushed = datetime.now(timezone.utc)
        logger.debug("Flushed %d events", len(events))
