"""Explicitly constructed owner of every long-lived calendar component."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from calendar_backend.config import Settings
from calendar_backend.domain.bus import EventBus
from calendar_backend.domain.errors import PersistenceError
from calendar_backend.domain.handlers import HandlerRegistry
from calendar_backend.repos.memory import EventStore, NotificationLog, WebhookRepository
from calendar_backend.repos.storage import JsonStorage
from calendar_backend.services.access import AccessRegistry
from calendar_backend.services.broadcast import Broadcaster
from calendar_backend.services.notifier import ChangeNotifier
from calendar_backend.services.persistence import PersistenceWriter
from calendar_backend.services.reminders import ReminderScanner
from calendar_backend.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

VERSION = "2.0.0"


class CalendarServices:
    """Builds and wires the store, persistence, scanner and notifier.

    One instance is created per application and handed to route handlers and
    background timers; nothing here is module-level state.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = datetime.now,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.bus = EventBus()
        self.storage = JsonStorage(settings.data_dir)
        self.store = EventStore(bus=self.bus, clock=clock)
        self.webhooks = WebhookRepository(self.storage)
        self.notifications = NotificationLog(self.storage, limit=settings.notification_history_limit)
        self.access = AccessRegistry()
        self.broadcaster = Broadcaster()
        self.dispatcher = WebhookDispatcher(
            self.webhooks,
            client=http_client,
            timeout=settings.webhook_timeout_seconds,
            max_workers=settings.webhook_workers,
        )
        self.notifier = ChangeNotifier(self.broadcaster, self.dispatcher)
        self.writer = PersistenceWriter(self.store, self.storage, delay=settings.write_delay_seconds)
        self.scanner = ReminderScanner(
            self.store,
            self.bus,
            interval=settings.reminder_interval_seconds,
            lead_minutes=settings.reminder_lead_minutes,
        )
        self.handlers = HandlerRegistry(bus=self.bus, notifier=self.notifier, writer=self.writer)
        self.started_at: datetime | None = None

    def start(self) -> None:
        """Load durable state and start the reminder scanner."""
        self.storage.initialize()
        self.store.load(self.storage.load_events())
        self.webhooks.load(self.storage.load_webhooks())
        self.notifications.load(self.storage.load_notifications())
        if self.settings.scan_reminders:
            self.scanner.start()
        self.started_at = datetime.now(timezone.utc)
        logger.info(
            "Calendar backend %s started: %d events, %d webhooks, data in %s",
            VERSION,
            len(self.store),
            len(self.webhooks),
            self.storage.data_dir,
        )

    def shutdown(self) -> None:
        """Stop mutations, stop timers, flush, then close live connections."""
        logger.info("Shutting down calendar backend")
        self.store.close()
        self.scanner.stop()
        self.writer.cancel()
        try:
            self.writer.flush_now()
        except PersistenceError:
            logger.exception("Final flush failed; changes since the last flush are lost")
        self.broadcaster.close_all()
        self.dispatcher.close()

    def stats(self) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        last_flushed = self.writer.last_flushed
        return {
            "total_events": len(self.store),
            "today_events": len(self.store.today_events()),
            "upcoming_events": len(self.store.upcoming_events(7)),
            "webhooks": len(self.webhooks),
            "ws_clients": len(self.broadcaster),
            "api_keys": len(self.access),
            "notifications": len(self.notifications),
            "pending_flush": self.writer.pending,
            "cache_age_seconds": (now - last_flushed).total_seconds() if last_flushed else None,
            "uptime_seconds": (now - self.started_at).total_seconds() if self.started_at else None,
        }
