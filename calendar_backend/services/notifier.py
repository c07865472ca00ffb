"""Change notification: live broadcast plus webhook dispatch."""

from __future__ import annotations

import logging
from typing import Any

from calendar_backend.domain.models import DueReminder, Event, LiveMessageType, WebhookEventType
from calendar_backend.services.broadcast import Broadcaster
from calendar_backend.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class ChangeNotifier:
    """Fans one logical change out to live subscribers and to webhooks.

    The two channels are independent; neither waits on the other and neither
    reports failures back to the caller. Payloads are serialized here, so no
    reference to store state outlives the call.
    """

    def __init__(self, broadcaster: Broadcaster, dispatcher: WebhookDispatcher) -> None:
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher

    def notify(self, live_type: LiveMessageType, webhook_type: WebhookEventType, data: Any) -> None:
        self.broadcaster.broadcast({"type": live_type.value, "data": data})
        self.dispatcher.dispatch(webhook_type.value, data)

    def event_created(self, event: Event) -> None:
        self.notify(LiveMessageType.EVENT_ADDED, WebhookEventType.CREATED, event.model_dump(mode="json"))

    def event_updated(self, event: Event) -> None:
        self.notify(LiveMessageType.EVENT_UPDATED, WebhookEventType.UPDATED, event.model_dump(mode="json"))

    def event_deleted(self, event: Event) -> None:
        self.notify(LiveMessageType.EVENT_DELETED, WebhookEventType.DELETED, {"id": event.id})

    def reminders_due(self, reminders: list[DueReminder]) -> None:
        """One live message for the whole batch, one webhook call per event."""
        payloads = [reminder.payload() for reminder in reminders]
        self.broadcaster.broadcast({"type": LiveMessageType.REMINDERS_DUE.value, "data": payloads})
        for payload in payloads:
            self.dispatcher.dispatch(WebhookEventType.REMINDER.value, payload)
        logger.debug("Notified %d due reminder(s)", len(payloads))
