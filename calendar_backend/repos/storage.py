"""Durable JSON documents backing the in-memory repositories."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from calendar_backend.domain.errors import PersistenceError
from calendar_backend.domain.models import Event, NotificationRecord, WebhookSubscription

logger = logging.getLogger(__name__)

EVENTS_FILE = "calendar-data.json"
WEBHOOKS_FILE = "webhooks.json"
NOTIFICATIONS_FILE = "notifications.json"

_EVENTS = TypeAdapter(list[Event])
_WEBHOOKS = TypeAdapter(list[WebhookSubscription])
_NOTIFICATIONS = TypeAdapter(list[NotificationRecord])


class JsonStorage:
    """Three JSON documents under one data directory.

    * events: ``{"events": [...], "last_modified": "<iso>"}``
    * webhooks: ``[subscription, ...]``
    * notifications: ``[record, ...]``

    Writes go to a temporary file that then replaces the document, so a
    reader never sees a half-written file.
    """

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)
        self.events_path = self.data_dir / EVENTS_FILE
        self.webhooks_path = self.data_dir / WEBHOOKS_FILE
        self.notifications_path = self.data_dir / NOTIFICATIONS_FILE

    def initialize(self) -> None:
        """Create the data directory and any missing document."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot create data directory {self.data_dir}: {exc}") from exc
        if not self.events_path.exists():
            self.save_events([])
        if not self.webhooks_path.exists():
            self._write(self.webhooks_path, [])
        if not self.notifications_path.exists():
            self._write(self.notifications_path, [])

    # -- events -----------------------------------------------------------

    def load_events(self) -> list[Event]:
        document = self._read(self.events_path, {"events": []})
        return self._validate(_EVENTS, document.get("events", []), self.events_path)

    def save_events(self, events: Iterable[Event]) -> None:
        self._write(
            self.events_path,
            {
                "events": [event.model_dump(mode="json") for event in events],
                "last_modified": datetime.now(timezone.utc).isoformat(),
            },
        )

    # -- webhooks ---------------------------------------------------------

    def load_webhooks(self) -> list[WebhookSubscription]:
        return self._validate(_WEBHOOKS, self._read(self.webhooks_path, []), self.webhooks_path)

    def save_webhooks(self, subscriptions: Iterable[WebhookSubscription]) -> None:
        self._write(self.webhooks_path, [sub.model_dump(mode="json") for sub in subscriptions])

    # -- notification history ---------------------------------------------

    def load_notifications(self) -> list[NotificationRecord]:
        return self._validate(
            _NOTIFICATIONS, self._read(self.notifications_path, []), self.notifications_path
        )

    def save_notifications(self, records: Iterable[NotificationRecord]) -> None:
        self._write(self.notifications_path, [record.model_dump(mode="json") for record in records])

    # -- helpers ------------------------------------------------------------

    def _read(self, path: Path, default: Any) -> Any:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default
        except OSError as exc:
            raise PersistenceError(f"cannot read {path}: {exc}") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"{path} is not valid JSON: {exc}") from exc

    def _validate(self, adapter: TypeAdapter, data: Any, path: Path) -> list:
        try:
            return adapter.validate_python(data)
        except PydanticValidationError as exc:
            raise PersistenceError(f"{path} has unexpected content: {exc}") from exc

    def _write(self, path: Path, payload: Any) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"cannot write {path}: {exc}") from exc
        logger.debug("Wrote %s", path)
