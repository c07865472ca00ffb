"""Sequential execution of batched API operations."""

from __future__ import annotations

import logging
from typing import Any

from calendar_backend.domain.errors import CalendarError, ValidationError
from calendar_backend.domain.models import BatchOperation
from calendar_backend.repos.memory import EventStore

logger = logging.getLogger(__name__)

EVENTS_PATH = "/api/events"
MAX_UPCOMING_DAYS = 366


def run_batch(store: EventStore, operations: list[BatchOperation]) -> list[dict[str, Any]]:
    """Run each operation in order. A failing operation does not stop the rest."""
    results: list[dict[str, Any]] = []
    for operation in operations:
        try:
            data = _run(store, operation)
        except CalendarError as exc:
            logger.info("Batch operation %s %s failed: %s", operation.method, operation.url, exc)
            results.append({"success": False, "error": str(exc)})
        else:
            results.append({"success": True, "data": data})
    return results


def _run(store: EventStore, operation: BatchOperation) -> Any:
    method = operation.method.upper()
    path = operation.url.split("?", 1)[0].rstrip("/")

    if method == "GET" and path == f"{EVENTS_PATH}/today":
        return [event.model_dump(mode="json") for event in store.today_events()]
    if method == "GET" and path == f"{EVENTS_PATH}/upcoming":
        days = (operation.params or {}).get("days", 7)
        try:
            days = int(days)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"days: expected an integer, got {days!r}") from exc
        if not 0 <= days <= MAX_UPCOMING_DAYS:
            raise ValidationError(f"days: must be between 0 and {MAX_UPCOMING_DAYS}, got {days}")
        return [event.model_dump(mode="json") for event in store.upcoming_events(days)]
    if method == "POST" and path == EVENTS_PATH:
        return store.add(operation.body or {}).model_dump(mode="json")
    if method == "DELETE" and path.startswith(f"{EVENTS_PATH}/"):
        return store.delete(path.rsplit("/", 1)[-1])

    raise ValidationError(f"unsupported batch operation: {operation.method} {operation.url}")
