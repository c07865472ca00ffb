"""FastAPI application: HTTP and WebSocket surface of the calendar backend."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from starlette.websockets import WebSocketState

from calendar_backend.config import Settings, get_settings
from calendar_backend.domain.errors import (
    NotFoundError,
    PersistenceError,
    StoreClosedError,
    ValidationError,
)
from calendar_backend.domain.models import (
    BatchRequest,
    Event,
    EventQuery,
    LiveMessageType,
    NotificationSentRequest,
    WebhookCreateRequest,
)
from calendar_backend.services.batch import MAX_UPCOMING_DAYS, run_batch
from calendar_backend.services.broadcast import WebSocketSink
from calendar_backend.services.container import VERSION, CalendarServices
from calendar_backend.services.ical import to_ical

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ── Dependencies ──────────────────────────────────────────────────────


def get_services(request: Request) -> CalendarServices:
    return request.app.state.services


def _api_key(request: Request) -> str | None:
    return request.headers.get("x-api-key") or request.query_params.get("apiKey")


def optional_api_key(request: Request, services: CalendarServices = Depends(get_services)) -> None:
    """Count usage of a supplied key without requiring one."""
    key = _api_key(request)
    if key:
        services.access.validate(key)


def require_api_key(request: Request, services: CalendarServices = Depends(get_services)) -> None:
    if not services.access.validate(_api_key(request)):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _dump(events: list[Event]) -> list[dict[str, Any]]:
    return [event.model_dump(mode="json") for event in events]


# ── Health ────────────────────────────────────────────────────────────


@router.get("/health")
def health(services: CalendarServices = Depends(get_services)) -> dict:
    return {
        "success": True,
        "message": "Calendar API server is running",
        "version": VERSION,
        "stats": services.stats(),
    }


# ── Events ────────────────────────────────────────────────────────────


@router.get("/events", dependencies=[Depends(optional_api_key)])
def list_events(
    start: date | None = None,
    end: date | None = None,
    month: int | None = Query(default=None, ge=1, le=12),
    year: int | None = Query(default=None, ge=1, le=9999),
    type: str | None = None,
    search: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    services: CalendarServices = Depends(get_services),
) -> dict:
    """Return events filtered by range or month, type and search text, paginated."""
    query = EventQuery(
        start=start,
        end=end,
        month=month,
        year=year,
        type=type,
        search=search,
        limit=limit,
        offset=offset,
    )
    page = services.store.list_events(query)
    return {
        "success": True,
        "events": _dump(page.events),
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "has_more": page.has_more,
    }


@router.get("/events/today", dependencies=[Depends(optional_api_key)])
def today_events(services: CalendarServices = Depends(get_services)) -> dict:
    return {
        "success": True,
        "events": _dump(services.store.today_events()),
        "date": services.store.today().isoformat(),
    }


@router.get("/events/upcoming", dependencies=[Depends(optional_api_key)])
def upcoming_events(
    days: int = Query(default=7, ge=0, le=MAX_UPCOMING_DAYS),
    services: CalendarServices = Depends(get_services),
) -> dict:
    today = services.store.today()
    return {
        "success": True,
        "events": _dump(services.store.upcoming_events(days)),
        "days": days,
        "start_date": today.isoformat(),
        "end_date": (today + timedelta(days=days)).isoformat(),
    }


@router.get("/events/search", dependencies=[Depends(optional_api_key)])
def search_events(q: str | None = None, services: CalendarServices = Depends(get_services)) -> dict:
    if not q:
        raise HTTPException(status_code=400, detail="Query parameter required")
    events = services.store.search(q)
    return {"success": True, "events": _dump(events), "query": q, "count": len(events)}


@router.get("/events/type/{event_type}", dependencies=[Depends(optional_api_key)])
def events_by_type(event_type: str, services: CalendarServices = Depends(get_services)) -> dict:
    events = services.store.by_type(event_type)
    return {"success": True, "events": _dump(events), "type": event_type, "count": len(events)}


@router.get("/events/reminders", dependencies=[Depends(optional_api_key)])
def events_needing_reminders(
    minutes: int = Query(default=15, ge=1),
    services: CalendarServices = Depends(get_services),
) -> dict:
    due = services.store.due_for_reminder(minutes)
    return {
        "success": True,
        "events": [reminder.payload() for reminder in due],
        "checking_next": f"{minutes} minutes",
        "current_time": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/events/{event_id}", dependencies=[Depends(optional_api_key)])
def get_event(event_id: str, services: CalendarServices = Depends(get_services)) -> dict:
    try:
        event = services.store.get(event_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Event not found")
    return {"success": True, "event": event.model_dump(mode="json")}


@router.post("/events", status_code=201, dependencies=[Depends(optional_api_key)])
def create_event(
    payload: dict[str, Any] = Body(...),
    services: CalendarServices = Depends(get_services),
) -> dict:
    event = services.store.add(payload)
    return {
        "success": True,
        "event": event.model_dump(mode="json"),
        "message": "Event created successfully",
    }


@router.put("/events/{event_id}", dependencies=[Depends(optional_api_key)])
def update_event(
    event_id: str,
    payload: dict[str, Any] = Body(...),
    services: CalendarServices = Depends(get_services),
) -> dict:
    try:
        event = services.store.update(event_id, payload)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Event not found")
    return {
        "success": True,
        "event": event.model_dump(mode="json"),
        "message": "Event updated successfully",
    }


@router.delete("/events/{event_id}", dependencies=[Depends(optional_api_key)])
def delete_event(event_id: str, services: CalendarServices = Depends(get_services)) -> dict:
    if not services.store.delete(event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    return {"success": True, "message": "Event deleted successfully"}


@router.post("/batch", dependencies=[Depends(optional_api_key)])
def batch(body: BatchRequest, services: CalendarServices = Depends(get_services)) -> dict:
    return {"success": True, "results": run_batch(services.store, body.operations)}


@router.get("/calendar.ics")
def export_ical(services: CalendarServices = Depends(get_services)) -> Response:
    return Response(
        content=to_ical(services.store.list_all()),
        media_type="text/calendar",
        headers={"Content-Disposition": 'attachment; filename="calendar.ics"'},
    )


# ── Webhooks ──────────────────────────────────────────────────────────


@router.get("/webhooks", dependencies=[Depends(require_api_key)])
def list_webhooks(services: CalendarServices = Depends(get_services)) -> dict:
    return {"success": True, "webhooks": [sub.public() for sub in services.webhooks.list_all()]}


@router.post("/webhooks", status_code=201, dependencies=[Depends(require_api_key)])
def register_webhook(body: WebhookCreateRequest, services: CalendarServices = Depends(get_services)) -> dict:
    subscription = services.webhooks.add(body.url, body.events, body.secret)
    return {
        "success": True,
        "webhook": {"id": subscription.id, "url": subscription.url, "events": subscription.events},
    }


@router.delete("/webhooks/{webhook_id}", dependencies=[Depends(require_api_key)])
def remove_webhook(webhook_id: str, services: CalendarServices = Depends(get_services)) -> dict:
    if not services.webhooks.remove(webhook_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return {"success": True, "message": "Webhook removed"}


# ── Notifications ─────────────────────────────────────────────────────


@router.get("/notifications/pending", dependencies=[Depends(optional_api_key)])
def pending_notifications(
    minutes: int = Query(default=15, ge=1),
    services: CalendarServices = Depends(get_services),
) -> dict:
    due = services.store.due_for_reminder(minutes)
    return {
        "success": True,
        "notifications": [reminder.payload() for reminder in due],
        "check_window": f"{minutes} minutes",
    }


@router.post("/notifications/{event_id}/sent", dependencies=[Depends(optional_api_key)])
def record_notification(
    event_id: str,
    body: NotificationSentRequest | None = None,
    services: CalendarServices = Depends(get_services),
) -> dict:
    body = body or NotificationSentRequest()
    record = services.notifications.record(event_id, method=body.method, status=body.status)
    return {
        "success": True,
        "notification": record.model_dump(mode="json"),
        "message": "Notification recorded",
    }


@router.get("/notifications/history", dependencies=[Depends(require_api_key)])
def notification_history(
    limit: int = Query(default=100, ge=1),
    services: CalendarServices = Depends(get_services),
) -> dict:
    return {
        "success": True,
        "notifications": [r.model_dump(mode="json") for r in services.notifications.history(limit)],
        "total": len(services.notifications),
    }


# ── API keys ──────────────────────────────────────────────────────────


@router.post("/keys/generate", status_code=201)
def generate_api_key(services: CalendarServices = Depends(get_services)) -> dict:
    return {
        "success": True,
        "api_key": services.access.issue(),
        "message": "Save this key securely - it cannot be retrieved later",
    }


# ── Live stream ───────────────────────────────────────────────────────


async def _watch_disconnect(websocket: WebSocket, sink: WebSocketSink) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
    finally:
        sink.close()


@router.websocket("/events/stream")
async def event_stream(websocket: WebSocket) -> None:
    """Push change messages to a connected client until either side closes."""
    services: CalendarServices = websocket.app.state.services
    await websocket.accept()
    sink = WebSocketSink(asyncio.get_running_loop(), maxsize=services.settings.broadcast_buffer_size)
    # registered before the greeting so no change made after it is missed
    services.broadcaster.register(sink)
    watcher = asyncio.create_task(_watch_disconnect(websocket, sink))
    try:
        await websocket.send_json(
            {
                "type": LiveMessageType.CONNECTED.value,
                "message": "Connected to calendar event stream",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        while (message := await sink.receive()) is not None:
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.debug("Live subscriber went away mid-send")
    finally:
        sink.close()
        services.broadcaster.unregister(sink)
        watcher.cancel()
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()


# ── Application factory ───────────────────────────────────────────────


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "detail": str(exc)})

    @app.exception_handler(StoreClosedError)
    async def _store_closed(_request: Request, exc: StoreClosedError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"success": False, "detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence_error(_request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Persistence failure: %s", exc)
        return JSONResponse(status_code=500, content={"success": False, "detail": str(exc)})


def create_app(settings: Settings | None = None, services: CalendarServices | None = None) -> FastAPI:
    """Build the application around one explicitly owned ``CalendarServices``."""
    settings = settings or get_settings()
    services = services or CalendarServices(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        services.start()
        try:
            yield
        finally:
            services.shutdown()

    app = FastAPI(title="Calendar Backend", version=VERSION, lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    _register_error_handlers(app)
    return app
