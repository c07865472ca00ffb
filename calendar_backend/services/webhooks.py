"""Outbound webhook delivery with optional HMAC signing."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from calendar_backend.domain.errors import DeliveryError
from calendar_backend.domain.models import WebhookSubscription
from calendar_backend.repos.memory import WebhookRepository

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Calendar-Signature"
DEFAULT_TIMEOUT = 5.0  # seconds per delivery attempt
DEFAULT_WORKERS = 4


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign(secret, body), signature)


def build_body(event_type: str, data: Any, timestamp: datetime | None = None) -> bytes:
    payload = {
        "event": event_type,
        "data": data,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class DeliveryResult(BaseModel):
    subscription_id: str
    url: str
    event_type: str
    ok: bool
    status_code: int | None = None
    error: str | None = None


class WebhookDispatcher:
    """Fire-and-forget delivery: one attempt per matching subscription.

    Attempts run on a worker pool, each bounded by ``timeout``. A failed
    attempt is logged and not retried.
    """

    def __init__(
        self,
        repository: WebhookRepository,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = DEFAULT_WORKERS,
    ) -> None:
        self.repository = repository
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="calendar-webhook")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def dispatch(self, event_type: str, data: Any) -> list[Future[DeliveryResult]]:
        """Schedule delivery of ``data`` to every subscription wanting ``event_type``."""
        subscriptions = self.repository.matching(event_type)
        if not subscriptions:
            return []
        if self._closed:
            logger.warning("Dispatcher closed; %s not delivered to %d webhook(s)", event_type, len(subscriptions))
            return []

        body = build_body(event_type, data)
        futures = []
        for subscription in subscriptions:
            future = self._executor.submit(self.deliver, subscription, event_type, body)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._discard)
            futures.append(future)
        return futures

    def deliver(self, subscription: WebhookSubscription, event_type: str, body: bytes) -> DeliveryResult:
        headers = {"Content-Type": "application/json"}
        if subscription.secret:
            headers[SIGNATURE_HEADER] = sign(subscription.secret, body)

        status_code = None
        try:
            response = self._client.post(subscription.url, content=body, headers=headers, timeout=self.timeout)
            status_code = response.status_code
            response.raise_for_status()
        except httpx.HTTPError as exc:
            error = DeliveryError(f"{event_type} to {subscription.url} failed: {exc!r}")
            logger.warning("Webhook %s: %s", subscription.id, error)
            return DeliveryResult(
                subscription_id=subscription.id,
                url=subscription.url,
                event_type=event_type,
                ok=False,
                status_code=status_code,
                error=str(error),
            )

        logger.info("Delivered %s to webhook %s (%d)", event_type, subscription.id, status_code)
        return DeliveryResult(
            subscription_id=subscription.id,
            url=subscription.url,
            event_type=event_type,
            ok=True,
            status_code=status_code,
        )

    def wait(self, timeout: float | None = None) -> bool:
        """Block until in-flight deliveries finish. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=True)
        if self._owns_client:
            self._client.close()

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
