"""Best-effort fan-out of change messages to live subscribers."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol

from calendar_backend.domain.errors import DeliveryError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100


class LiveSink(Protocol):
    """A connected live subscriber."""

    @property
    def closed(self) -> bool: ...

    def send(self, message: dict[str, Any]) -> bool:
        """Queue ``message``. Returns False when the sink is not ready for it."""
        ...

    def close(self) -> None: ...


class Broadcaster:
    """Registry of live sinks.

    A broadcast never blocks on a sink: sinks buffer internally and report
    whether they accepted the message. Closed sinks and sinks whose ``send``
    raises are removed from the registry.
    """

    def __init__(self) -> None:
        self._sinks: list[LiveSink] = []
        self._lock = threading.Lock()

    def register(self, sink: LiveSink) -> None:
        with self._lock:
            self._sinks.append(sink)
        logger.debug("Live subscriber registered (%d active)", len(self))

    def unregister(self, sink: LiveSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def broadcast(self, message: dict[str, Any]) -> int:
        """Offer ``message`` to every sink; returns how many accepted it."""
        with self._lock:
            sinks = list(self._sinks)

        accepted = 0
        for sink in sinks:
            if sink.closed:
                self.unregister(sink)
                continue
            try:
                ok = sink.send(message)
            except Exception as exc:
                error = DeliveryError(f"live send of {message.get('type')} failed: {exc}")
                logger.warning("Dropping live subscriber: %s", error)
                self.unregister(sink)
                continue
            if ok:
                accepted += 1
            else:
                logger.debug("Live subscriber not ready; skipped %s", message.get("type"))
        return accepted

    def close_all(self) -> None:
        with self._lock:
            sinks, self._sinks = self._sinks, []
        for sink in sinks:
            sink.close()
        if sinks:
            logger.info("Closed %d live subscriber(s)", len(sinks))

    def __len__(self) -> int:
        with self._lock:
            return len(self._sinks)


class WebSocketSink:
    """Live sink feeding one WebSocket connection.

    ``send`` may be called from any thread; messages are handed to the
    connection's event loop and buffered in a bounded queue. The queue is
    only touched on that loop. When the buffer is full the message is dropped
    for this connection only and counted in ``dropped``.
    """

    _CLOSE = object()

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = DEFAULT_BUFFER_SIZE) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: dict[str, Any]) -> bool:
        if self._closed or self._loop.is_closed():
            return False
        self._loop.call_soon_threadsafe(self._offer, message)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._offer_close)

    async def receive(self) -> dict[str, Any] | None:
        """Next buffered message, or ``None`` once the sink is closed."""
        message = await self._queue.get()
        return None if message is self._CLOSE else message

    def _offer(self, message: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1

    def _offer_close(self) -> None:
        # the close marker has to fit even when the buffer is full
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSE)
