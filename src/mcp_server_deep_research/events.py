"""Ordered, closable event channel between a research session and its consumer.

Events are delivered in emission order. Once ``close()`` has been called no
further business event is accepted: late emissions are dropped and reported
back to the caller as ``False``.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import APP_NAME, APP_VERSION

logger = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_INTERVAL = 30.0

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}


class EventType(str, Enum):
    INFO = "info"
    PROGRESS = "progress"
    MESSAGE = "message"
    REASONING = "reasoning"
    ERROR = "error"
    COMPLETE = "complete"
    KEEPALIVE = "keepalive"
    CLOSE = "close"
    # Bulk company research
    COMPANY_START = "company-start"
    COMPANY_PROGRESS = "company-progress"
    COMPANY_MESSAGE = "company-message"
    COMPANY_COMPLETE = "company-complete"
    COMPANY_ERROR = "company-error"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ERROR})


class StreamState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict[str, Any]
    id: int | None = None
    timestamp: float = field(default_factory=time.time)

    def to_sse(self) -> str:
        return format_sse_event(self.type.value, self.data, self.id)


def format_sse_event(event: str, data: Any, event_id: int | str | None = None) -> str:
    """Serialize one event in the ``text/event-stream`` wire format."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, ensure_ascii=False, default=str)}")
    return "\n".join(lines) + "\n\n"


def connection_info(**extra: Any) -> dict[str, Any]:
    """Payload of the first event on a fresh stream."""
    return {"name": APP_NAME, "version": APP_VERSION, **extra}


class EventStream:
    """Single-consumer event channel with an open → closing → closed lifecycle."""

    def __init__(self, keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL):
        self.keepalive_interval = keepalive_interval
        self.state = StreamState.OPEN
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._next_id = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self.state is not StreamState.OPEN

    def send_event(self, event_type: EventType | str, data: dict[str, Any] | None = None) -> bool:
        """Queue an event for delivery. Returns False if the stream is already closing or closed."""
        event_type = EventType(event_type)
        if self.state is not StreamState.OPEN:
            self.dropped += 1
            logger.debug(f"Dropped {event_type.value} event on closed stream")
            return False
        self._enqueue(event_type, data or {})
        return True

    def close(self) -> None:
        """Deliver the final ``close`` event and stop accepting events. Safe to call repeatedly."""
        if self.state is not StreamState.OPEN:
            return
        self.state = StreamState.CLOSING
        self._enqueue(EventType.CLOSE, {})
        self._queue.put_nowait(None)
        self.state = StreamState.CLOSED

    def _enqueue(self, event_type: EventType, data: dict[str, Any]) -> None:
        self._next_id += 1
        self._queue.put_nowait(Event(type=event_type, data=data, id=self._next_id))

    async def events(self) -> AsyncIterator[Event]:
        """Yield events in order until the stream closes, inserting keepalives while idle."""
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=self.keepalive_interval)
            except TimeoutError:
                if self.state is StreamState.OPEN:
                    yield Event(type=EventType.KEEPALIVE, data={"timestamp": time.time()})
                continue
            if event is None:
                return
            yield event

    def __aiter__(self) -> AsyncIterator[Event]:
        return self.events()

    async def iter_sse(self) -> AsyncIterator[str]:
        """Yield events serialized for a ``text/event-stream`` response."""
        async for event in self.events():
            yield event.to_sse()

    async def collect(self) -> list[Event]:
        """Drain the stream into a list, skipping keepalives."""
        return [event async for event in self.events() if event.type is not EventType.KEEPALIVE]
