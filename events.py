"""Best-effort fan-out of listing and pickup-request changes."""

import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List

from models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LISTING_CREATED = "listing_created"
    LISTING_UPDATED = "listing_updated"
    LISTING_DELETED = "listing_deleted"
    LISTING_SPLIT = "listing_split"
    REQUEST_CREATED = "request_created"
    REQUEST_STATUS_CHANGED = "request_status_changed"
    INVENTORY_ITEM_ADDED = "inventory_item_added"


Subscriber = Callable[[Dict[str, Any]], None]


class EventSink:
    """
    Delivers events to every subscriber.

    A subscriber that raises is logged and skipped; emit() itself never
    raises, so a broken listener can't fail a committed ledger operation.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def emit(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        message = {
            "type": EventType(event_type).value,
            "payload": payload,
            "timestamp": utcnow().isoformat(),
        }
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(message)
            except Exception:
                logger.exception("Failed to deliver %s event", message["type"])


class QueueSubscriber:
    """Bridges emit() calls from worker threads into an asyncio queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 100) -> None:
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _put(self, message: Dict[str, Any]) -> None:
        if self.queue.full():
            logger.warning("Dropping %s event for slow client", message["type"])
            return
        self.queue.put_nowait(message)

    def __call__(self, message: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._put, message)


sink = EventSink()


def get_event_sink() -> EventSink:
    return sink
