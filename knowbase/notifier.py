"""In-process pub/sub for document progress events."""

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


def document_topic(document_id: str) -> str:
    return f"doc:{document_id}"


def knowledge_base_topic(kb_id: str) -> str:
    return f"kb:{kb_id}"


@dataclass
class ProgressEvent:
    """A progress message, framed for Server-Sent Events by ``to_sse``."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data)}\n\n"


class Subscription:
    """
    A bounded mailbox of events for one topic.

    Iterating yields events until the subscription is closed. Use it as a
    context manager to unsubscribe on exit.
    """

    def __init__(self, notifier: "ProgressNotifier", topic: str, buffer_size: int):
        self.notifier = notifier
        self.topic = topic
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, event: ProgressEvent) -> bool:
        """Enqueue without blocking. Returns False if full or closed."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None on timeout or once closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def _close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # Wake a blocked reader; drop the oldest event if needed to make room
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def close(self) -> None:
        self.notifier.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ProgressNotifier:
    """Fan-out of events to topic subscribers. Slow subscribers lose events, never block publishers."""

    def __init__(self, buffer_size: int = 64):
        self.buffer_size = buffer_size
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, buffer_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, topic, buffer_size or self.buffer_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        logger.debug(f"Subscribed to {topic}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)
        subscription._close()

    def publish(self, topic: str, event: ProgressEvent) -> int:
        """Deliver to every subscriber of ``topic``. Returns the number reached."""
        with self._lock:
            subscribers = list(self._subscribers.get(topic, ()))
        delivered = 0
        for subscription in subscribers:
            if subscription.offer(event):
                delivered += 1
            elif not subscription.closed:
                logger.warning(f"Dropped {event.type} event for {topic}: subscriber buffer full")
        return delivered

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscribers.get(topic, ()))
            return sum(len(s) for s in self._subscribers.values())

    def close(self) -> None:
        """Close every subscription."""
        with self._lock:
            subscriptions = [s for subs in self._subscribers.values() for s in subs]
            self._subscribers.clear()
        for subscription in subscriptions:
            subscription._close()
