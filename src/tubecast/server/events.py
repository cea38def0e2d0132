"""Event bus for real-time push notifications.

The coordinator publishes every finalized state change here. Subscribers
(the SSE endpoint, tests, embedding applications) each get their own queue.
Emitting never blocks: the control loop must not wait on a slow consumer.
"""

import collections
import logging
import queue
import threading
import time

logger = logging.getLogger(__name__)


class EventBus:
    """Thread-safe event bus with subscriber management.

    Once closed, every subscriber receives a final None and new
    subscribers get a queue that holds only that None.
    """

    def __init__(self, history: int = 50, subscriber_size: int = 100):
        self._subscribers: list[queue.Queue] = []
        self._recent: collections.deque[dict] = collections.deque(maxlen=history)
        self._subscriber_size = subscriber_size
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: str, payload: dict | None = None):
        """Push an event to all subscribers.

        Args:
            event_type: Category ("state" for transitions, "error" for
                resolution failures)
            payload: Event fields, merged into the event dict
        """
        event = {"type": event_type, "timestamp": time.time()}
        if payload:
            event.update(payload)

        dead = []
        with self._lock:
            if self._closed:
                logger.debug("Dropped %s event, bus is closed", event_type)
                return
            self._recent.appendleft(event)
            for q in self._subscribers:
                try:
                    q.put_nowait(event)
                except queue.Full:
                    dead.append(q)

            for q in dead:
                self._subscribers.remove(q)
                logger.warning("Removed stalled subscriber (queue full)")

        logger.debug("Emitted event: %s %s", event_type, payload or "")

    def subscribe(self) -> queue.Queue:
        """Create a new subscriber queue.

        The queue yields event dicts, then None when the bus closes.
        """
        q = queue.Queue(maxsize=self._subscriber_size)
        with self._lock:
            if self._closed:
                q.put_nowait(None)
                return q
            self._subscribers.append(q)
        logger.debug("New subscriber (total: %d)", len(self._subscribers))
        return q

    def unsubscribe(self, q: queue.Queue):
        """Remove a subscriber queue."""
        with self._lock:
            try:
                self._subscribers.remove(q)
            except ValueError:
                pass
        logger.debug("Subscriber removed (total: %d)", len(self._subscribers))

    def close(self):
        """Signal end of stream to every subscriber."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers, self._subscribers = self._subscribers, []
        for q in subscribers:
            # Make room for the sentinel; a full queue is already lagging.
            while True:
                try:
                    q.put_nowait(None)
                    break
                except queue.Full:
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        pass
        logger.info("Event bus closed")

    def recent(self, limit: int = 20) -> list[dict]:
        """Return the most recent events, newest first."""
        with self._lock:
            return list(self._recent)[:limit]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
