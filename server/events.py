"""
Real-time sync result stream for the BioSync server.

Results are fanned out to every connected Server-Sent Events client and a
short in-memory history is kept for dashboards that connect late. Nothing
here is persisted.
"""

import json
import queue
import threading
import time
from collections import deque
from typing import Any, Dict, Iterator, List, Optional

from shared.logging_config import get_server_logger
from shared.models import SyncResult

logger = get_server_logger()

HISTORY_SIZE = 200
SUBSCRIBER_QUEUE_SIZE = 500
KEEPALIVE_SECONDS = 15
# Each open stream holds a server worker thread
MAX_SUBSCRIBERS = 6
STREAM_LIFETIME_SECONDS = 300
RECONNECT_MILLISECONDS = 3000


class ResultBroadcaster:
    """Fan-out of SyncResults to SSE subscribers"""

    def __init__(self, history_size: int = HISTORY_SIZE, max_subscribers: int = MAX_SUBSCRIBERS):
        self.max_subscribers = max_subscribers
        self._lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []
        self._history = deque(maxlen=history_size)

    def publish(self, result: SyncResult):
        payload = result.to_dict()
        with self._lock:
            self._history.append(payload)
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber.put_nowait(payload)
            except queue.Full:
                logger.warning("Event subscriber is not keeping up, dropping a result")

    # Listener protocol used by SyncService.add_result_listener
    __call__ = publish

    def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def subscribe(self) -> Optional[queue.Queue]:
        """New subscriber queue, or None when every stream slot is taken"""
        subscriber = queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        with self._lock:
            if len(self._subscribers) >= self.max_subscribers:
                logger.warning(f"Refusing event stream: {self.max_subscribers} already open")
                return None
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue):
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def stream(self, subscriber: queue.Queue, keepalive: float = KEEPALIVE_SECONDS,
               lifetime: float = STREAM_LIFETIME_SECONDS) -> Iterator[str]:
        """Yield SSE frames until the client disconnects or the lifetime ends.

        Browsers reconnect after the advertised retry delay, so a stream that
        ends only frees its worker thread for a moment.
        """
        deadline = time.monotonic() + lifetime
        try:
            yield f"retry: {RECONNECT_MILLISECONDS}\n: connected\n\n"
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                try:
                    payload = subscriber.get(timeout=min(keepalive, remaining))
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: log\ndata: {json.dumps(payload)}\n\n"
        finally:
            self.unsubscribe(subscriber)
