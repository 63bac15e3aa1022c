"""In-process publish/subscribe for bot events.

Topics used by the scheduler: decision, trade, skip, error, recommendation,
loop.start, loop.stop. Subscribing to "*" receives every topic. Handlers run
synchronously on the publishing thread; a failing handler is logged and
never propagates into the publisher.
"""

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], None]

WILDCARD = "*"


class EventBus:
    def __init__(self, history: int = 200):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=history)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

    def publish(self, topic: str, **payload: Any) -> None:
        event = {"topic": topic, "at": datetime.now(timezone.utc).isoformat(), **payload}
        with self._lock:
            self._recent.append(event)
            handlers = list(self._handlers.get(topic, [])) + list(self._handlers.get(WILDCARD, []))

        for handler in handlers:
            try:
                handler(topic, payload)
            except Exception as exc:
                logger.error("Event handler %r failed on %s: %s", handler, topic, exc)

    def get_recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            events = list(self._recent)
        return events[-limit:]
