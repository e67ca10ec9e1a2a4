"""
In-process event bus: writes publish a topic, subscribers refresh whatever they cache for it
"""
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Any

logger = logging.getLogger(__name__)

TOPIC_ADS = 'ads'
TOPIC_ALERTS = 'alerts'
TOPIC_ADVERTISERS = 'advertisers'
TOPIC_JOB_RUNS = 'job_runs'


class EventBus:
    """Topic -> handler fan-out, one bus per worker process"""

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Callable[[str, Dict[str, Any]], None]) -> Callable[[], None]:
        """
        Register a handler for a topic

        Returns:
            Callable that removes the subscription
        """
        with self._lock:
            self._handlers[topic].append(handler)
        return lambda: self.unsubscribe(topic, handler)

    def unsubscribe(self, topic: str, handler: Callable):
        with self._lock:
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

    def publish(self, topic: str, payload: Dict[str, Any] = None) -> int:
        """
        Notify every handler of a topic

        A failing handler is logged and does not stop the others.

        Returns:
            Number of handlers that ran successfully
        """
        with self._lock:
            handlers = list(self._handlers.get(topic, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(topic, payload or {})
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler for '{topic}' failed: {e}", exc_info=True)
        return delivered

    def clear(self):
        with self._lock:
            self._handlers.clear()
