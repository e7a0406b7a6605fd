"""
Push channel for server-side changes.

PushBus is an in-process pub/sub: producers publish field changes under a
topic (e.g. "inventory:sku-42"), sessions subscribe to the topics their
component reads. Thread-safe for concurrent emit/subscribe.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushEvent:
    """Notification payload for a server-side change."""
    topic: str
    changes: dict
    source: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PushBus:
    """
    In-process pub/sub for push events.

    Subscribe by topic or catch-all.
    """

    def __init__(self):
        self._topic_listeners = {}      # topic → [callback]
        self._all_listeners = []        # [callback]
        self._lock = threading.Lock()

    def on(self, topic, callback):
        """Subscribe to all events for a given topic."""
        with self._lock:
            self._topic_listeners.setdefault(topic, []).append(callback)

    def on_all(self, callback):
        """Subscribe to all events regardless of topic."""
        with self._lock:
            self._all_listeners.append(callback)

    def off(self, topic, callback):
        """Unsubscribe a topic listener."""
        with self._lock:
            listeners = self._topic_listeners.get(topic, [])
            if callback in listeners:
                listeners.remove(callback)

    def off_all(self, callback):
        """Unsubscribe a catch-all listener."""
        with self._lock:
            if callback in self._all_listeners:
                self._all_listeners.remove(callback)

    def emit(self, event: PushEvent) -> int:
        """Dispatch a PushEvent to all matching listeners. Returns how many ran."""
        with self._lock:
            listeners = list(self._all_listeners)
            listeners += list(self._topic_listeners.get(event.topic, []))

        delivered = 0
        for cb in listeners:
            try:
                cb(event)
            except Exception:
                logger.exception("Push listener %r failed for topic %r", cb, event.topic)
                continue
            delivered += 1
        return delivered

    def publish(self, topic, changes: dict, source=None) -> int:
        return self.emit(PushEvent(topic, dict(changes), source))
