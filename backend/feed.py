"""
In-process publish/subscribe for sensor pushes and state changes
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """
    Handle returned by Broadcaster.subscribe.
    Usable as a context manager; cancel() is idempotent.
    """

    def __init__(self, broadcaster: "Broadcaster", topic: str, callback: Callable[[Any], None]):
        self._broadcaster = broadcaster
        self.topic = topic
        self.callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._broadcaster._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False


class Broadcaster:
    """Topic keyed fan-out. Callbacks run on the publisher's thread."""

    def __init__(self, name: str = "broadcaster"):
        self.name = name
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Subscription:
        subscription = Subscription(self, topic, callback)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)

    def publish(self, topic: str, value: Any) -> int:
        """Deliver value to every subscriber of topic. Returns the delivery count."""
        with self._lock:
            subscribers = list(self._subscribers.get(topic, []))

        delivered = 0
        for subscription in subscribers:
            if not subscription.active:
                continue
            try:
                subscription.callback(value)
                delivered += 1
            except Exception:
                logger.exception("%s subscriber for %s failed", self.name, topic)
        return delivered

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscribers.get(topic, []))
            return sum(len(subs) for subs in self._subscribers.values())


class SensorFeed(Broadcaster):
    """Push feed of raw readings keyed by chair id"""

    def __init__(self):
        super().__init__("sensor feed")

    def push(self, chair_id: str, reading: Any) -> int:
        return self.publish(str(chair_id), reading)
