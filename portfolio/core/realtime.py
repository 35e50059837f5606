"""
Server-side realtime change feed.

DAO writes run on request worker threads while subscribers (SSE streams) live
on the event loop, so every subscriber remembers its loop and messages are
handed over with call_soon_threadsafe. The subscriber list is shared across
threads and guarded by a lock.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .schema import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    owner_id: Optional[str] = None
    prefix: Optional[str] = None

    def matches(self, notification: Dict[str, Any]) -> bool:
        if self.owner_id is not None and notification.get("owner_id") != self.owner_id:
            return False
        if self.prefix and not notification.get("element_id", "").startswith(self.prefix):
            return False
        return True


class ChangeFeed:
    """Fan-out of element change notifications to live subscribers."""

    def __init__(self, max_queue: int = 1000):
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()
        self._max_queue = max_queue

    def subscribe(self, owner_id: Optional[str] = None, prefix: Optional[str] = None) -> Subscription:
        """Register a subscriber on the running loop."""
        subscription = Subscription(
            queue=asyncio.Queue(maxsize=self._max_queue),
            loop=asyncio.get_running_loop(),
            owner_id=owner_id,
            prefix=prefix,
        )
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, owner_id: str, element_type: str, element_id: str, action: str,
                data: Any = None, old_data: Any = None) -> Dict[str, Any]:
        """Build a notification and deliver it to every matching subscriber."""
        notification = {
            "owner_id": owner_id,
            "element_type": element_type,
            "element_id": element_id,
            "action": action,
            "data": data,
            "old_data": old_data,
            "timestamp": utcnow().isoformat(),
        }

        with self._lock:
            targets = [s for s in self._subscribers if s.matches(notification)]

        for subscription in targets:
            try:
                subscription.loop.call_soon_threadsafe(self._offer, subscription, notification)
            except RuntimeError:
                # Loop already closed; the stream is gone
                logger.warning("Dropping realtime subscriber with closed event loop")
                self.unsubscribe(subscription)

        return notification

    def _offer(self, subscription: Subscription, notification: Dict[str, Any]):
        try:
            subscription.queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.warning(f"Realtime subscriber queue full, dropping {notification['element_type']}:{notification['element_id']}")


# Process-wide feed used by the DAO and the /realtime endpoint
change_feed = ChangeFeed()
