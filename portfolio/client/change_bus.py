"""
In-process publish/subscribe for element change events.

One instance is created per client session and passed to every view binding.
Delivery is synchronous and in subscription order; a failing subscriber is
logged and does not stop delivery to the rest.
"""

import logging
from typing import Callable, List

from ..core.schema import ChangeEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[ChangeEvent], None]


class ChangeBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback; returns an idempotent unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent):
        # Snapshot so callbacks may (un)subscribe during delivery
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Change bus subscriber failed for {event.key}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
