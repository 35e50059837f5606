"""
User-facing notifications (toasts) for explicit saves and system warnings.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from ..core.schema import utcnow
from util.logging import logger

LEVELS = ('success', 'error', 'info', 'warning')


@dataclass
class Notification:
    id: int
    level: str
    message: str
    created_at: datetime = field(default_factory=utcnow)
    dismissed: bool = False


class NotificationCenter:
    """Keeps active notifications and forwards new ones to an optional listener."""

    def __init__(self, on_notify: Optional[Callable[[Notification], None]] = None):
        self._counter = itertools.count(1)
        self._notifications: List[Notification] = []
        self._on_notify = on_notify

    def notify(self, level: str, message: str) -> Notification:
        if level not in LEVELS:
            raise ValueError(f"level must be one of: {list(LEVELS)}")

        notification = Notification(id=next(self._counter), level=level, message=message)
        self._notifications.append(notification)

        if level == 'error':
            logger.error(f"Notification: {message}")
        elif level == 'warning':
            logger.warning(f"Notification: {message}")
        else:
            logger.info(f"Notification ({level}): {message}")

        if self._on_notify:
            self._on_notify(notification)
        return notification

    def success(self, message: str) -> Notification:
        return self.notify('success', message)

    def error(self, message: str) -> Notification:
        return self.notify('error', message)

    def info(self, message: str) -> Notification:
        return self.notify('info', message)

    def warning(self, message: str) -> Notification:
        return self.notify('warning', message)

    def dismiss(self, notification_id: int) -> bool:
        for notification in self._notifications:
            if notification.id == notification_id and not notification.dismissed:
                notification.dismissed = True
                return True
        return False

    @property
    def active(self) -> List[Notification]:
        return [n for n in self._notifications if not n.dismissed]

    def clear(self):
        self._notifications.clear()
