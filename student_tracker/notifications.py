"""Notification bus: short-lived, auto-expiring user-facing messages."""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .models import Notification, NotificationKind

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MS = 5000


class NotificationBus:
    """
    Keeps the ordered list of visible notifications.

    Expiry timers are scheduled on the asyncio event loop at creation time and
    cancelled on manual removal, so an id is never removed twice.
    """

    def __init__(self, default_duration_ms: int = DEFAULT_DURATION_MS,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.default_duration_ms = default_duration_ms
        self._loop = loop
        self._notifications: List[Notification] = []
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._listeners: List[Callable[[List[Notification]], None]] = []
        self._last_id = 0

    @property
    def notifications(self) -> List[Notification]:
        return list(self._notifications)

    def _next_id(self) -> int:
        # Time based, but strictly increasing even within the same millisecond
        candidate = time.time_ns() // 1_000_000
        self._last_id = max(candidate, self._last_id + 1)
        return self._last_id

    def add(self, message: str, kind: NotificationKind = NotificationKind.INFO,
            duration_ms: Optional[int] = None) -> int:
        """
        Publish a notification.

        Args:
            message: Text to show
            kind: success, error, warning or info
            duration_ms: Lifetime in milliseconds; 0 or less never expires

        Returns:
            The notification id
        """
        if duration_ms is None:
            duration_ms = self.default_duration_ms
        kind = NotificationKind(kind)
        notification_id = self._next_id()

        expires_at = None
        if duration_ms > 0:
            expires_at = datetime.now(timezone.utc) + timedelta(milliseconds=duration_ms)
            loop = self._loop or asyncio.get_running_loop()
            self._timers[notification_id] = loop.call_later(
                duration_ms / 1000.0, self._expire, notification_id
            )

        self._notifications.append(
            Notification(id=notification_id, message=message, kind=kind, expires_at=expires_at)
        )
        if kind == NotificationKind.ERROR:
            logger.warning("Notification %d: %s", notification_id, message)
        else:
            logger.debug("Notification %d (%s): %s", notification_id, kind.value, message)
        self._emit()
        return notification_id

    def remove(self, notification_id: int) -> bool:
        """Dismiss a notification. Returns False if it was already gone."""
        timer = self._timers.pop(notification_id, None)
        if timer is not None:
            timer.cancel()
        before = len(self._notifications)
        self._notifications = [n for n in self._notifications if n.id != notification_id]
        removed = len(self._notifications) != before
        if removed:
            self._emit()
        return removed

    def _expire(self, notification_id: int) -> None:
        self._timers.pop(notification_id, None)
        self.remove(notification_id)

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._notifications = []
        self._emit()

    def success(self, message: str) -> int:
        return self.add(message, NotificationKind.SUCCESS)

    def error(self, message: str) -> int:
        return self.add(message, NotificationKind.ERROR)

    def warning(self, message: str) -> int:
        return self.add(message, NotificationKind.WARNING)

    def info(self, message: str) -> int:
        return self.add(message, NotificationKind.INFO)

    def subscribe(self, listener: Callable[[List[Notification]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        snapshot = self.notifications
        for listener in list(self._listeners):
            listener(snapshot)
