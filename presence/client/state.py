from __future__ import annotations
from typing import Callable, List, Optional

from ..config import MAX_NOTIFICATIONS, now_ms
from ..events import Notification


class VisitorCountState:
    """
    What the UI reads: the latest visitor count and the newest
    notifications. Written only by the tab's PresenceAgent.
    """

    def __init__(self, clock: Callable[[], int] = now_ms, max_notifications: int = MAX_NOTIFICATIONS):
        self.clock = clock
        self.max_notifications = max_notifications
        self.visitor_count: Optional[int] = None
        self.last_updated: Optional[int] = None
        self.notifications: List[Notification] = []
        self._listeners: List[Callable[["VisitorCountState"], None]] = []

    def subscribe(self, listener: Callable[["VisitorCountState"], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def update_visitor_count(self, count) -> bool:
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            return False
        self.visitor_count = count
        self.last_updated = self.clock()
        self._changed()
        return True

    def add_notification(self, notification: Notification) -> bool:
        if any(n.timestamp == notification.timestamp for n in self.notifications):
            return False
        self.notifications = [notification] + self.notifications[: self.max_notifications - 1]
        self._changed()
        return True

    def clear_notifications(self) -> None:
        self.notifications = []
        self._changed()


def latest_toast(state: VisitorCountState, navigation_open: bool = False, panel_open: bool = False) -> Optional[str]:
    """Message for the toast, or None while the navigation overlays it."""
    if navigation_open or panel_open or not state.notifications:
        return None
    return state.notifications[0].message or None
