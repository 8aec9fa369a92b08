from __future__ import annotations
from typing import Any, Dict, List, Tuple

from ..config import GROUP_WINDOW_MS
from ..events import Notification, VISITOR_JOINED


def _valid(event: Any) -> bool:
    if not isinstance(event, dict):
        return False
    ts = event.get("timestamp")
    return isinstance(ts, (int, float)) and not isinstance(ts, bool)


def select_new(events: List[Any], watermark: float) -> Tuple[List[Dict], float]:
    """
    Events strictly newer than the watermark, plus the raised watermark.

    The watermark moves to the newest timestamp seen whatever the event
    type, so nothing behind it is processed twice.
    """
    fresh = [ev for ev in events if _valid(ev) and ev["timestamp"] > watermark]
    highest = max([watermark] + [ev["timestamp"] for ev in fresh])
    return fresh, highest


def group_join_events(events: List[Dict], window_ms: int = GROUP_WINDOW_MS) -> List[List[Dict]]:
    """Newest-first groups; an event within window_ms of its group's first event joins it."""
    joins = sorted(
        (ev for ev in events if ev.get("type") == VISITOR_JOINED),
        key=lambda ev: ev["timestamp"],
        reverse=True,
    )
    groups: List[List[Dict]] = []
    for ev in joins:
        if groups and abs(groups[-1][0]["timestamp"] - ev["timestamp"]) <= window_ms:
            groups[-1].append(ev)
        else:
            groups.append([ev])
    return groups


def format_message(n: int) -> str:
    return "+1 user" if n == 1 else f"+{n} users"


def to_notification(group: List[Dict]) -> Notification:
    latest = group[0]
    return Notification(
        type=VISITOR_JOINED,
        message=format_message(len(group)),
        # older servers may omit count; fall back to the group size
        count=int(latest.get("count") or len(group)),
        timestamp=int(latest["timestamp"]),
    )
