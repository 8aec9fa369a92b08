"""
Presence policy on top of the registry and the join-event log.

Every call is independent: no locks, no session affinity. New-visitor
detection is a pre-check followed by an upsert, so two requests for the
same brand-new id can both see it as new; clients dedupe by timestamp
watermark.
"""
from __future__ import annotations
import logging
import random
from typing import Callable, List, Optional

from .config import EVENT_LIMIT, EVENT_WINDOW_MS, TRIM_PROBABILITY, now_ms
from .event_log import JoinEventLog
from .events import RegisterResult, VisitorEvent, VISITOR_JOINED
from .registry import SessionRegistry
from .store import SortedSetStore

logger = logging.getLogger(__name__)


class PresenceService:
    def __init__(
        self,
        store: SortedSetStore,
        clock: Callable[[], int] = now_ms,
        rng: Callable[[], float] = random.random,
        trim_probability: float = TRIM_PROBABILITY,
    ):
        self.registry = SessionRegistry(store)
        self.log = JoinEventLog(store)
        self.clock = clock
        self.rng = rng
        self.trim_probability = trim_probability

    def _touch(self, session_id: str, now: int) -> None:
        self.registry.upsert(session_id, now)
        # a small share of calls sweeps the registry
        if self.rng() < self.trim_probability:
            removed = self.registry.trim_expired(now)
            if removed:
                logger.debug("trimmed %d expired sessions", removed)

    def register(self, session_id: str, include_count: bool = False) -> RegisterResult:
        now = self.clock()
        is_new = self.registry.was_absent(session_id)
        self._touch(session_id, now)

        count: Optional[int] = None
        if include_count:
            count = self.registry.count_active(now)

        if is_new:
            if count is None:
                count = self.registry.count_active(now)
            self.log.append(VisitorEvent(type=VISITOR_JOINED, count=count, timestamp=now))
            self.log.trim_expired(now, EVENT_WINDOW_MS)
            logger.debug("visitor %s joined (active=%d)", session_id, count)

        return RegisterResult(is_new=is_new, count=count)

    def heartbeat(self, session_id: str, include_count: bool = False) -> RegisterResult:
        now = self.clock()
        self._touch(session_id, now)
        count = self.registry.count_active(now) if include_count else None
        return RegisterResult(is_new=False, count=count)

    def count(self) -> int:
        return self.registry.count_active(self.clock())

    def events(self) -> List[VisitorEvent]:
        return self.log.recent(self.clock(), EVENT_WINDOW_MS, EVENT_LIMIT)

    def trim(self) -> dict:
        """Drop expired sessions and events now; used by the maintenance worker."""
        now = self.clock()
        return {
            "sessions": self.registry.trim_expired(now),
            "events": self.log.trim_expired(now, EVENT_WINDOW_MS),
        }
