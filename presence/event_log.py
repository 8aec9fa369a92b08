from __future__ import annotations
import json
import logging
from typing import List

from pydantic import ValidationError

from .config import EVENT_LIMIT, EVENT_WINDOW_MS, EVENTS_KEY
from .events import VisitorEvent
from .store import SortedSetStore

logger = logging.getLogger(__name__)


class JoinEventLog:
    """Join events as a sorted set: member = event JSON, score = event timestamp."""

    def __init__(self, store: SortedSetStore, key: str = EVENTS_KEY):
        self.store = store
        self.key = key

    def append(self, event: VisitorEvent) -> None:
        self.store.add(self.key, event.model_dump_json(), event.timestamp)

    def recent(self, now: int, max_age_ms: int = EVENT_WINDOW_MS, limit: int = EVENT_LIMIT) -> List[VisitorEvent]:
        """Newest first, at most `limit`, none older than now - max_age_ms."""
        cutoff = now - max_age_ms
        out = []
        for member, score in self.store.top(self.key, limit):
            if score < cutoff:
                # newest first: everything after this is older still
                break
            if score > now:
                continue
            try:
                out.append(VisitorEvent.model_validate(json.loads(member)))
            except (ValueError, ValidationError) as e:
                logger.debug("skipping undecodable event %r: %s", member, e)
        return out

    def trim_expired(self, now: int, max_age_ms: int = EVENT_WINDOW_MS) -> int:
        return self.store.remove_below(self.key, now - max_age_ms)
