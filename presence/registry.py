from __future__ import annotations

from .config import ACTIVE_KEY, SESSION_TTL_MS
from .store import SortedSetStore


class SessionRegistry:
    """
    Active tabs as a sorted set: member = session id, score = last activity (ms).

    Entries are never deleted on the request path; they age out of
    count_active() once older than the TTL and are removed later by
    trim_expired().
    """

    def __init__(self, store: SortedSetStore, key: str = ACTIVE_KEY, ttl_ms: int = SESSION_TTL_MS):
        self.store = store
        self.key = key
        self.ttl_ms = ttl_ms

    def cutoff(self, now: int) -> int:
        return now - self.ttl_ms

    def was_absent(self, session_id: str) -> bool:
        return self.store.score(self.key, session_id) is None

    def upsert(self, session_id: str, now: int) -> None:
        self.store.add(self.key, session_id, now)

    def count_active(self, now: int) -> int:
        return self.store.count(self.key, self.cutoff(now), now)

    def trim_expired(self, now: int) -> int:
        return self.store.remove_below(self.key, self.cutoff(now))
