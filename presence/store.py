"""
Sorted-set backing store shared by every service replica.

Score = epoch milliseconds. The registry and the event log only need:
add-or-update with score, score lookup, count in range, remove below a
cutoff, and the top N members by score. Any Redis-compatible ZSET covers
that; ``MemoryStore`` is the single-process stand-in for local runs and
tests.
"""
from __future__ import annotations
import bisect
import logging
import math
import threading
from typing import Dict, List, Optional, Tuple

import redis

from .config import Settings, load_settings
from .errors import ConfigurationError, StoreUnavailable

logger = logging.getLogger(__name__)


class SortedSetStore:
    def add(self, key: str, member: str, score: float) -> None:
        raise NotImplementedError

    def score(self, key: str, member: str) -> Optional[float]:
        raise NotImplementedError

    def count(self, key: str, lo: float, hi: float) -> int:
        """Members with lo <= score <= hi."""
        raise NotImplementedError

    def remove_below(self, key: str, cutoff: float) -> int:
        """Remove members with score < cutoff; returns how many went."""
        raise NotImplementedError

    def top(self, key: str, n: int) -> List[Tuple[str, float]]:
        """Highest-scored n members, highest first."""
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class RedisStore(SortedSetStore):
    """redis-py client; every RedisError surfaces as StoreUnavailable."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> "RedisStore":
        try:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        except ValueError as e:
            raise ConfigurationError(f"Failed to initialize Redis client: {e}") from e
        return cls(client)

    def _call(self, op: str, *args, **kwargs):
        try:
            return getattr(self._client, op)(*args, **kwargs)
        except redis.exceptions.RedisError as e:
            logger.error("redis %s failed: %s", op, e)
            raise StoreUnavailable(str(e)) from e

    def add(self, key, member, score):
        self._call("zadd", key, {member: score})

    def score(self, key, member):
        return self._call("zscore", key, member)

    def count(self, key, lo, hi):
        return int(self._call("zcount", key, lo, hi) or 0)

    def remove_below(self, key, cutoff):
        # "(" makes the upper bound exclusive
        return int(self._call("zremrangebyscore", key, "-inf", f"({cutoff}") or 0)

    def top(self, key, n):
        rows = self._call("zrevrange", key, 0, n - 1, withscores=True) or []
        return [(member, float(score)) for member, score in rows]

    def ping(self):
        try:
            return bool(self._client.ping())
        except redis.exceptions.RedisError:
            return False


class MemoryStore(SortedSetStore):
    """In-process sorted sets: a score index kept sorted next to a member map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._scores: Dict[str, Dict[str, float]] = {}
        self._index: Dict[str, List[Tuple[float, str]]] = {}

    def add(self, key, member, score):
        with self._lock:
            scores = self._scores.setdefault(key, {})
            index = self._index.setdefault(key, [])
            old = scores.get(member)
            if old is not None:
                index.pop(bisect.bisect_left(index, (old, member)))
            scores[member] = score
            bisect.insort(index, (score, member))

    def score(self, key, member):
        with self._lock:
            return self._scores.get(key, {}).get(member)

    def count(self, key, lo, hi):
        with self._lock:
            index = self._index.get(key, [])
            start = bisect.bisect_left(index, (lo,))
            end = bisect.bisect_left(index, (math.nextafter(hi, math.inf),))
            return max(0, end - start)

    def remove_below(self, key, cutoff):
        with self._lock:
            index = self._index.get(key, [])
            end = bisect.bisect_left(index, (cutoff,))
            if not end:
                return 0
            scores = self._scores[key]
            for _, member in index[:end]:
                del scores[member]
            del index[:end]
            return end

    def top(self, key, n):
        with self._lock:
            index = self._index.get(key, [])
            return [(member, score) for score, member in reversed(index[-n:])] if n > 0 else []

    def ping(self):
        return True


_memory_store: Optional[MemoryStore] = None
_redis_stores: Dict[str, RedisStore] = {}
_init_lock = threading.Lock()


def get_store(settings: Optional[Settings] = None) -> SortedSetStore:
    """Lazily build (and cache) the store the settings point at."""
    global _memory_store
    settings = settings or load_settings()
    with _init_lock:
        if settings.store == "memory":
            if _memory_store is None:
                _memory_store = MemoryStore()
            return _memory_store
        if not settings.redis_url:
            raise ConfigurationError(
                "Redis is not configured. Set REDIS_URL (or UPSTASH_REDIS_URL) to a redis:// or rediss:// URL."
            )
        store = _redis_stores.get(settings.redis_url)
        if store is None:
            store = RedisStore.from_url(settings.redis_url)
            _redis_stores[settings.redis_url] = store
        return store


def reset_stores() -> None:
    global _memory_store
    with _init_lock:
        _memory_store = None
        _redis_stores.clear()
