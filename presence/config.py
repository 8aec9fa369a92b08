from __future__ import annotations
import os
import time
from dataclasses import dataclass
from typing import Optional

# ---------- Redis keys ----------
ACTIVE_KEY = "visitor:active"
EVENTS_KEY = "visitor:events"

# ---------- Server policy (ms) ----------
SESSION_TTL_MS = 300_000      # 5 min without heartbeat → inactive
EVENT_WINDOW_MS = 60_000      # join events readable for 60s
EVENT_LIMIT = 10              # max events per poll response
TRIM_PROBABILITY = 0.05       # 5% of register/heartbeat calls trim the registry

# ---------- Client policy (ms) ----------
HEARTBEAT_INTERVAL_MS = 120_000
POLL_INITIAL_MS = 60_000
POLL_BACKOFF_FACTOR = 1.5
POLL_MAX_MS = 300_000
BURST_REPOLL_MS = 2_000
GROUP_WINDOW_MS = 2_000
REGISTER_POLL_DELAY_MS = 1_000
HEARTBEAT_POLL_DELAY_MS = 500
MAX_NOTIFICATIONS = 5

SESSION_STORAGE_KEY = "visitor_session_id"
DEFAULT_API_URL = "http://127.0.0.1:8123"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Settings:
    redis_url: Optional[str]
    store: str = "redis"
    debug: bool = False
    api_url: str = DEFAULT_API_URL


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(env=None) -> Settings:
    env = os.environ if env is None else env
    # redis:// or rediss:// only; the Upstash REST endpoint (https://) is not a Redis URL
    redis_url = env.get("REDIS_URL") or env.get("UPSTASH_REDIS_URL")
    return Settings(
        redis_url=redis_url or None,
        store=(env.get("PRESENCE_STORE") or "redis").strip().lower(),
        debug=_flag(env.get("PRESENCE_DEBUG")),
        api_url=env.get("PRESENCE_API_URL") or DEFAULT_API_URL,
    )
