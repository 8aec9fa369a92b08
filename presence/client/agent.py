"""
Per-tab presence agent.

One agent per open tab, driven by a single asyncio event loop: it
registers once, heartbeats every two minutes while the tab is visible,
and polls the join-event log with an interval that backs off while
nothing happens and snaps back on activity. Failures are swallowed; the
next timer tick is the retry.

    state = VisitorCountState()
    async with httpx.AsyncClient(base_url=api_url, timeout=5.0) as http:
        agent = PresenceAgent(http, state, storage=tab_storage)
        await agent.mount()
        ...
        agent.set_visible(False)
        ...
        agent.unmount()
"""
from __future__ import annotations
import asyncio
import enum
import logging
import random
import string
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, MutableMapping, Optional, Set

import httpx

from ..config import (
    BURST_REPOLL_MS,
    GROUP_WINDOW_MS,
    HEARTBEAT_INTERVAL_MS,
    HEARTBEAT_POLL_DELAY_MS,
    POLL_BACKOFF_FACTOR,
    POLL_INITIAL_MS,
    POLL_MAX_MS,
    REGISTER_POLL_DELAY_MS,
    SESSION_STORAGE_KEY,
    now_ms,
)
from .grouping import group_join_events, select_new, to_notification
from .state import VisitorCountState

logger = logging.getLogger(__name__)

_ALPHABET = string.digits + string.ascii_lowercase


def new_session_id(now: int) -> str:
    suffix = "".join(random.choice(_ALPHABET) for _ in range(13))
    return f"visitor_{now}_{suffix}"


class AgentStatus(enum.Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    UNMOUNTED = "unmounted"


@dataclass
class PollState:
    """Backoff interval, event watermark and in-flight flag for one tab."""

    interval_ms: float = POLL_INITIAL_MS
    watermark: float = 0
    in_flight: bool = False

    def raise_watermark(self, ts: float) -> None:
        # only ever forward
        if ts > self.watermark:
            self.watermark = ts

    def on_activity(self) -> None:
        self.interval_ms = POLL_INITIAL_MS

    def on_idle(self) -> None:
        self.interval_ms = min(self.interval_ms * POLL_BACKOFF_FACTOR, POLL_MAX_MS)


class PresenceAgent:
    def __init__(
        self,
        client: httpx.AsyncClient,
        state: VisitorCountState,
        storage: Optional[MutableMapping[str, str]] = None,
        clock: Callable[[], int] = now_ms,
        visible: bool = True,
        group_window_ms: int = GROUP_WINDOW_MS,
    ):
        self.client = client
        self.state = state
        self.storage = storage if storage is not None else {}
        self.clock = clock
        self.visible = visible
        self.group_window_ms = group_window_ms
        self.status = AgentStatus.UNREGISTERED
        self.poll = PollState()
        self._session_id: Optional[str] = None
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ---------- session ----------

    @property
    def session_id(self) -> str:
        if self._session_id is None:
            stored = self.storage.get(SESSION_STORAGE_KEY)
            if not stored:
                stored = new_session_id(self.clock())
                self.storage[SESSION_STORAGE_KEY] = stored
            self._session_id = stored
        return self._session_id

    @property
    def registered(self) -> bool:
        return self.status is AgentStatus.REGISTERED

    # ---------- lifecycle ----------

    async def mount(self) -> None:
        self.poll.watermark = self.clock()
        await self.register()
        self._schedule("heartbeat", HEARTBEAT_INTERVAL_MS, self._heartbeat_tick)
        self._schedule("poll", self.poll.interval_ms, self._poll_tick)

    def unmount(self) -> None:
        # no unregister call: the server lets the session expire
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.status = AgentStatus.UNMOUNTED

    def set_visible(self, visible: bool) -> None:
        was_visible = self.visible
        self.visible = visible
        if visible and not was_visible and self.registered:
            # catch up right away instead of waiting for the next tick
            self._spawn(self.heartbeat())
            self._spawn(self.poll_events())

    # ---------- requests ----------

    async def _post(self, action: str, include_count: bool) -> Optional[dict]:
        try:
            resp = await self.client.post(
                "/visitors",
                json={"sessionId": self.session_id, "action": action, "includeCount": include_count},
            )
            if resp.status_code != 200:
                logger.debug("%s rejected: %s", action, resp.status_code)
                return None
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("%s failed: %s", action, e)
            return None

    async def register(self) -> bool:
        data = await self._post("register", include_count=True)
        if data is None or self.status is AgentStatus.UNMOUNTED:
            return False
        self.state.update_visitor_count(data.get("count"))
        self.status = AgentStatus.REGISTERED
        # start from our own arrival, not the oldest event the server still holds
        self.poll.watermark = self.clock()
        self._schedule("catchup", REGISTER_POLL_DELAY_MS, self.poll_events)
        return True

    async def heartbeat(self) -> bool:
        data = await self._post("heartbeat", include_count=False)
        return data is not None

    async def fetch_visitor_count(self) -> Optional[int]:
        """On-demand count refresh, e.g. when the live indicator is hovered."""
        try:
            resp = await self.client.get("/visitors")
            if resp.status_code != 200:
                return None
            count = resp.json().get("count")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.debug("count fetch failed: %s", e)
            return None
        return count if self.state.update_visitor_count(count) else None

    async def poll_events(self) -> int:
        """One poll of the event log. Returns how many notifications were emitted."""
        if not self.visible or self.poll.in_flight or self.status is AgentStatus.UNMOUNTED:
            return 0
        self.poll.in_flight = True
        try:
            resp = await self.client.get("/visitors/events")
            if resp.status_code != 200:
                return 0
            events = resp.json().get("events") or []
            if not isinstance(events, list):
                return 0

            fresh, highest = select_new(events, self.poll.watermark)
            self.poll.raise_watermark(highest)

            emitted = 0
            # oldest group first so the newest notification ends up on top
            for group in reversed(group_join_events(fresh, self.group_window_ms)):
                if self.state.add_notification(to_notification(group)):
                    emitted += 1

            if fresh:
                self.poll.on_activity()
                # a burst may still be landing
                self._schedule("burst", BURST_REPOLL_MS, self.poll_events)
            else:
                self.poll.on_idle()
            return emitted
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.debug("event poll failed: %s", e)
            return 0
        finally:
            self.poll.in_flight = False

    # ---------- timers ----------

    async def _heartbeat_tick(self) -> None:
        self._schedule("heartbeat", HEARTBEAT_INTERVAL_MS, self._heartbeat_tick)
        if not self.visible:
            return
        if not self.registered:
            await self.register()
            return
        await self.heartbeat()
        self._schedule("catchup", HEARTBEAT_POLL_DELAY_MS, self.poll_events)

    async def _poll_tick(self) -> None:
        if self.visible and self.registered:
            await self.poll_events()
        if self.status is not AgentStatus.UNMOUNTED:
            self._schedule("poll", self.poll.interval_ms, self._poll_tick)

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule(self, name: str, delay_ms: float, fn: Callable[[], Awaitable]) -> None:
        if self.status is AgentStatus.UNMOUNTED:
            return
        old = self._timers.pop(name, None)
        if old is not None:
            old.cancel()
        loop = asyncio.get_running_loop()
        self._timers[name] = loop.call_later(delay_ms / 1000.0, lambda: self._spawn(fn()))
