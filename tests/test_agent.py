import asyncio
import json

import httpx

from presence import app as app_module
from presence.client.agent import AgentStatus, PollState, PresenceAgent
from presence.client.state import VisitorCountState
from presence.config import POLL_INITIAL_MS, POLL_MAX_MS, SESSION_STORAGE_KEY
from presence.errors import StoreUnavailable


def asgi_client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://presence.test")


def recording_client(seen, events=None):
    def handler(request):
        body = json.loads(request.content) if request.content else None
        seen.append((request.method, request.url.path, body))
        if request.url.path == "/visitors/events":
            return httpx.Response(200, json={"events": events or []})
        if request.url.path == "/visitors" and request.method == "GET":
            return httpx.Response(200, json={"count": 7})
        return httpx.Response(
            200, json={"success": True, "action": body["action"], "isNewVisitor": False, "count": 1}
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://presence.test")


class TestPollState:
    def test_backoff_grows_and_caps(self):
        p = PollState()
        p.on_idle()
        assert p.interval_ms == POLL_INITIAL_MS * 1.5
        for _ in range(20):
            p.on_idle()
        assert p.interval_ms == POLL_MAX_MS
        p.on_activity()
        assert p.interval_ms == POLL_INITIAL_MS

    def test_watermark_only_forward(self):
        p = PollState(watermark=100)
        p.raise_watermark(50)
        assert p.watermark == 100
        p.raise_watermark(150)
        assert p.watermark == 150


class TestLifecycle:
    def test_mount_registers_and_schedules(self, wired_app, clock):
        async def scenario():
            storage = {}
            state = VisitorCountState(clock=clock)
            async with asgi_client(wired_app) as http:
                agent = PresenceAgent(http, state, storage=storage, clock=clock)
                await agent.mount()
                try:
                    assert agent.status is AgentStatus.REGISTERED
                    assert storage[SESSION_STORAGE_KEY] == agent.session_id
                    assert agent.session_id.startswith(f"visitor_{clock()}_")
                    assert state.visitor_count == 1
                    assert agent.poll.watermark == clock()
                    assert {"heartbeat", "poll", "catchup"} <= set(agent._timers)
                finally:
                    agent.unmount()
                assert agent._timers == {}
                assert agent.status is AgentStatus.UNMOUNTED

        asyncio.run(scenario())

    def test_session_id_reused_across_navigation(self, clock):
        storage = {SESSION_STORAGE_KEY: "visitor_1_abc"}
        agent = PresenceAgent(None, VisitorCountState(), storage=storage, clock=clock)
        assert agent.session_id == "visitor_1_abc"

    def test_visible_again_catches_up(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState())
                await agent.mount()
                try:
                    agent.set_visible(False)
                    seen.clear()
                    agent.set_visible(True)
                    await asyncio.sleep(0.05)
                finally:
                    agent.unmount()
            actions = [(m, p, b["action"] if b else None) for m, p, b in seen]
            assert ("POST", "/visitors", "heartbeat") in actions
            assert ("GET", "/visitors/events", None) in actions
            heartbeat = next(b for m, p, b in seen if b and b["action"] == "heartbeat")
            assert heartbeat["includeCount"] is False

        asyncio.run(scenario())

    def test_fetch_visitor_count(self):
        async def scenario():
            seen = []
            state = VisitorCountState()
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, state)
                assert await agent.fetch_visitor_count() == 7
            assert state.visitor_count == 7

        asyncio.run(scenario())


class TestPolling:
    def test_burst_of_five_is_one_notification(self, wired_app, service, clock):
        async def scenario():
            state = VisitorCountState(clock=clock)
            async with asgi_client(wired_app) as http:
                agent = PresenceAgent(http, state, clock=clock)
                await agent.mount()
                try:
                    agent._timers.pop("catchup").cancel()
                    for i in range(5):
                        clock.advance(60)
                        service.register(f"other-{i}")
                    emitted = await agent.poll_events()
                    assert emitted == 1
                    assert [n.message for n in state.notifications] == ["+5 users"]
                    assert state.notifications[0].count == 6
                    assert agent.poll.watermark == clock()
                    assert agent.poll.interval_ms == POLL_INITIAL_MS
                    assert "burst" in agent._timers

                    # same events come back: nothing new, backoff grows
                    assert await agent.poll_events() == 0
                    assert len(state.notifications) == 1
                    assert agent.poll.interval_ms == POLL_INITIAL_MS * 1.5
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_events_before_arrival_are_ignored(self, wired_app, service, clock):
        async def scenario():
            service.register("early")
            clock.advance(1000)
            state = VisitorCountState(clock=clock)
            async with asgi_client(wired_app) as http:
                agent = PresenceAgent(http, state, clock=clock)
                await agent.mount()
                try:
                    agent._timers.pop("catchup").cancel()
                    assert await agent.poll_events() == 0
                    assert state.notifications == []
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_separate_bursts(self, wired_app, service, clock):
        async def scenario():
            state = VisitorCountState(clock=clock)
            async with asgi_client(wired_app) as http:
                agent = PresenceAgent(http, state, clock=clock)
                await agent.mount()
                try:
                    agent._timers.pop("catchup").cancel()
                    clock.advance(100)
                    service.register("a")
                    clock.advance(5000)
                    service.register("b")
                    clock.advance(500)
                    service.register("c")
                    assert await agent.poll_events() == 2
                    assert [n.message for n in state.notifications] == ["+2 users", "+1 user"]
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_hidden_tab_does_not_poll(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState(), visible=False)
                assert await agent.poll_events() == 0
            assert seen == []

        asyncio.run(scenario())

    def test_no_overlapping_polls(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState())
                agent.poll.in_flight = True
                assert await agent.poll_events() == 0
            assert seen == []

        asyncio.run(scenario())

    def test_malformed_response_is_swallowed(self):
        async def scenario():
            def handler(request):
                return httpx.Response(200, content=b"not json")

            http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://presence.test")
            async with http:
                agent = PresenceAgent(http, VisitorCountState())
                assert await agent.poll_events() == 0
                assert agent.poll.in_flight is False

        asyncio.run(scenario())


class TestFailures:
    def test_register_failure_is_silent(self, monkeypatch, clock):
        def down():
            raise StoreUnavailable("down")

        monkeypatch.setattr(app_module, "get_service", down)

        async def scenario():
            state = VisitorCountState(clock=clock)
            async with asgi_client(app_module.app) as http:
                agent = PresenceAgent(http, state, clock=clock)
                await agent.mount()
                try:
                    assert agent.status is AgentStatus.UNREGISTERED
                    assert state.visitor_count is None
                    assert await agent.poll_events() == 0
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_network_error_is_silent(self):
        async def scenario():
            def handler(request):
                raise httpx.ConnectError("refused", request=request)

            http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://presence.test")
            async with http:
                agent = PresenceAgent(http, VisitorCountState())
                assert await agent.register() is False
                assert await agent.heartbeat() is False
                assert await agent.fetch_visitor_count() is None
                assert await agent.poll_events() == 0

        asyncio.run(scenario())


def delay_s(handle):
    return handle.when() - asyncio.get_running_loop().time()


class TestFractionalTimestamps:
    def test_float_timestamp_processed_once(self):
        async def scenario():
            seen = []
            events = [{"type": "visitor_joined", "count": 2, "timestamp": 1000.5}]
            state = VisitorCountState()
            async with recording_client(seen, events=events) as http:
                agent = PresenceAgent(http, state)
                agent.status = AgentStatus.REGISTERED
                agent.poll.watermark = 1000
                try:
                    assert await agent.poll_events() == 1
                    assert agent.poll.watermark == 1000.5
                    agent._timers.pop("burst").cancel()

                    assert await agent.poll_events() == 0
                    assert await agent.poll_events() == 0
                    assert agent.poll.watermark == 1000.5
                    assert agent.poll.interval_ms == POLL_INITIAL_MS * 1.5 * 1.5
                    assert "burst" not in agent._timers
                    assert len(state.notifications) == 1
                finally:
                    agent.unmount()

        asyncio.run(scenario())


class TestTimerTicks:
    def test_heartbeat_tick_sends_heartbeat_then_polls(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState())
                agent.status = AgentStatus.REGISTERED
                try:
                    await agent._heartbeat_tick()
                    assert seen == [
                        ("POST", "/visitors", {"sessionId": agent.session_id, "action": "heartbeat", "includeCount": False})
                    ]
                    assert abs(delay_s(agent._timers["heartbeat"]) - 120.0) < 1.0
                    assert abs(delay_s(agent._timers["catchup"]) - 0.5) < 0.25
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_heartbeat_tick_skipped_while_hidden(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState(), visible=False)
                agent.status = AgentStatus.REGISTERED
                try:
                    await agent._heartbeat_tick()
                    assert seen == []
                    assert "heartbeat" in agent._timers
                    assert "catchup" not in agent._timers
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_heartbeat_tick_retries_registration(self):
        async def scenario():
            seen = []
            state = VisitorCountState()
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, state)
                try:
                    await agent._heartbeat_tick()
                    assert [b["action"] for _, _, b in seen] == ["register"]
                    assert seen[0][2]["includeCount"] is True
                    assert agent.status is AgentStatus.REGISTERED
                    assert state.visitor_count == 1
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_poll_tick_reschedules_at_backoff(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState())
                agent.status = AgentStatus.REGISTERED
                try:
                    await agent._poll_tick()
                    assert [(m, p) for m, p, _ in seen] == [("GET", "/visitors/events")]
                    assert agent.poll.interval_ms == POLL_INITIAL_MS * 1.5
                    assert abs(delay_s(agent._timers["poll"]) - 90.0) < 1.0
                finally:
                    agent.unmount()

        asyncio.run(scenario())

    def test_poll_tick_waits_for_registration(self):
        async def scenario():
            seen = []
            async with recording_client(seen) as http:
                agent = PresenceAgent(http, VisitorCountState())
                try:
                    await agent._poll_tick()
                    assert seen == []
                    assert agent.poll.interval_ms == POLL_INITIAL_MS
                    assert abs(delay_s(agent._timers["poll"]) - 60.0) < 1.0
                finally:
                    agent.unmount()

        asyncio.run(scenario())


class TestClientImports:
    def test_client_modules_do_not_import_server_side(self):
        import ast
        from pathlib import Path

        client_dir = Path(__file__).resolve().parents[1] / "presence" / "client"
        for path in sorted(client_dir.glob("*.py")):
            tree = ast.parse(path.read_text())
            modules = {node.module for node in ast.walk(tree) if isinstance(node, ast.ImportFrom) and node.module}
            assert not modules & {"service", "store", "registry", "event_log", "app"}, path.name
            names = {a.name for node in ast.walk(tree) if isinstance(node, ast.Import) for a in node.names}
            assert "redis" not in names, path.name
