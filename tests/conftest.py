import pytest

from presence import app as app_module
from presence.service import PresenceService
from presence.store import MemoryStore


class FakeClock:
    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, clock):
    # never trim on the request path unless a test asks for it
    return PresenceService(store, clock=clock, rng=lambda: 1.0)


@pytest.fixture
def wired_app(monkeypatch, service):
    monkeypatch.setattr(app_module, "get_service", lambda: service)
    return app_module.app
