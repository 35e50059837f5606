"""
Shared fixtures: a fresh SQLite database per test, accounts, API clients and a
deterministic clock for debounce timing.
"""

import os
import tempfile

import httpx
import pytest

# Point the service at a throwaway database before any portfolio module is imported
os.environ['DB_PATH'] = tempfile.mkstemp(suffix='.db')[1]

from fastapi.testclient import TestClient

from portfolio.api.main import app
from portfolio.core.auth import create_user
from portfolio.core.db import init_db

OWNER_PASSWORD = "owner-password"
GUEST_PASSWORD = "visitor-password"


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Each test gets its own database file."""
    db_path = tmp_path / "portfolio.db"
    monkeypatch.setenv('DB_PATH', str(db_path))
    init_db()
    yield db_path


@pytest.fixture
def owner():
    return create_user("designer", OWNER_PASSWORD, role="owner")


@pytest.fixture
def guest_user():
    return create_user("visitor", GUEST_PASSWORD, role="guest")


@pytest.fixture
def api_client():
    return TestClient(app)


@pytest.fixture
def owner_headers(api_client, owner):
    response = api_client.post("/auth/login", json={"username": "designer", "password": OWNER_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def guest_headers(api_client, guest_user):
    response = api_client.post("/auth/login", json={"username": "visitor", "password": GUEST_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def asgi_http():
    """Factory for async httpx clients wired straight into the app."""
    def make():
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    return make


class FakeTimer:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeClock:
    """Stands in for the event loop's call_later; time moves only on advance()."""

    def __init__(self):
        self.now = 0.0
        self._timers = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(self.now + delay, callback, args)
        self._timers.append(timer)
        return timer

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.now = max(self.now, timer.when)
            timer.callback(*timer.args)
        self.now = target

    @property
    def active_timers(self):
        return [t for t in self._timers if not t.cancelled]


@pytest.fixture
def clock():
    return FakeClock()
