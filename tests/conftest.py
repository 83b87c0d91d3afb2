"""
Pytest fixtures and test configuration for viking_sync tests.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from viking_sync.api import ApiGovernor, HttpTransport, OsmClient
from viking_sync.config import Settings
from viking_sync.context import create_app_context
from viking_sync.events import EventBus
from viking_sync.storage import KeyedObjectStore, SQLiteStore

API_URL = "https://api.example.test"
FIXED_NOW = "2024-07-01T12:00:00+00:00"


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class MockApi:
    """Routes upstream paths to canned responses and records every call.

    Routes map a path to a body, a ``(status, body)`` tuple, a list of
    those (consumed in order, last one repeats), or a callable taking the
    ``httpx.Request``.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.routes: Dict[str, Any] = {}
        self.calls: List[httpx.Request] = []
        self.call_times: List[float] = []
        self.clock = clock

    def route(self, path: str, response: Any) -> None:
        self.routes[path] = response

    def paths(self) -> List[str]:
        return [r.url.path for r in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.clock is not None:
            self.call_times.append(self.clock())
        spec = self.routes.get(request.url.path)
        if isinstance(spec, list):
            spec = spec.pop(0) if len(spec) > 1 else spec[0]
        if callable(spec):
            spec = spec(request)
        if isinstance(spec, httpx.Response):
            return spec
        if spec is None:
            return httpx.Response(404, json={"error": "not found"})
        status, body = spec if isinstance(spec, tuple) else (200, spec)
        return httpx.Response(status, content=json.dumps(body).encode(), headers={"content-type": "application/json"})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        api_url=API_URL,
        oauth_client_id="client-123",
        frontend_url="http://localhost:3000",
        data_dir=tmp_path,
    )


@pytest.fixture
def demo_settings(tmp_path):
    return Settings(_env_file=None, api_url=API_URL, demo_mode=True, data_dir=tmp_path)


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteStore(tmp_path / "app_store.db", now_fn=lambda: FIXED_NOW)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def keyed_store(tmp_path):
    store = KeyedObjectStore(tmp_path / "app_store.json", now_fn=lambda: FIXED_NOW)
    store.initialize()
    yield store
    store.close()


@pytest.fixture(params=["sqlite", "keyed"])
def store(request, tmp_path):
    """Each backend in turn; both must honour the same contract."""
    if request.param == "sqlite":
        instance = SQLiteStore(tmp_path / "app_store.db", now_fn=lambda: FIXED_NOW)
    else:
        instance = KeyedObjectStore(tmp_path / "app_store.json", now_fn=lambda: FIXED_NOW)
    instance.initialize()
    yield instance
    instance.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def published(bus):
    """Every event published on the bus, in order."""
    seen: List[Any] = []
    bus.subscribe(None, seen.append)
    return seen


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_api(clock):
    return MockApi(clock)


@pytest.fixture
def make_governor(mock_api, clock, bus):
    """Factory for a governor in front of ``mock_api`` with a fake clock."""

    def factory(token_provider: Optional[Callable[[], Optional[str]]] = None, **kwargs: Any) -> ApiGovernor:
        http = httpx.AsyncClient(transport=httpx.MockTransport(mock_api.handler))
        transport = HttpTransport(API_URL, token_provider=token_provider or (lambda: "token-abc"), client=http)
        options = {"clock": clock, "sleep": clock.sleep, "rng": lambda: 0.5, "bus": bus}
        options.update(kwargs)
        return ApiGovernor(transport, **options)

    return factory


@pytest.fixture
def client(make_governor):
    return OsmClient(make_governor())


@pytest.fixture
def app(settings, sqlite_store, mock_api, clock):
    """Fully wired context over ``mock_api``; not logged in."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(mock_api.handler))
    return create_app_context(
        settings,
        store=sqlite_store,
        http_client=http,
        clock=clock,
        sleep=clock.sleep,
        rng=lambda: 0.5,
    )


@pytest.fixture
def logged_in_app(app):
    app.auth.complete_login("token-abc")
    return app
