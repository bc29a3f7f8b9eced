"""Shared test doubles: fake clocks, fake backends, fake websocket transports."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from carelink.config import SelectorConfig, StreamConfig
from carelink.services.backend_selector import BackendSelector

ORIGIN = "http://dash.test"

_CLOSE = object()


class FakeMonotonicClock:
    """Stand-in for time.monotonic that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Stand-in for datetime.now(UTC)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeBackends:
    """
    httpx MockTransport handler serving the descriptor and health endpoints.

    `health` maps a host to a status code, an exception type, or a
    `(delay_seconds, status)` tuple for slow backends.
    """

    def __init__(self, descriptor: dict[str, Any] | int | str) -> None:
        self.descriptor = descriptor
        self.health: dict[str, Any] = {}
        self.descriptor_fetches = 0
        self.probes: list[str] = []
        self.requests: list[httpx.Request] = []
        self.api_handler: Callable[[httpx.Request], httpx.Response] | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/backend-config.json":
            self.descriptor_fetches += 1
            await asyncio.sleep(0.01)
            if isinstance(self.descriptor, int):
                return httpx.Response(self.descriptor)
            if isinstance(self.descriptor, str):
                return httpx.Response(200, text=self.descriptor)
            return httpx.Response(200, json=self.descriptor)

        if request.url.path.endswith("/health"):
            host = request.url.host
            self.probes.append(host)
            outcome = self.health.get(host, 200)
            if isinstance(outcome, tuple):
                delay, outcome = outcome
                await asyncio.sleep(delay)
            if isinstance(outcome, type) and issubclass(outcome, Exception):
                raise outcome("backend unreachable", request=request)
            return httpx.Response(outcome)

        if self.api_handler is not None:
            return self.api_handler(request)
        return httpx.Response(404, json={"success": False, "message": "not found"})


def descriptor_for(*backends: dict[str, Any], auto_select: bool = True) -> dict[str, Any]:
    return {
        "backends": list(backends),
        "healthCheckEndpoint": "/health",
        "healthCheckTimeout": 200,
        "autoSelect": auto_select,
    }


def backend(name: str, priority: int, *, enabled: bool = True) -> dict[str, Any]:
    return {
        "name": name,
        "apiUrl": f"http://{name}.test",
        "wsUrl": f"ws://{name}.test",
        "priority": priority,
        "enabled": enabled,
    }


class FakeTransport:
    """In-memory websocket: frames are fed by the test, close ends iteration."""

    def __init__(self, url: str, headers: Mapping[str, str]) -> None:
        self.url = url
        self.headers = dict(headers)
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("transport closed")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    def feed(self, frame: str | bytes) -> None:
        self._inbox.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the server or network going away."""
        self._inbox.put_nowait(_CLOSE)

    def __aiter__(self) -> FakeTransport:
        return self

    async def __anext__(self) -> str | bytes:
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class FakeConnector:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.urls: list[str] = []
        self.failures_remaining = 0
        self.always_fail = False
        # when set, handshakes stay in flight until the event fires
        self.gate: asyncio.Event | None = None

    async def __call__(self, url: str, headers: Mapping[str, str]) -> FakeTransport:
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail or self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ConnectionRefusedError("connection refused")
        transport = FakeTransport(url, headers)
        self.transports.append(transport)
        return transport


class RecordingSleep:
    """Records reconnect delays; returns immediately unless blocked."""

    def __init__(self, block: bool = False) -> None:
        self.delays: list[float] = []
        self.block = block
        self._never = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.block:
            await self._never.wait()
        await asyncio.sleep(0)


class StubSelector:
    """Selector double exposing just what a stream session calls."""

    def __init__(self, ws_url: str = "ws://backend.test", *, unavailable: bool = False) -> None:
        self.ws_url = ws_url
        self.unavailable = unavailable
        self.cache_clears = 0
        self.ws_lookups = 0

    async def get_ws_url(self) -> str:
        from carelink.errors import NoBackendAvailableError

        self.ws_lookups += 1
        if self.unavailable:
            raise NoBackendAvailableError()
        return self.ws_url

    def default_ws_base_url(self) -> str:
        return "ws://dash.test"

    def clear_health_cache(self) -> None:
        self.cache_clears += 1


async def settle(rounds: int = 200) -> None:
    """Let scheduled tasks (readers, reconnects) run to quiescence."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def monotonic_clock() -> FakeMonotonicClock:
    return FakeMonotonicClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def selector_config() -> SelectorConfig:
    return SelectorConfig(origin=ORIGIN, health_cache_ttl_seconds=60.0)


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(
        reconnect_base_seconds=1.0,
        reconnect_cap_seconds=30.0,
        max_reconnect_attempts=5,
        ping_interval_seconds=None,
    )


@pytest.fixture
def make_selector(
    selector_config: SelectorConfig, monotonic_clock: FakeMonotonicClock
) -> Callable[[FakeBackends], tuple[BackendSelector, httpx.AsyncClient]]:
    def _make(backends: FakeBackends) -> tuple[BackendSelector, httpx.AsyncClient]:
        http = httpx.AsyncClient(transport=httpx.MockTransport(backends))
        selector = BackendSelector(selector_config, http_client=http, clock=monotonic_clock)
        return selector, http

    return _make


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
