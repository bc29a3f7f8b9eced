"""
End-to-end walkthrough of the connectivity layer against in-process fakes.

This script exercises:
1. Configuration loading and validation
2. Backend discovery, health probing and failover
3. Credential persistence (remember vs session, desktop expiry)
4. The real-time channel, its reconnect schedule and liveness filtering
5. The REST client's envelope handling

No network access is needed: backends are served by an httpx MockTransport
and the websocket is an in-memory queue.

Run with: uv run python demo_system.py
"""

import asyncio
import json
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from carelink.config import (
    AppConfig,
    CredentialConfig,
    SelectorConfig,
    StreamConfig,
    print_config_summary,
    validate_config,
)
from carelink.domain.models import Channel, DeviceClass, StreamMessage
from carelink.errors import ApiError
from carelink.logging_config import configure_logging
from carelink.services.backend_selector import BackendSelector
from carelink.services.connectivity import ConnectivityService
from carelink.services.credential_store import CredentialStore, MemoryStorage
from carelink.services.stream_session import reconnect_delay

console = Console()

DEMO_ORIGIN = "http://dashboard.local"

DESCRIPTOR = {
    "backends": [
        {
            "name": "clinic",
            "apiUrl": "http://clinic.local",
            "wsUrl": "ws://clinic.local",
            "priority": 1,
        },
        {
            "name": "cloud",
            "apiUrl": "https://cloud.example",
            "wsUrl": "wss://cloud.example",
            "priority": 2,
        },
        {"name": "legacy", "apiUrl": "/api", "wsUrl": "", "priority": 3, "enabled": False},
    ],
    "healthCheckEndpoint": "/health",
    "healthCheckTimeout": 500,
    "autoSelect": True,
}


class DemoBackends:
    """Fake deployments; `down` holds hosts whose health endpoint fails."""

    def __init__(self) -> None:
        self.down: set[str] = set()
        self.probes: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/backend-config.json":
            return httpx.Response(200, json=DESCRIPTOR)
        if path.endswith("/health"):
            self.probes.append(request.url.host)
            return httpx.Response(503 if request.url.host in self.down else 200)
        if path.endswith("/elders"):
            return httpx.Response(200, json=[{"id": "e1", "name": "Wu Lan"}])
        if path.endswith("/landing"):
            return httpx.Response(200, text="<!DOCTYPE html><html></html>")
        return httpx.Response(404, json={"success": False, "message": "no such route"})


class DemoSocket:
    """Websocket double replaying a scripted set of frames."""

    def __init__(self, frames: list[str]) -> None:
        self._frames = list(frames)
        self._closed = asyncio.Event()
        self.sent: list[str] = []

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        await asyncio.sleep(0.01)
        if not self._frames:
            # idle until the caller closes the connection
            await self._closed.wait()
        if self._closed.is_set():
            raise StopAsyncIteration
        return self._frames.pop(0)


def demo_config(storage_dir: Path) -> AppConfig:
    return AppConfig(
        selector=SelectorConfig(origin=DEMO_ORIGIN),
        stream=StreamConfig(ping_interval_seconds=None),
        credentials=CredentialConfig(storage_dir=storage_dir),
    )


async def demo_configuration() -> bool:
    """Load configuration from the environment."""

    console.print(Panel("🔧 Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        console.print("✅ Configuration loaded successfully", style="green")
        return True

    except Exception as e:
        console.print(f"❌ Configuration failed: {e}", style="red")
        return False


async def demo_backend_selection() -> bool:
    """Select a backend, then fail over when it goes down."""

    console.print(Panel("🛰️ Backend Selection", style="blue"))

    try:
        backends = DemoBackends()
        async with httpx.AsyncClient(transport=httpx.MockTransport(backends)) as http:
            selector = BackendSelector(SelectorConfig(origin=DEMO_ORIGIN), http_client=http)

            first = await selector.select_backend()
            backends.down.add("clinic.local")
            selector.clear_health_cache()
            second = await selector.select_backend()
            backends.down.add("cloud.example")
            selector.clear_health_cache()
            third = await selector.select_backend()

            table = Table(title="Health Cache")
            table.add_column("Candidate", style="cyan")
            table.add_column("Available", style="green")
            for key, entry in selector.health_snapshot().items():
                table.add_row(key, "yes" if entry.is_available else "no")
            console.print(table)

        console.print(f"Initial choice: {first.name}")
        console.print(f"After clinic outage: {second.name}")
        console.print(f"Everything down (fail-open): {third.name}", style="yellow")
        console.print(f"Probes issued: {len(backends.probes)}")
        return first.name == "clinic" and second.name == "cloud" and third.name == "clinic"

    except Exception as e:
        console.print(f"❌ Backend selection failed: {e}", style="red")
        return False


async def demo_credentials() -> bool:
    """Show how persistence depends on the remember flag and the device."""

    console.print(Panel("🔐 Credential Persistence", style="blue"))

    try:
        now = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
        clock_state = {"now": now}

        def clock() -> datetime:
            return clock_state["now"]

        table = Table(title="Credential Lifetime")
        table.add_column("Device", style="cyan")
        table.add_column("Remember", style="magenta")
        table.add_column("After restart", style="green")
        table.add_column("After 8 days", style="yellow")

        for device in (DeviceClass.DESKTOP, DeviceClass.MOBILE):
            for remember in (True, False):
                clock_state["now"] = now
                remember_tier, session_tier = MemoryStorage(), MemoryStorage()

                def make_store() -> CredentialStore:
                    return CredentialStore(
                        remember_tier=remember_tier,
                        session_tier=session_tier,
                        device_classifier=lambda: device,
                        clock=clock,
                    )

                make_store().set_auth(
                    "demo-token", {"id": 1, "username": "nurse", "role": "nurse"}, remember
                )
                if not remember:
                    # a new process starts with an empty session tier
                    session_tier.clear()
                after_restart = make_store().load() is not None

                clock_state["now"] = now + timedelta(days=8)
                after_expiry = make_store().load() is not None

                table.add_row(
                    device.value,
                    str(remember),
                    "kept" if after_restart else "gone",
                    "kept" if after_expiry else "gone",
                )

        console.print(table)
        return True

    except Exception as e:
        console.print(f"❌ Credential demo failed: {e}", style="red")
        return False


async def demo_streams_and_api() -> bool:
    """Run the whole layer: stream frames in, REST calls out."""

    console.print(Panel("📡 Streams and API", style="blue"))

    frames = [
        json.dumps({"type": "heartbeat"}),
        json.dumps(
            {"type": "risk_alert", "elderId": "e1", "level": "high", "message": "BP 172/104"}
        ),
        "garbage",
        json.dumps(
            {
                "type": "new_record",
                "record": {"elderId": "e1", "recordDate": "2026-03-01", "heartRate": 88},
            }
        ),
    ]

    async def connector(url: str, headers: Mapping[str, str]) -> DemoSocket:
        console.print(f"Opening {url}", style="dim")
        return DemoSocket(frames)

    received: list[StreamMessage] = []

    try:
        with TemporaryDirectory() as storage_dir:
            async with httpx.AsyncClient(transport=httpx.MockTransport(DemoBackends())) as http:
                service = ConnectivityService(
                    demo_config(Path(storage_dir)),
                    http_client=http,
                    connector=connector,
                    configure_logs=False,
                )
                async with service.session():
                    service.credentials.set_auth(
                        "demo-token", {"id": "n1", "username": "nurse", "role": "nurse"}
                    )
                    await service.streams.connect("n1", received.append, Channel.ALERTS)
                    await asyncio.sleep(0.2)

                    elders = await service.api.get("/elders")
                    console.print(f"GET /elders -> {elders}")
                    try:
                        await service.api.get("/landing")
                    except ApiError as e:
                        console.print(f"GET /landing -> {e.to_dict()}", style="yellow")

        table = Table(title="Delivered Frames")
        table.add_column("Type", style="cyan")
        table.add_column("Elder", style="magenta")
        table.add_column("Detail", style="white")
        for message in received:
            detail = message.message or (message.record.model_dump_json() if message.record else "")
            table.add_row(message.type.value, message.elder_id or "-", detail)
        console.print(table)

        stream_config = service.config.stream
        schedule = [
            reconnect_delay(
                i, stream_config.reconnect_base_seconds, stream_config.reconnect_cap_seconds
            )
            for i in range(1, stream_config.max_reconnect_attempts + 1)
        ]
        console.print(f"Reconnect schedule (s): {schedule}")
        return len(received) == 2

    except Exception as e:
        console.print(f"❌ Stream/API demo failed: {e}", style="red")
        return False


async def run_all_demos() -> None:
    """Run every walkthrough and summarize."""

    console.print(Panel("🩺 Carelink Connectivity - System Demo", style="bold blue"))

    demos = [
        ("Configuration", demo_configuration),
        ("Backend Selection", demo_backend_selection),
        ("Credentials", demo_credentials),
        ("Streams and API", demo_streams_and_api),
    ]

    results = []

    for demo_name, demo_func in demos:
        console.print(f"\n{'=' * 60}")
        try:
            result = await demo_func()
            results.append((demo_name, result))
        except KeyboardInterrupt:
            console.print("\n⏹️  Demo interrupted by user", style="yellow")
            break

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Demo Results")
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for demo_name, result in results:
        if result:
            summary_table.add_row(demo_name, "✅ PASSED")
            passed += 1
        else:
            summary_table.add_row(demo_name, "❌ FAILED")

    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} steps passed")


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(run_all_demos())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
