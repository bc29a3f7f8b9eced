"""
Real-time event channel that survives flaky networks.

Key behaviours:
- One session per consumer; `alerts` and `board` share the same state machine
- Liveness frames are dropped before delivery, malformed frames are logged and skipped
- Unexpected closes invalidate the selector's health cache, then reconnect with
  capped exponential backoff until the attempt bound is reached
- Caller-initiated closes never reschedule, even if the old transport fires late
"""

import asyncio
import functools
import inspect
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, Protocol
from urllib.parse import urlencode

import structlog
from pydantic import ValidationError
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from carelink.config import StreamConfig
from carelink.domain.models import Channel, SessionState, StreamMessage
from carelink.errors import NoBackendAvailableError
from carelink.services.backend_selector import BackendSelector
from carelink.services.credential_store import CredentialStore

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[StreamMessage], Awaitable[None] | None]


class StreamTransport(Protocol):
    """The slice of a websocket connection the session relies on."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str, Mapping[str, str]], Awaitable[StreamTransport]]


async def websocket_connector(
    url: str, headers: Mapping[str, str], *, ping_interval: float | None = 20.0
) -> StreamTransport:
    """Open a websocket with the `websockets` asyncio client."""
    return await websocket_connect(
        url,
        additional_headers=dict(headers) or None,
        ping_interval=ping_interval,
    )


def reconnect_delay(attempt: int, base_seconds: float, cap_seconds: float) -> float:
    """Delay before reconnect number `attempt` (1-based): min(base * 2**attempt, cap)."""
    return min(base_seconds * 2**attempt, cap_seconds)


def build_stream_url(ws_base_url: str, channel: Channel, consumer_id: str) -> str:
    if channel is Channel.BOARD:
        return f"{ws_base_url}/ws/board"
    return f"{ws_base_url}/ws/alerts?{urlencode({'userId': consumer_id})}"


class StreamSession:
    """
    One consumer's connection to one channel.

    States: idle -> connecting -> open -> closing -> closed, with reconnecting
    entered from closed only when the close was not requested by the caller.
    """

    def __init__(
        self,
        consumer_id: str,
        channel: Channel,
        on_message: MessageHandler,
        *,
        selector: BackendSelector,
        config: StreamConfig | None = None,
        connector: Connector | None = None,
        credential_store: CredentialStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.consumer_id = consumer_id
        self.channel = channel
        self.on_message = on_message
        self.config = config or StreamConfig()
        self._selector = selector
        self._connector = connector or functools.partial(
            websocket_connector, ping_interval=self.config.ping_interval_seconds
        )
        self._credentials = credential_store
        self._sleep = sleep

        self.state = SessionState.IDLE
        self.reconnect_attempts = 0
        self._transport: StreamTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._caller_terminated = False
        # Bumped by connect() and disconnect(); an open attempt from an older
        # generation discards whatever it produced
        self._generation = 0

        self.logger = logger.bind(
            component="stream_session", consumer_id=consumer_id, channel=channel.value
        )

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def connect(self) -> None:
        """Open the channel. No-op while open or while a handshake is in flight."""
        if self.state in (SessionState.OPEN, SessionState.CONNECTING):
            return

        self._caller_terminated = False
        self._cancel_reconnect()
        # An explicit connect starts a fresh retry budget, also after exhaustion
        self.reconnect_attempts = 0
        self._generation += 1
        await self._open()

    async def disconnect(self) -> None:
        """Close for good: cancel any pending reconnect and close the transport."""
        self._caller_terminated = True
        self._generation += 1
        self._cancel_reconnect()

        transport = self._transport
        self._transport = None
        if transport is not None:
            self.state = SessionState.CLOSING
            try:
                await transport.close()
            except (OSError, WebSocketException) as e:
                self.logger.debug("stream_close_error", error=str(e))

        self.state = SessionState.CLOSED
        self.logger.info("stream_disconnected")

    async def send(self, message: StreamMessage | Mapping[str, Any]) -> bool:
        """Best-effort, at-most-once send. Dropped unless the channel is open."""
        transport = self._transport
        if self.state is not SessionState.OPEN or transport is None:
            self.logger.debug("stream_send_dropped", state=self.state.value)
            return False

        if isinstance(message, StreamMessage):
            payload = message.to_wire()
        else:
            payload = json.dumps(dict(message))

        try:
            await transport.send(payload)
        except (OSError, WebSocketException) as e:
            self.logger.debug("stream_send_failed", error=str(e))
            return False
        return True

    async def _resolve_url(self) -> str:
        try:
            base = await self._selector.get_ws_url()
        except NoBackendAvailableError as e:
            base = self._selector.default_ws_base_url()
            self.logger.warning("stream_url_fallback", error=str(e), ws_base_url=base)
        return build_stream_url(base, self.channel, self.consumer_id)

    def _auth_headers(self) -> dict[str, str]:
        token = self._credentials.token if self._credentials is not None else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _open(self) -> None:
        generation = self._generation
        self.state = SessionState.CONNECTING
        try:
            url = await self._resolve_url()
            if generation != self._generation:
                return

            try:
                transport = await self._connector(url, self._auth_headers())
            except (OSError, TimeoutError, WebSocketException) as e:
                self.logger.warning(
                    "stream_connect_failed", url=url, error=str(e) or type(e).__name__
                )
                if generation == self._generation and not self._caller_terminated:
                    self._handle_unexpected_close()
                return

            if generation != self._generation:
                # disconnect() or a newer connect() ran while the handshake was in flight
                self.logger.info("stream_handshake_superseded", url=url)
                await transport.close()
                return

            self._transport = transport
            self.state = SessionState.OPEN
            self.reconnect_attempts = 0
            self.logger.info("stream_connected", url=url)
            self._reader_task = asyncio.create_task(self._read_loop(transport))
        finally:
            # Cancelled or abandoned before reaching OPEN
            if generation == self._generation and self.state is SessionState.CONNECTING:
                self.state = SessionState.CLOSED

    async def _read_loop(self, transport: StreamTransport) -> None:
        try:
            async for raw in transport:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            self.logger.info("stream_connection_lost", code=e.rcvd.code if e.rcvd else None)
        except OSError as e:
            self.logger.warning("stream_transport_error", error=str(e))
        self._on_transport_closed(transport)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except ValueError as e:
            self.logger.warning("stream_frame_malformed", error=str(e))
            return
        if not isinstance(data, dict):
            self.logger.warning("stream_frame_malformed", error="frame is not an object")
            return
        if data.get("type") == self.config.heartbeat_type:
            return

        try:
            message = StreamMessage.model_validate(data)
        except ValidationError as e:
            self.logger.warning(
                "stream_frame_malformed", frame_type=data.get("type"), errors=e.error_count()
            )
            return
        if message.is_liveness:
            return

        try:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.exception("stream_handler_failed", error=str(e), frame_type=message.type)

    def _on_transport_closed(self, transport: StreamTransport) -> None:
        if transport is not self._transport:
            # a transport discarded by disconnect() or superseded by a reconnect
            return
        self._transport = None
        self.state = SessionState.CLOSED
        if self._caller_terminated:
            return
        self.logger.warning("stream_closed_unexpectedly")
        self._handle_unexpected_close()

    def _handle_unexpected_close(self) -> None:
        self.state = SessionState.CLOSED
        # The endpoint we were talking to is now suspect
        self._selector.clear_health_cache()

        if self.reconnect_attempts >= self.config.max_reconnect_attempts:
            self.logger.error("stream_reconnect_exhausted", attempts=self.reconnect_attempts)
            return

        self.reconnect_attempts += 1
        delay = reconnect_delay(
            self.reconnect_attempts,
            self.config.reconnect_base_seconds,
            self.config.reconnect_cap_seconds,
        )
        self.state = SessionState.RECONNECTING
        self.logger.info(
            "stream_reconnect_scheduled", attempt=self.reconnect_attempts, delay_seconds=delay
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._caller_terminated or self.state is not SessionState.RECONNECTING:
            return
        self.logger.info("stream_reconnecting", attempt=self.reconnect_attempts)
        await self._open()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class StreamHub:
    """Keeps at most one stream session per consumer."""

    def __init__(
        self,
        selector: BackendSelector,
        config: StreamConfig | None = None,
        *,
        credential_store: CredentialStore | None = None,
        connector: Connector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.selector = selector
        self.config = config or StreamConfig()
        self._credentials = credential_store
        self._connector = connector
        self._sleep = sleep
        self._sessions: dict[str, StreamSession] = {}
        self.logger = logger.bind(component="stream_hub")

    def get(self, consumer_id: str) -> StreamSession | None:
        return self._sessions.get(consumer_id)

    async def connect(
        self,
        consumer_id: str,
        on_message: MessageHandler,
        channel: Channel | str = Channel.ALERTS,
    ) -> StreamSession:
        """Open (or reuse) the consumer's session. No-op when it is already open."""
        channel = Channel(channel)
        session = self._sessions.get(consumer_id)

        if session is not None and session.is_open:
            if session.channel is not channel:
                self.logger.warning(
                    "stream_channel_busy",
                    consumer_id=consumer_id,
                    open_channel=session.channel.value,
                    requested_channel=channel.value,
                )
            return session

        if session is not None and (
            session.channel is not channel or session.on_message != on_message
        ):
            await session.disconnect()
            session = None

        if session is None:
            session = StreamSession(
                consumer_id,
                channel,
                on_message,
                selector=self.selector,
                config=self.config,
                connector=self._connector,
                credential_store=self._credentials,
                sleep=self._sleep,
            )
            self._sessions[consumer_id] = session

        await session.connect()
        return session

    async def disconnect(self, consumer_id: str) -> None:
        session = self._sessions.pop(consumer_id, None)
        if session is not None:
            await session.disconnect()

    async def disconnect_all(self) -> None:
        for consumer_id in list(self._sessions):
            await self.disconnect(consumer_id)

    async def send(self, consumer_id: str, message: StreamMessage | Mapping[str, Any]) -> bool:
        session = self._sessions.get(consumer_id)
        if session is None:
            return False
        return await session.send(message)
