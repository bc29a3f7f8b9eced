"""
Wiring for the connectivity layer.

One `ConnectivityService` per application owns the selector, the credential
store, the API client and the stream hub, and hands them to the UI by
reference. Nothing in this package is reached through module-level state.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
import structlog

from carelink.config import AppConfig, get_config
from carelink.domain.models import DeviceClass
from carelink.logging_config import configure_logging
from carelink.services.api_client import ApiClient
from carelink.services.backend_selector import BackendSelector
from carelink.services.credential_store import CredentialStore, KeyValueStorage
from carelink.services.stream_session import Connector, StreamHub

logger = structlog.get_logger(__name__)


class ConnectivityService:
    """
    Composition root for backend selection, streams and credentials.

    Lifecycle:
    - construct once with the application config
    - `async with service.session():` loads persisted credentials on entry,
      closes every stream and HTTP client on exit
    - `reset()` returns every component to its initial state (tests, re-login)
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        connector: Connector | None = None,
        device_classifier: Callable[[], DeviceClass] | None = None,
        clock: Callable[[], datetime] | None = None,
        remember_tier: KeyValueStorage | None = None,
        session_tier: KeyValueStorage | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.config = config or get_config()
        if configure_logs:
            configure_logging(self.config.logging)
        self.logger = logger.bind(component="connectivity")

        self.selector = BackendSelector(self.config.selector, http_client=http_client)
        self.credentials = CredentialStore.from_config(
            self.config.credentials,
            device_classifier=device_classifier,
            clock=clock,
            remember_tier=remember_tier,
            session_tier=session_tier,
        )
        self.api = ApiClient(self.selector, self.credentials, http_client=http_client)
        self.streams = StreamHub(
            self.selector,
            self.config.stream,
            credential_store=self.credentials,
            connector=connector,
        )
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    @asynccontextmanager
    async def session(self) -> AsyncIterator["ConnectivityService"]:
        """Run the layer for the lifetime of the block."""
        self.credentials.load()
        self._is_running = True
        self.logger.info(
            "connectivity_started",
            environment=self.config.environment,
            authenticated=self.credentials.is_authenticated,
        )
        try:
            yield self
        finally:
            self._is_running = False
            await self.streams.disconnect_all()
            await self.api.aclose()
            await self.selector.aclose()
            self.logger.info("connectivity_stopped")

    def reset(self) -> None:
        self.selector.reset()
        self.api.reset()
        self.credentials.reset()
