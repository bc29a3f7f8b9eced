"""
Backend discovery, health probing and selection.

Key behaviours:
- The descriptor is fetched once per selector; a failed fetch degrades to a
  single fallback candidate instead of making the dashboard unusable
- Probes run concurrently but the winner is chosen by priority, never by latency
- Probe outcomes (good and bad) are cached for a TTL so a dead backend is not hammered
- Concurrent callers share one in-flight load/selection (single-flight)
"""

import asyncio
import time
from collections.abc import Callable

import httpx
import structlog

from carelink.config import SelectorConfig
from carelink.domain.models import BackendDescriptor, Candidate, HealthCacheEntry
from carelink.domain.result import Result
from carelink.errors import NoBackendAvailableError

logger = structlog.get_logger(__name__)

_NO_CACHE_HEADERS = {"Cache-Control": "no-cache"}


def normalize_api_base_url(api_url: str, prefix: str = "/api") -> str:
    """
    Root a configured API URL under the API prefix exactly once.

    `http://host:3000` -> `http://host:3000/api`, `/v2` -> `/api/v2`,
    `/api` and `http://host/api` are returned unchanged.
    """
    if api_url.startswith(("http://", "https://")):
        base = api_url.rstrip("/")
        return base if base.endswith(prefix) else f"{base}{prefix}"

    path = api_url.strip().rstrip("/")
    if not path:
        return prefix
    if not path.startswith("/"):
        path = f"/{path}"
    if path == prefix or path.startswith(f"{prefix}/"):
        return path
    return f"{prefix}{path}"


def normalize_ws_base_url(ws_url: str, origin: str) -> str:
    """Turn a configured socket URL into an absolute ws:// or wss:// base."""
    url = ws_url.strip().rstrip("/")
    if url.startswith(("ws://", "wss://")):
        return url
    if url.startswith("https://"):
        return "wss://" + url.removeprefix("https://")
    if url.startswith("http://"):
        return "ws://" + url.removeprefix("http://")

    scheme, _, host = origin.partition("://")
    ws_scheme = "wss" if scheme == "https" else "ws"
    if url and not url.startswith("/"):
        url = f"/{url}"
    return f"{ws_scheme}://{host}{url}"


class BackendSelector:
    """
    Owns the candidate list, the health cache and the active selection.

    Lifecycle: create one per application, share it by reference with the API
    client and the stream hub, call `aclose()` on shutdown and `reset()` to
    forget everything (tests, descriptor reload).
    """

    def __init__(
        self,
        config: SelectorConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SelectorConfig()
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._clock = clock
        self.logger = logger.bind(component="backend_selector")

        self._descriptor: BackendDescriptor | None = None
        self._current: Candidate | None = None
        self._health_cache: dict[str, HealthCacheEntry] = {}
        self._load_task: asyncio.Task[BackendDescriptor] | None = None
        self._select_task: asyncio.Task[Candidate] | None = None

    @property
    def current_backend(self) -> Candidate | None:
        """Active selection without triggering a new one."""
        return self._current

    def absolute_url(self, url: str) -> str:
        """Resolve a configured path against the dashboard origin."""
        if url.startswith(("http://", "https://")):
            return url
        if not url.startswith("/"):
            url = f"/{url}"
        return f"{self.config.origin}{url}"

    def default_api_base_url(self) -> str:
        return self.absolute_url(self.config.api_prefix)

    def default_ws_base_url(self) -> str:
        return normalize_ws_base_url("", self.config.origin)

    def _fallback_descriptor(self) -> BackendDescriptor:
        return BackendDescriptor(
            backends=[
                Candidate(
                    name="default",
                    api_url=self.config.api_prefix,
                    ws_url=self.default_ws_base_url(),
                    priority=1,
                    enabled=True,
                )
            ],
        )

    async def _fetch_descriptor(self) -> Result[BackendDescriptor, Exception]:
        url = self.absolute_url(self.config.descriptor_path)
        try:
            response = await self._http.get(
                url,
                headers=_NO_CACHE_HEADERS,
                timeout=self.config.descriptor_timeout_seconds,
            )
            response.raise_for_status()
            return Result.ok(BackendDescriptor.model_validate(response.json()))
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers both undecodable JSON and pydantic's ValidationError
            return Result.err(e)

    async def _load_descriptor(self) -> BackendDescriptor:
        result = await self._fetch_descriptor()
        if result.is_ok():
            descriptor = result.unwrap()
            self.logger.info(
                "backend_descriptor_loaded",
                candidates=len(descriptor.backends),
                auto_select=descriptor.auto_select,
            )
            return descriptor

        self.logger.error(
            "backend_descriptor_load_failed",
            error=str(result.unwrap_err()),
            fallback_api_url=self.config.api_prefix,
        )
        return self._fallback_descriptor()

    async def load_config(self) -> BackendDescriptor:
        """Fetch the descriptor once; concurrent callers await the same fetch."""
        if self._descriptor is not None:
            return self._descriptor

        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load_descriptor())
        task = self._load_task

        descriptor = await asyncio.shield(task)
        if self._load_task is task:
            self._descriptor = descriptor
            self._load_task = None
        return descriptor

    async def probe_health(self, candidate: Candidate) -> bool:
        """
        GET `{api_url}{health_check_endpoint}` within the probe timeout.

        Healthy iff a 2xx status arrives in time. The outcome is cached either
        way; a fresh cache entry short-circuits the request.
        """
        key = candidate.cache_key
        now = self._clock()
        cached = self._health_cache.get(key)
        if cached is not None and cached.is_fresh(now, self.config.health_cache_ttl_seconds):
            return cached.is_available

        descriptor = await self.load_config()
        url = self.absolute_url(f"{candidate.api_url}{descriptor.health_check_endpoint}")
        timeout = descriptor.health_check_timeout_seconds

        try:
            response = await asyncio.wait_for(
                self._http.get(url, headers=_NO_CACHE_HEADERS, timeout=timeout),
                timeout=timeout,
            )
            available = response.is_success
            if not available:
                self.logger.warning(
                    "health_probe_unhealthy", backend=candidate.name, status=response.status_code
                )
        except (httpx.HTTPError, TimeoutError) as e:
            self.logger.warning(
                "health_probe_failed",
                backend=candidate.name,
                error=str(e) or type(e).__name__,
            )
            available = False

        self._health_cache[key] = HealthCacheEntry(
            candidate_key=key, is_available=available, last_checked_at=now
        )
        return available

    async def select_backend(self) -> Candidate:
        """
        Pick the backend to talk to.

        Sticky when auto-selection is off; otherwise the first healthy candidate
        in priority order, failing open to the top-priority one.
        """
        descriptor = await self.load_config()
        if not descriptor.auto_select and self._current is not None:
            return self._current

        if self._select_task is None:
            self._select_task = asyncio.create_task(self._select(descriptor))
        task = self._select_task

        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._select_task is task:
                self._select_task = None

    async def _select(self, descriptor: BackendDescriptor) -> Candidate:
        candidates = descriptor.enabled_candidates()
        if not candidates:
            raise NoBackendAvailableError()

        if len(candidates) == 1:
            return self._activate(candidates[0], reason="single_candidate")

        async with asyncio.TaskGroup() as task_group:
            probes = [task_group.create_task(self.probe_health(c)) for c in candidates]

        for candidate, probe in zip(candidates, probes, strict=True):
            if probe.result():
                return self._activate(candidate, reason="healthy")

        self.logger.error(
            "all_backends_unhealthy",
            fallback=candidates[0].name,
            probed=len(candidates),
        )
        return self._activate(candidates[0], reason="fail_open")

    def _activate(self, candidate: Candidate, *, reason: str) -> Candidate:
        if candidate != self._current:
            self.logger.info(
                "backend_selected",
                backend=candidate.name,
                priority=candidate.priority,
                reason=reason,
            )
        self._current = candidate
        return candidate

    async def get_current_backend(self) -> Candidate:
        return await self.select_backend()

    async def get_api_url(self) -> str:
        backend = await self.select_backend()
        return normalize_api_base_url(backend.api_url, self.config.api_prefix)

    async def get_ws_url(self) -> str:
        backend = await self.select_backend()
        return normalize_ws_base_url(backend.ws_url, self.config.origin)

    def health_snapshot(self) -> dict[str, HealthCacheEntry]:
        return dict(self._health_cache)

    def clear_health_cache(self) -> None:
        """Forget every probe result so the next selection re-probes."""
        self._health_cache.clear()
        self.logger.debug("health_cache_cleared")

    def reset(self) -> None:
        """Forget descriptor, selection and health cache."""
        self._descriptor = None
        self._current = None
        self._health_cache.clear()
        self._load_task = None
        self._select_task = None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
