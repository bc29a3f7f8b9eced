"""
Authorized REST client on top of the backend selector.

The base URL is resolved lazily on the first request and exactly once, even
when many requests start before the selector has answered. Responses are
normalized to the `{"success": ..., "data": ...}` envelope the dashboard uses.
"""

import asyncio
from typing import Any, NoReturn

import httpx
import structlog

from carelink.errors import ApiError, NoBackendAvailableError
from carelink.services.backend_selector import BackendSelector
from carelink.services.credential_store import CredentialStore

logger = structlog.get_logger(__name__)

_HTML_MARKERS = ("<!doctype", "<html")


class ApiClient:
    """Thin wrapper around `httpx.AsyncClient` that knows the active backend."""

    def __init__(
        self,
        selector: BackendSelector,
        credential_store: CredentialStore | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        login_path: str = "/auth/login",
    ) -> None:
        self._selector = selector
        self._credentials = credential_store
        self._http = http_client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"}
        )
        self._owns_http = http_client is None
        self._login_path = login_path
        self._base_url: str | None = None
        self._init_task: asyncio.Task[str] | None = None
        self.logger = logger.bind(component="api_client")

    @property
    def base_url(self) -> str | None:
        return self._base_url

    async def ensure_initialized(self) -> str:
        """Resolve the API base URL once; concurrent callers share the resolution."""
        if self._base_url is not None:
            return self._base_url

        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        task = self._init_task

        base_url = await asyncio.shield(task)
        if self._init_task is task:
            self._base_url = base_url
            self._init_task = None
        return base_url

    async def _initialize(self) -> str:
        try:
            api_url = await self._selector.get_api_url()
        except NoBackendAvailableError as e:
            base_url = self._selector.default_api_base_url()
            self.logger.warning("api_base_url_fallback", error=str(e), base_url=base_url)
            return base_url

        base_url = self._selector.absolute_url(api_url)
        self.logger.info("api_initialized", configured_url=api_url, base_url=base_url)
        return base_url

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        base_url = await self.ensure_initialized()
        url = f"{base_url}/{path.lstrip('/')}"

        request_headers = dict(headers or {})
        token = self._credentials.token if self._credentials is not None else None
        if token:
            request_headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._http.request(
                method.upper(), url, json=json, params=params, headers=request_headers
            )
        except httpx.HTTPError as e:
            self.logger.error("api_network_error", method=method.upper(), url=url, error=str(e))
            raise ApiError(
                str(e) or "network error, check the connection", url=url
            ) from e

        if response.is_error:
            self._raise_for_response(response, path, url)
        return self._normalize(response, url)

    async def get(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("DELETE", path, **kwargs)

    def _raise_for_response(self, response: httpx.Response, path: str, url: str) -> NoReturn:
        status = response.status_code
        self.logger.error("api_error_response", status=status, url=url)

        # A rejected login leaves the stored credential alone
        if status == 401 and self._login_path not in path and self._credentials is not None:
            self._credentials.clear_auth()

        try:
            payload = response.json()
        except ValueError:
            payload = None

        fallback_message = response.reason_phrase or "request failed"
        if isinstance(payload, dict) and ("success" in payload or "message" in payload):
            raise ApiError(
                str(payload.get("message") or fallback_message),
                status_code=status,
                payload=payload,
                url=url,
            )
        raise ApiError(fallback_message, status_code=status, url=url)

    def _normalize(self, response: httpx.Response, url: str) -> dict[str, Any]:
        text = response.text
        if text.lstrip()[:15].lower().startswith(_HTML_MARKERS):
            self.logger.error(
                "api_html_response",
                url=url,
                content_type=response.headers.get("content-type"),
            )
            raise ApiError(
                "server returned an HTML page instead of JSON; check the API base URL",
                url=url,
                is_html_response=True,
            )

        if not text.strip():
            return {"success": True, "data": None}

        try:
            data = response.json()
        except ValueError:
            raise ApiError(
                "invalid response format", url=url, payload={"rawData": text[:200]}
            ) from None

        if isinstance(data, dict) and "success" in data:
            return data
        return {"success": True, "data": data}

    def reset(self) -> None:
        """Forget the resolved base URL; the next request resolves it again."""
        self._base_url = None
        self._init_task = None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
