"""Exceptions raised by the connectivity layer.

Most failures in this package degrade quietly (fallback backend, silent
reconnect exhaustion, absent credential). The few that reach callers are
defined here.
"""

from typing import Any


class CarelinkError(Exception):
    """Base exception for the connectivity layer."""


class NoBackendAvailableError(CarelinkError):
    """The backend descriptor lists no enabled candidate."""

    def __init__(self, message: str = "no enabled backend candidate configured") -> None:
        super().__init__(message)


class ApiError(CarelinkError):
    """A REST call failed or returned something that is not an API response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: dict[str, Any] | None = None,
        url: str | None = None,
        is_html_response: bool = False,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}
        self.url = url
        self.is_html_response = is_html_response
        super().__init__(message if status_code is None else f"HTTP {status_code}: {message}")

    def to_dict(self) -> dict[str, Any]:
        """Envelope form (`{"success": False, "message": ...}`) for UI consumers."""
        data: dict[str, Any] = {**self.payload, "success": False, "message": self.message}
        if self.is_html_response:
            data["isHtmlResponse"] = True
            data["url"] = self.url
        return data
