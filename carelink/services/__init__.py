"""
Core services of the connectivity layer.

This package contains backend selection, the resilient stream session, the
credential store, the authorized API client and the service wiring them up.
"""

from .api_client import ApiClient
from .backend_selector import BackendSelector, normalize_api_base_url, normalize_ws_base_url
from .connectivity import ConnectivityService
from .credential_store import (
    CredentialStore,
    FileStorage,
    KeyValueStorage,
    MemoryStorage,
    StorageKeys,
    classify_user_agent,
    user_agent_classifier,
)
from .stream_session import StreamHub, StreamSession, build_stream_url, reconnect_delay

__all__ = [
    "ApiClient",
    "BackendSelector",
    "ConnectivityService",
    "CredentialStore",
    "FileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "StorageKeys",
    "StreamHub",
    "StreamSession",
    "build_stream_url",
    "classify_user_agent",
    "normalize_api_base_url",
    "normalize_ws_base_url",
    "reconnect_delay",
    "user_agent_classifier",
]
