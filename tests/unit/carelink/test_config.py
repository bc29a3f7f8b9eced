"""
Tests for configuration management in `carelink/config.py`.

Covers:
- Environment parsing and debug defaults
- Logging level coercion to the expected Literal
- Selector, stream and credential sections read from the environment
- Field validation (origin, prefixes, backoff bounds)
- get_config cache behavior
- AppConfig validation (debug only allowed in development)
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from pydantic import ValidationError

from carelink.config import (
    AppConfig,
    SelectorConfig,
    StreamConfig,
    get_config,
    load_config_from_env,
)


@pytest.fixture(autouse=True)
def clear_config_cache() -> Iterator[None]:
    """Ensure get_config cache is cleared before and after each test."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()


def test_load_config_dev_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "development")
    for name in ("LOG_LEVEL", "CARELINK_ORIGIN", "API_PREFIX", "HEALTH_CACHE_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    config = load_config_from_env()

    assert config.environment == "development"
    assert config.debug is True
    assert config.logging.format == "console"
    assert config.selector.origin == "http://localhost:3000"
    assert config.selector.api_prefix == "/api"
    assert config.selector.health_cache_ttl_seconds == 60.0
    assert config.stream.max_reconnect_attempts == 5
    assert config.credentials.remember_ttl_days == 7


def test_production_uses_json_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "prod")

    config = load_config_from_env()

    assert config.environment == "production"
    assert config.debug is False
    assert config.logging.format == "json"


def test_logging_level_literal_coercion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "staging")

    # Unknown level should coerce to INFO
    monkeypatch.setenv("LOG_LEVEL", "unknown")
    config = load_config_from_env()
    assert config.logging.level == "INFO"

    # Known level should pass through
    monkeypatch.setenv("LOG_LEVEL", "error")
    config = load_config_from_env()
    assert config.logging.level == "ERROR"


def test_sections_read_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CARELINK_ORIGIN", "https://dash.example.com/")
    monkeypatch.setenv("API_PREFIX", "/v1/")
    monkeypatch.setenv("HEALTH_CACHE_TTL_SECONDS", "15")
    monkeypatch.setenv("STREAM_RECONNECT_BASE_SECONDS", "0.5")
    monkeypatch.setenv("STREAM_RECONNECT_CAP_SECONDS", "10")
    monkeypatch.setenv("STREAM_MAX_RECONNECT_ATTEMPTS", "3")
    monkeypatch.setenv("REMEMBER_TTL_DAYS", "14")
    monkeypatch.setenv("CREDENTIAL_DIR", str(tmp_path))
    monkeypatch.setenv("CARELINK_USER_AGENT", "Mozilla/5.0 (iPhone)")

    config = load_config_from_env()

    assert config.selector.origin == "https://dash.example.com"
    assert config.selector.api_prefix == "/v1"
    assert config.selector.health_cache_ttl_seconds == 15.0
    assert config.stream.reconnect_base_seconds == 0.5
    assert config.stream.reconnect_cap_seconds == 10.0
    assert config.stream.max_reconnect_attempts == 3
    assert config.credentials.remember_ttl_days == 14
    assert config.credentials.storage_dir == tmp_path
    assert config.credentials.user_agent == "Mozilla/5.0 (iPhone)"


@pytest.mark.parametrize("origin", ["localhost:3000", "ws://dash.test", "/relative"])
def test_origin_must_be_absolute_http(origin: str) -> None:
    with pytest.raises(ValidationError, match="absolute http"):
        SelectorConfig(origin=origin)


def test_api_prefix_needs_leading_slash() -> None:
    with pytest.raises(ValidationError, match="must start with"):
        SelectorConfig(api_prefix="api")


def test_backoff_cap_not_below_base() -> None:
    with pytest.raises(ValidationError, match="reconnect cap"):
        StreamConfig(reconnect_base_seconds=10.0, reconnect_cap_seconds=5.0)


def test_get_config_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "development")

    # First call populates cache
    c1 = get_config()
    c2 = get_config()
    assert c1 is c2  # same object due to lru_cache


def test_app_config_debug_only_in_dev_validation() -> None:
    with pytest.raises(ValueError, match="debug mode is only allowed"):
        AppConfig(environment="production", debug=True)
