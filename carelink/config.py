"""
Configuration management with environment variable support and validation.

Design principles:
- One section per component (selector, stream, credentials, logging)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Defaults that work against a local development backend
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class SelectorConfig(BaseModel):
    """Backend discovery and health-probe settings."""

    origin: str = Field(
        default="http://localhost:3000",
        description="Origin the dashboard is served from; relative URLs resolve against it",
    )
    descriptor_path: str = Field(
        default="/backend-config.json", description="Well-known path of the backend descriptor"
    )
    api_prefix: str = Field(default="/api", description="Prefix every API base URL is rooted at")
    health_cache_ttl_seconds: float = Field(
        default=60.0, gt=0.0, description="How long a probe result is trusted"
    )
    descriptor_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Timeout for fetching the backend descriptor"
    )

    @field_validator("origin")
    def validate_origin(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("origin must be an absolute http(s) URL")
        return v.rstrip("/")

    @field_validator("api_prefix", "descriptor_path")
    def validate_leading_slash(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("paths must start with '/'")
        return v.rstrip("/") or "/"


class StreamConfig(BaseModel):
    """Real-time channel reconnect policy."""

    reconnect_base_seconds: float = Field(
        default=1.0, gt=0.0, description="Base delay of the exponential backoff"
    )
    reconnect_cap_seconds: float = Field(
        default=30.0, gt=0.0, description="Upper bound for a single reconnect delay"
    )
    max_reconnect_attempts: int = Field(
        default=5, ge=0, description="Automatic reconnects before the session goes silent"
    )
    heartbeat_type: str = Field(
        default="heartbeat", description="Frame type used only to keep the connection alive"
    )
    ping_interval_seconds: float | None = Field(
        default=20.0, description="Transport-level ping interval (None disables pings)"
    )

    @model_validator(mode="after")
    def cap_not_below_base(self) -> "StreamConfig":
        if self.reconnect_cap_seconds < self.reconnect_base_seconds:
            raise ValueError("reconnect cap must not be smaller than the base delay")
        return self


class CredentialConfig(BaseModel):
    """Credential persistence settings."""

    storage_dir: Path = Field(
        default_factory=lambda: Path.home() / ".carelink",
        description="Directory holding the remember-tier storage file",
    )
    remember_ttl_days: int = Field(
        default=7, gt=0, description="Lifetime of a remembered credential on desktop devices"
    )
    user_agent: str | None = Field(
        default=None, description="User agent used to classify the device at login"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    selector: SelectorConfig = Field(default_factory=SelectorConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    selector_config = SelectorConfig(
        origin=os.getenv("CARELINK_ORIGIN", "http://localhost:3000"),
        descriptor_path=os.getenv("BACKEND_DESCRIPTOR_PATH", "/backend-config.json"),
        api_prefix=os.getenv("API_PREFIX", "/api"),
        health_cache_ttl_seconds=float(os.getenv("HEALTH_CACHE_TTL_SECONDS", "60")),
        descriptor_timeout_seconds=float(os.getenv("DESCRIPTOR_TIMEOUT_SECONDS", "5")),
    )

    stream_config = StreamConfig(
        reconnect_base_seconds=float(os.getenv("STREAM_RECONNECT_BASE_SECONDS", "1.0")),
        reconnect_cap_seconds=float(os.getenv("STREAM_RECONNECT_CAP_SECONDS", "30.0")),
        max_reconnect_attempts=int(os.getenv("STREAM_MAX_RECONNECT_ATTEMPTS", "5")),
    )

    credential_kwargs: dict[str, object] = {
        "remember_ttl_days": int(os.getenv("REMEMBER_TTL_DAYS", "7")),
        "user_agent": os.getenv("CARELINK_USER_AGENT") or None,
    }
    if os.getenv("CREDENTIAL_DIR"):
        credential_kwargs["storage_dir"] = Path(os.environ["CREDENTIAL_DIR"]).expanduser()
    credential_config = CredentialConfig.model_validate(credential_kwargs)

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        selector=selector_config,
        stream=stream_config,
        credentials=credential_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")
        print(f"Backend descriptor: {config.selector.origin}{config.selector.descriptor_path}")
    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nBACKEND SELECTION")
    print(f"Origin: {config.selector.origin}")
    print(f"API Prefix: {config.selector.api_prefix}")
    print(f"Health Cache TTL: {config.selector.health_cache_ttl_seconds}s")

    print("\nSTREAM")
    print(
        f"Backoff: {config.stream.reconnect_base_seconds}s base, "
        f"{config.stream.reconnect_cap_seconds}s cap, "
        f"{config.stream.max_reconnect_attempts} attempts"
    )

    print("\nCREDENTIALS")
    print(f"Storage Dir: {config.credentials.storage_dir}")
    print(f"Remember TTL (desktop): {config.credentials.remember_ttl_days}d")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
