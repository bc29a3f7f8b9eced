"""
Domain models for backend selection, the real-time channel and credentials.

These models represent the wire formats and persisted records the connectivity
layer deals with. They use Pydantic for validation and accept the camelCase
keys the dashboard backend speaks.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Candidate(BaseModel):
    """One configured backend deployment."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    api_url: str = Field(alias="apiUrl", description="Absolute URL or path of the REST API")
    ws_url: str = Field(alias="wsUrl", description="Absolute URL or path of the socket server")
    priority: int = Field(description="Lower number wins")
    enabled: bool = True

    @property
    def cache_key(self) -> str:
        return self.api_url


class BackendDescriptor(BaseModel):
    """Static descriptor listing the candidates and how to probe them."""

    model_config = ConfigDict(populate_by_name=True)

    backends: list[Candidate] = Field(default_factory=list)
    health_check_endpoint: str = Field(default="/health", alias="healthCheckEndpoint")
    health_check_timeout: int = Field(
        default=3000, gt=0, alias="healthCheckTimeout", description="Probe timeout in ms"
    )
    auto_select: bool = Field(default=True, alias="autoSelect")

    @property
    def health_check_timeout_seconds(self) -> float:
        return self.health_check_timeout / 1000

    def enabled_candidates(self) -> list[Candidate]:
        """Enabled candidates by ascending priority; ties keep declaration order."""
        return sorted((b for b in self.backends if b.enabled), key=lambda b: b.priority)


class HealthCacheEntry(BaseModel):
    """Cached outcome of one health probe."""

    model_config = ConfigDict(frozen=True)

    candidate_key: str
    is_available: bool
    last_checked_at: float = Field(description="Monotonic clock reading of the probe")

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.last_checked_at < ttl_seconds


class Channel(str, Enum):
    """Real-time channels. A consumer holds at most one of them."""

    ALERTS = "alerts"  # per-user targeted
    BOARD = "board"  # broadcast aggregate


class SessionState(str, Enum):
    """Lifecycle of a stream session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


class MessageType(str, Enum):
    """Frame types the real-time channel carries."""

    HEARTBEAT = "heartbeat"
    RISK_ALERT = "risk_alert"
    NEW_REPORT = "new_report"
    NEW_RECORD = "new_record"
    AI_PREDICTION = "ai_prediction"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HealthRecord(BaseModel):
    """Vitals carried by a `new_record` event."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    elder_id: str = Field(alias="elderId")
    elder_name: str | None = Field(default=None, alias="elderName")
    record_date: str = Field(alias="recordDate")
    systolic: float | None = None
    diastolic: float | None = None
    blood_glucose: float | None = Field(default=None, alias="bloodGlucose")
    heart_rate: float | None = Field(default=None, alias="heartRate")
    steps: int | None = None


class StreamMessage(BaseModel):
    """One decoded frame from the real-time channel."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: MessageType
    elder_id: str | None = Field(default=None, alias="elderId")
    elder_name: str | None = Field(default=None, alias="elderName")
    level: RiskLevel | None = None
    message: str | None = None
    data: Any = None
    record: HealthRecord | None = None

    @property
    def is_liveness(self) -> bool:
        return self.type is MessageType.HEARTBEAT

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class PersistenceMode(str, Enum):
    SESSION = "session"
    REMEMBER = "remember"


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


class UserProfile(BaseModel):
    """Logged-in user as returned by the auth endpoint."""

    model_config = ConfigDict(extra="allow")

    id: str | int
    username: str
    role: str
    email: str | None = None
    phone: str | None = None


class CredentialRecord(BaseModel):
    """A credential together with the policy it was written under."""

    model_config = ConfigDict(frozen=True)

    token: str
    profile: UserProfile
    persistence_mode: PersistenceMode
    device_class: DeviceClass
    expires_at: datetime | None = None

    @property
    def remember(self) -> bool:
        return self.persistence_mode is PersistenceMode.REMEMBER
