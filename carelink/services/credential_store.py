"""
Credential persistence with a device- and preference-sensitive lifetime.

Two storage tiers:
- remember tier: survives restarts; desktop entries expire after a TTL, mobile never
- session tier: lives only as long as the current process/session

The device class is decided once, when the credential is written, and stored
next to it. Reads never re-derive it.
"""

import json
import os
import re
import tempfile
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, ValidationError

from carelink.config import CredentialConfig
from carelink.domain.models import (
    CredentialRecord,
    DeviceClass,
    PersistenceMode,
    UserProfile,
)

logger = structlog.get_logger(__name__)

_MOBILE_USER_AGENT = re.compile(
    r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE
)


class StorageKeys:
    """Named slots. Everything but SESSION lives in the remember tier."""

    AUTH = "auth-storage"
    EXPIRY = "auth-expiry"
    REMEMBER = "auth-remember"
    IS_MOBILE = "auth-is-mobile"
    SESSION = "auth-session-storage"

    REMEMBER_TIER = (AUTH, EXPIRY, REMEMBER, IS_MOBILE)


class KeyValueStorage(Protocol):
    """String key/value slots, the shape of browser local/session storage."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-scoped storage; the default session tier."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()


class FileStorage:
    """
    JSON-file storage; the default remember tier.

    Every write replaces the file atomically and keeps it owner-readable only.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.logger = logger.bind(component="file_storage", path=str(self.path))

    def _read_all(self) -> dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            self.logger.warning("storage_file_unreadable", error=str(e))
            return {}
        if not isinstance(data, dict):
            self.logger.warning("storage_file_malformed")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write_all(self, items: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(items, tmp)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get_item(self, key: str) -> str | None:
        return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._read_all()
        items[key] = value
        self._write_all(items)

    def remove_item(self, key: str) -> None:
        items = self._read_all()
        if key in items:
            del items[key]
            self._write_all(items)


def classify_user_agent(user_agent: str | None) -> DeviceClass:
    if user_agent and _MOBILE_USER_AGENT.search(user_agent):
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP


def user_agent_classifier(user_agent: str | None = None) -> Callable[[], DeviceClass]:
    """Classifier bound to a fixed user agent, or `CARELINK_USER_AGENT` when none is given."""

    def classify() -> DeviceClass:
        return classify_user_agent(user_agent or os.getenv("CARELINK_USER_AGENT"))

    return classify


class _StoredCredential(BaseModel):
    token: str
    profile: UserProfile
    device_class: DeviceClass = DeviceClass.DESKTOP


def _to_epoch_ms(moment: datetime) -> str:
    return str(int(moment.timestamp() * 1000))


def _from_epoch_ms(raw: str) -> datetime:
    return datetime.fromtimestamp(int(raw) / 1000, tz=UTC)


class CredentialStore:
    """
    Owns the auth token and profile and decides where they persist.

    Read path:
    - remember + desktop: expiry is checked first; an expired, unreadable or
      missing expiry purges the record
    - remember + mobile: returned unconditionally
    - session (or no remember flag): only the session tier is consulted
    """

    def __init__(
        self,
        *,
        remember_tier: KeyValueStorage,
        session_tier: KeyValueStorage,
        device_classifier: Callable[[], DeviceClass],
        remember_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._remember_tier = remember_tier
        self._session_tier = session_tier
        self._classify = device_classifier
        self._remember_ttl = remember_ttl
        self._clock = clock
        self._record: CredentialRecord | None = None
        self.logger = logger.bind(component="credential_store")

    @classmethod
    def from_config(
        cls,
        config: CredentialConfig,
        *,
        device_classifier: Callable[[], DeviceClass] | None = None,
        clock: Callable[[], datetime] | None = None,
        remember_tier: KeyValueStorage | None = None,
        session_tier: KeyValueStorage | None = None,
    ) -> "CredentialStore":
        return cls(
            remember_tier=remember_tier or FileStorage(config.storage_dir / "credentials.json"),
            session_tier=session_tier or MemoryStorage(),
            device_classifier=device_classifier or user_agent_classifier(config.user_agent),
            remember_ttl=timedelta(days=config.remember_ttl_days),
            clock=clock or (lambda: datetime.now(UTC)),
        )

    # --- current state ---

    @property
    def token(self) -> str | None:
        record = self.get_auth()
        return record.token if record else None

    @property
    def profile(self) -> UserProfile | None:
        record = self.get_auth()
        return record.profile if record else None

    @property
    def remember_me(self) -> bool:
        record = self.get_auth()
        return bool(record and record.remember)

    @property
    def is_authenticated(self) -> bool:
        return self.get_auth() is not None

    # --- write path ---

    def set_auth(
        self,
        token: str,
        profile: UserProfile | Mapping[str, Any],
        remember: bool = False,
    ) -> CredentialRecord:
        """Store a fresh credential, replacing whatever tier held the previous one."""
        if not isinstance(profile, UserProfile):
            profile = UserProfile.model_validate(dict(profile))

        device_class = self._classify()
        mode = PersistenceMode.REMEMBER if remember else PersistenceMode.SESSION
        expires_at = None
        if remember and device_class is DeviceClass.DESKTOP:
            expires_at = self._clock() + self._remember_ttl

        record = CredentialRecord(
            token=token,
            profile=profile,
            persistence_mode=mode,
            device_class=device_class,
            expires_at=expires_at,
        )
        # New tier is written before the old one is purged
        if remember:
            self._write_remember_tier(record)
            self._session_tier.remove_item(StorageKeys.SESSION)
        else:
            self._write_session_tier(record)
            for key in (StorageKeys.AUTH, StorageKeys.EXPIRY, StorageKeys.IS_MOBILE):
                self._remember_tier.remove_item(key)

        self._record = record
        self.logger.info(
            "credential_stored",
            mode=mode.value,
            device_class=device_class.value,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return record

    def _payload(self, record: CredentialRecord) -> str:
        return _StoredCredential(
            token=record.token, profile=record.profile, device_class=record.device_class
        ).model_dump_json()

    def _write_remember_tier(self, record: CredentialRecord) -> None:
        tier = self._remember_tier
        tier.set_item(StorageKeys.AUTH, self._payload(record))
        tier.set_item(
            StorageKeys.IS_MOBILE, "true" if record.device_class is DeviceClass.MOBILE else "false"
        )
        if record.expires_at is not None:
            tier.set_item(StorageKeys.EXPIRY, _to_epoch_ms(record.expires_at))
        else:
            tier.remove_item(StorageKeys.EXPIRY)
        tier.set_item(StorageKeys.REMEMBER, "true")

    def _write_session_tier(self, record: CredentialRecord) -> None:
        self._session_tier.set_item(StorageKeys.SESSION, self._payload(record))
        self._remember_tier.set_item(StorageKeys.REMEMBER, "false")

    # --- read path ---

    def load(self) -> CredentialRecord | None:
        """Rehydrate in-memory state from storage."""
        self._record = self._read()
        return self._record

    def get_auth(self) -> CredentialRecord | None:
        """Current credential, or None when absent or expired."""
        record = self._record
        if record is None:
            return self.load()
        if record.expires_at is not None and self._clock() > record.expires_at:
            self.logger.info("credential_expired", device_class=record.device_class.value)
            self._purge_remember_tier()
            self._record = None
            return None
        return record

    def _read(self) -> CredentialRecord | None:
        if self._remember_tier.get_item(StorageKeys.REMEMBER) == "true":
            return self._read_remember_tier()
        return self._read_session_tier()

    def _read_remember_tier(self) -> CredentialRecord | None:
        tier = self._remember_tier
        is_mobile = tier.get_item(StorageKeys.IS_MOBILE) == "true"

        expires_at = None
        if not is_mobile:
            raw_expiry = tier.get_item(StorageKeys.EXPIRY)
            if raw_expiry is None:
                # desktop remember entries are always written with an expiry
                self.logger.warning("credential_expiry_missing")
                self._purge_remember_tier()
                return None
            try:
                expires_at = _from_epoch_ms(raw_expiry)
            except (ValueError, OverflowError):
                self.logger.warning("credential_expiry_unreadable")
                self._purge_remember_tier()
                return None
            if self._clock() > expires_at:
                self.logger.info("credential_expired", device_class="desktop")
                self._purge_remember_tier()
                return None

        stored = self._decode(tier.get_item(StorageKeys.AUTH))
        if stored is None:
            return None
        return CredentialRecord(
            token=stored.token,
            profile=stored.profile,
            persistence_mode=PersistenceMode.REMEMBER,
            device_class=DeviceClass.MOBILE if is_mobile else DeviceClass.DESKTOP,
            expires_at=expires_at,
        )

    def _read_session_tier(self) -> CredentialRecord | None:
        stored = self._decode(self._session_tier.get_item(StorageKeys.SESSION))
        if stored is None:
            return None
        return CredentialRecord(
            token=stored.token,
            profile=stored.profile,
            persistence_mode=PersistenceMode.SESSION,
            device_class=stored.device_class,
        )

    def _decode(self, raw: str | None) -> _StoredCredential | None:
        if raw is None:
            return None
        try:
            return _StoredCredential.model_validate_json(raw)
        except ValidationError as e:
            self.logger.warning("credential_payload_invalid", errors=e.error_count())
            return None

    # --- removal / updates ---

    def _purge_remember_tier(self) -> None:
        for key in StorageKeys.REMEMBER_TIER:
            self._remember_tier.remove_item(key)

    def clear_auth(self) -> None:
        """Log out: purge both tiers and every auxiliary marker."""
        self._purge_remember_tier()
        self._session_tier.remove_item(StorageKeys.SESSION)
        self._record = None
        self.logger.info("credential_cleared")

    def update_user(self, partial: Mapping[str, Any]) -> UserProfile | None:
        """
        Merge profile fields into the loaded credential.

        Does nothing when no credential is loaded, so a cleared session is never
        brought back. Device class and expiry stay as they were written.
        """
        record = self._record
        if record is None:
            return None

        merged = UserProfile.model_validate({**record.profile.model_dump(), **partial})
        record = record.model_copy(update={"profile": merged})
        self._record = record

        if record.remember:
            self._remember_tier.set_item(StorageKeys.AUTH, self._payload(record))
        else:
            self._session_tier.set_item(StorageKeys.SESSION, self._payload(record))
        return merged

    def reset(self) -> None:
        """Drop in-memory state only; storage is left untouched."""
        self._record = None
