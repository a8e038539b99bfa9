# Overview: Embedded per-device store (SQLite via SQLAlchemy) and the LocalDeviceState owner.

"""
Local Device State

WHY: A device must keep selling while offline, so everything it needs to
decide "may this person operate this till right now" lives in one local
store: cached credentials, the device license marker, queued operations,
the session token pair, the last access snapshot and the clock offset.

OWNERSHIP (single writer per key):
- last_username, session_active, demo_expires_at: SessionReconciler
- session tokens, current_account:                SessionReconciler, ImpersonationBroker
- access snapshot cache:                          DeviceLicenseManager, SessionReconciler
- clock offset:                                   SecureClock
- impersonation backup + info markers:            ImpersonationBroker (always together)
- theme:                                          the UI

LIFECYCLE: LocalDeviceState.open() once at process start; teardown_session()
at logout; close() at exit.

SECURITY: Password verifiers, session tokens, queued payloads and license
seals are encrypted with Fernet under a per-device key. The key is never
stored inside the database it protects.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..access_state import AccessSnapshot
from ..time_utils import to_utc_z, utcnow, parse_iso_datetime
from .config import DeviceConfig


logger = logging.getLogger(__name__)

LocalBase = declarative_base()

THEMES = ("light", "dark")

# device_state keys
KEY_DEVICE_ID = "device_id"
KEY_LAST_USERNAME = "last_username"
KEY_THEME = "theme"
KEY_SESSION_ACTIVE = "session_active"
KEY_DEMO_EXPIRES_AT = "demo_expires_at"
KEY_SESSION = "session"
KEY_CURRENT_ACCOUNT = "current_account"
KEY_ACCESS_SNAPSHOT = "access_snapshot"
KEY_CLOCK = "secure_clock"
KEY_IMPERSONATION_BACKUP = "impersonation_backup"
KEY_IMPERSONATION_INFO = "impersonation_info"

_SESSION_KEYS = (
    KEY_SESSION,
    KEY_CURRENT_ACCOUNT,
    KEY_SESSION_ACTIVE,
    KEY_ACCESS_SNAPSHOT,
    KEY_DEMO_EXPIRES_AT,
    KEY_IMPERSONATION_BACKUP,
    KEY_IMPERSONATION_INFO,
)


class StateEntry(LocalBase):
    """One key of LocalDeviceState."""
    __tablename__ = "device_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class LocalCredential(LocalBase):
    """
    Offline login verifier for one account on this device.

    Written only right after the authority verified the same password.
    `verifier` is a bcrypt hash (salt and cost embedded), Fernet-encrypted.
    """
    __tablename__ = "local_credentials"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, nullable=False)
    username = Column(String(64), nullable=False, unique=True)
    display_name = Column(String(128), nullable=True)
    role = Column(String(32), nullable=False)
    permissions = Column(Text, nullable=False, default="{}")
    tenant_id = Column(Integer, nullable=True)
    verifier = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class LicenseMarker(LocalBase):
    """
    "This device is licensed for this tenant."

    `seal` is a Fernet token over tenant/device ids; a row whose seal does
    not decrypt to its own ids is ignored.
    """
    __tablename__ = "license_markers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "device_id", name="uq_license_marker_tenant_device"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False)
    device_id = Column(String(64), nullable=False)
    seal = Column(Text, nullable=False)
    activated_at = Column(DateTime, nullable=False, default=utcnow)


class QueuedOperationRow(LocalBase):
    """
    A state-changing operation waiting for the authority.

    Row id order is creation order (replay order).
    """
    __tablename__ = "queued_operations"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_id = Column(String(64), nullable=False, unique=True)
    kind = Column(String(16), nullable=False)
    payload = Column(Text, nullable=False)
    tenant_id = Column(Integer, nullable=False)
    account_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_error = Column(Text, nullable=True)
    # Set when the authority definitively rejected the entry; kept for admin review
    rejected_at = Column(DateTime, nullable=True)


@dataclass
class StoredSession:
    access_token: str
    refresh_token: str
    expires_at: str | None = None
    refresh_expires_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "refresh_expires_at": self.refresh_expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoredSession":
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=data.get("expires_at"),
            refresh_expires_at=data.get("refresh_expires_at"),
        )


def _load_or_create_key(config: DeviceConfig) -> bytes:
    if config.device_key:
        return config.device_key.encode("utf-8")

    path = config.key_path
    if path is None:
        return Fernet.generate_key()

    if os.path.exists(path):
        with open(path, "rb") as fh:
            return fh.read().strip()

    key = Fernet.generate_key()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(key)
    return key


class LocalDeviceState:
    """Typed access to the device store. See module docstring for key owners."""

    def __init__(self, engine, fernet: Fernet):
        self.engine = engine
        self._fernet = fernet
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def open(cls, config: DeviceConfig) -> "LocalDeviceState":
        if config.db_path == ":memory:":
            engine = create_engine(
                "sqlite://",
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(f"sqlite:///{config.db_path}")

        LocalBase.metadata.create_all(engine)
        state = cls(engine, Fernet(_load_or_create_key(config)))
        logger.debug("Local device state opened (device %s)", state.device_id)
        return state

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self):
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # ENCRYPTION
    # =========================================================================

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str | None:
        """Returns None for tokens not sealed by this device's key."""
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.warning("Local value failed integrity check; ignoring it")
            return None

    # =========================================================================
    # KEY/VALUE PRIMITIVES
    # =========================================================================

    def _get(self, key: str, session=None) -> str | None:
        if session is None:
            with self.transaction() as s:
                return self._get(key, s)
        entry = session.get(StateEntry, key)
        if entry is None:
            return None
        return self.decrypt(entry.value) if entry.is_encrypted else entry.value

    def _set(self, key: str, value: str, encrypted: bool = False, session=None) -> None:
        if session is None:
            with self.transaction() as s:
                return self._set(key, value, encrypted, s)
        stored = self.encrypt(value) if encrypted else value
        entry = session.get(StateEntry, key)
        if entry is None:
            session.add(StateEntry(key=key, value=stored, is_encrypted=encrypted, updated_at=utcnow()))
        else:
            entry.value = stored
            entry.is_encrypted = encrypted
            entry.updated_at = utcnow()

    def _delete(self, keys, session=None) -> None:
        if session is None:
            with self.transaction() as s:
                return self._delete(keys, s)
        session.execute(delete(StateEntry).where(StateEntry.key.in_(list(keys))))

    def _get_json(self, key: str, session=None):
        raw = self._get(key, session)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Local value %s is not valid JSON; ignoring it", key)
            return None

    def _set_json(self, key: str, value, encrypted: bool = False, session=None) -> None:
        self._set(key, json.dumps(value), encrypted, session)

    # =========================================================================
    # DEVICE / UI
    # =========================================================================

    @property
    def device_id(self) -> str:
        """Stable device identifier, generated on first use."""
        with self.transaction() as s:
            current = self._get(KEY_DEVICE_ID, s)
            if current:
                return current
            device_id = uuid.uuid4().hex
            self._set(KEY_DEVICE_ID, device_id, session=s)
            return device_id

    @property
    def last_username(self) -> str | None:
        return self._get(KEY_LAST_USERNAME)

    @last_username.setter
    def last_username(self, value: str | None) -> None:
        if value:
            self._set(KEY_LAST_USERNAME, value)
        else:
            self._delete([KEY_LAST_USERNAME])

    @property
    def theme(self) -> str:
        value = self._get(KEY_THEME)
        return value if value in THEMES else "light"

    @theme.setter
    def theme(self, value: str) -> None:
        if value not in THEMES:
            raise ValueError(f"theme must be one of {THEMES}")
        self._set(KEY_THEME, value)

    @property
    def session_active(self) -> bool:
        return self._get(KEY_SESSION_ACTIVE) == "1"

    @property
    def demo_expires_at(self) -> datetime | None:
        return parse_iso_datetime(self._get(KEY_DEMO_EXPIRES_AT))

    @demo_expires_at.setter
    def demo_expires_at(self, value: datetime | None) -> None:
        if value is None:
            self._delete([KEY_DEMO_EXPIRES_AT])
        else:
            self._set(KEY_DEMO_EXPIRES_AT, to_utc_z(value))

    # =========================================================================
    # SESSION
    # =========================================================================

    def get_session(self) -> StoredSession | None:
        data = self._get_json(KEY_SESSION)
        if not data:
            return None
        try:
            return StoredSession.from_dict(data)
        except KeyError:
            return None

    def get_current_account(self) -> dict | None:
        return self._get_json(KEY_CURRENT_ACCOUNT)

    def set_login(self, account: dict, session: StoredSession | None) -> None:
        """Record an established login. A LocalOnly login stores no tokens."""
        with self.transaction() as s:
            self._set_json(KEY_CURRENT_ACCOUNT, account, session=s)
            self._set(KEY_SESSION_ACTIVE, "1", session=s)
            self._set(KEY_LAST_USERNAME, account.get("username") or "", session=s)
            if session is not None:
                self._set_json(KEY_SESSION, session.to_dict(), encrypted=True, session=s)
            else:
                self._delete([KEY_SESSION], s)

    def set_session(self, session: StoredSession) -> None:
        self._set_json(KEY_SESSION, session.to_dict(), encrypted=True)

    def clear_session_tokens(self) -> None:
        self._delete([KEY_SESSION])

    def teardown_session(self) -> None:
        """Logout: drop everything tied to the signed-in session."""
        self._delete(_SESSION_KEYS)

    # =========================================================================
    # ACCESS SNAPSHOT CACHE
    # =========================================================================

    def cache_access(self, snapshot: AccessSnapshot) -> None:
        self._set_json(KEY_ACCESS_SNAPSHOT, snapshot.to_dict())

    def cached_access(self, tenant_id: int | None = None) -> AccessSnapshot | None:
        data = self._get_json(KEY_ACCESS_SNAPSHOT)
        if not data:
            return None
        try:
            snapshot = AccessSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return None
        if tenant_id is not None and snapshot.tenant_id != tenant_id:
            return None
        return snapshot

    def clear_tenant_cache(self) -> None:
        """Drop cached tenant-scoped data (used around identity switches)."""
        self._delete([KEY_ACCESS_SNAPSHOT])

    # =========================================================================
    # SECURE CLOCK
    # =========================================================================

    def save_clock(self, offset_ms: float, last_sync_ms: float) -> None:
        self._set_json(KEY_CLOCK, {"offset_ms": offset_ms, "last_sync_ms": last_sync_ms})

    def load_clock(self) -> tuple[float, float] | None:
        data = self._get_json(KEY_CLOCK)
        if not isinstance(data, dict):
            return None
        try:
            return float(data["offset_ms"]), float(data["last_sync_ms"])
        except (KeyError, TypeError, ValueError):
            return None

    # =========================================================================
    # IMPERSONATION MARKERS (written and cleared together)
    # =========================================================================

    def write_impersonation(self, backup: StoredSession, info: dict) -> None:
        with self.transaction() as s:
            self._set_json(KEY_IMPERSONATION_BACKUP, backup.to_dict(), encrypted=True, session=s)
            self._set_json(KEY_IMPERSONATION_INFO, info, session=s)

    def read_impersonation(self) -> tuple[StoredSession, dict] | None:
        with self.transaction() as s:
            backup = self._get_json(KEY_IMPERSONATION_BACKUP, s)
            info = self._get_json(KEY_IMPERSONATION_INFO, s)
        if not backup or not info:
            return None
        try:
            return StoredSession.from_dict(backup), info
        except KeyError:
            return None

    def clear_impersonation(self) -> None:
        self._delete([KEY_IMPERSONATION_BACKUP, KEY_IMPERSONATION_INFO])

    def switch_identity(self, account: dict, session: StoredSession) -> None:
        """Swap the signed-in account and tokens; last_username is left alone."""
        with self.transaction() as s:
            self._set_json(KEY_SESSION, session.to_dict(), encrypted=True, session=s)
            self._set_json(KEY_CURRENT_ACCOUNT, account, session=s)
            self._set(KEY_SESSION_ACTIVE, "1", session=s)
            self._delete([KEY_ACCESS_SNAPSHOT], s)

    def finish_impersonation(self, account: dict, session: StoredSession) -> None:
        """Switch back to the restored operator session and drop both markers at once."""
        with self.transaction() as s:
            self._set_json(KEY_SESSION, session.to_dict(), encrypted=True, session=s)
            self._set_json(KEY_CURRENT_ACCOUNT, account, session=s)
            self._delete([KEY_IMPERSONATION_BACKUP, KEY_IMPERSONATION_INFO, KEY_ACCESS_SNAPSHOT], s)

    # =========================================================================
    # LICENSE MARKERS
    # =========================================================================

    def _seal_text(self, tenant_id: int, device_id: str) -> str:
        return f"{tenant_id}:{device_id}"

    def has_license_marker(self, tenant_id: int, device_id: str) -> bool:
        with self.transaction() as s:
            marker = s.query(LicenseMarker).filter_by(tenant_id=tenant_id, device_id=device_id).first()
            if marker is None:
                return False
            return self.decrypt(marker.seal) == self._seal_text(tenant_id, device_id)

    def set_license_marker(self, tenant_id: int, device_id: str) -> None:
        with self.transaction() as s:
            marker = s.query(LicenseMarker).filter_by(tenant_id=tenant_id, device_id=device_id).first()
            if marker is None:
                marker = LicenseMarker(tenant_id=tenant_id, device_id=device_id)
                s.add(marker)
            marker.seal = self.encrypt(self._seal_text(tenant_id, device_id))
            marker.activated_at = utcnow()

    def clear_license_marker(self, tenant_id: int, device_id: str) -> None:
        with self.transaction() as s:
            s.execute(
                delete(LicenseMarker).where(
                    LicenseMarker.tenant_id == tenant_id,
                    LicenseMarker.device_id == device_id,
                )
            )
