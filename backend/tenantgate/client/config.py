# Overview: Device-side configuration with environment overrides.

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, fallback: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return int(raw) if raw else fallback
    except ValueError:
        return fallback


@dataclass
class DeviceConfig:
    """Device configuration with environment variable overrides."""
    # Authority
    api_base_url: str = os.environ.get("TENANTGATE_API_BASE_URL", "http://127.0.0.1:5000")
    request_timeout: float = float(os.environ.get("TENANTGATE_REQUEST_TIMEOUT", "10"))

    # Local store (":memory:" keeps everything in process)
    db_path: str = os.environ.get("TENANTGATE_DEVICE_DB", "tenantgate-device.sqlite3")
    # Fernet key (urlsafe base64). When unset, a key file is created beside db_path.
    device_key: str | None = os.environ.get("TENANTGATE_DEVICE_KEY") or None

    # Offline queue
    queue_cap: int = _env_int("TENANTGATE_QUEUE_CAP", 50)
    drain_batch: int = _env_int("TENANTGATE_DRAIN_BATCH", 10)
    # First wait after a drain stops on a network failure; doubles per failure
    drain_retry_seconds: float = float(os.environ.get("TENANTGATE_DRAIN_RETRY_SECONDS", "30"))

    # Offline password verifier cost
    bcrypt_rounds: int = _env_int("TENANTGATE_BCRYPT_ROUNDS", 12)

    # Reported to the authority at device registration
    platform: str = os.environ.get("TENANTGATE_PLATFORM", "desktop")

    @property
    def key_path(self) -> str | None:
        if self.db_path == ":memory:":
            return None
        return f"{self.db_path}.key"
