# Overview: Trusted device clock: authority offset sync with backoff and a monotonic drift check.

"""
Secure Clock

WHY: Access state (active/grace/locked) and license decisions on a device
must not trust the wall clock alone; rolling it back would stretch a grace
window indefinitely.

- now() = wall clock + offset learned from the authority's /api/system/time
- The offset is persisted, so an offline restart keeps the last correction
- Sync every 5 minutes; each failure doubles the interval up to 30 minutes
- When a sync fails and wall time has moved more than 60 s away from
  monotonic elapsed time since the last sync, the offset is re-derived from the
  monotonic clock (the wall clock was changed under us)
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable

from ..errors import TransientNetworkFailure


logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 5 * 60.0
MAX_SYNC_INTERVAL = 30 * 60.0
MAX_DRIFT_SECONDS = 60.0
_EPOCH = datetime(1970, 1, 1)


class SecureClock:
    def __init__(
        self,
        authority,
        state,
        wall: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._authority = authority
        self._state = state
        self._wall = wall
        self._monotonic = monotonic

        self.offset_ms = 0.0
        self.last_sync_ms = 0.0
        self.sync_interval = DEFAULT_SYNC_INTERVAL
        self._last_attempt_mono: float | None = None

        cached = state.load_clock()
        if cached is not None:
            self.offset_ms, self.last_sync_ms = cached

        # Trusted time at a monotonic instant; drift is measured against it
        self._anchor_ms = self.timestamp_ms()
        self._anchor_mono = monotonic()

    def timestamp_ms(self) -> float:
        return self._wall() * 1000.0 + self.offset_ms

    def now(self) -> datetime:
        """Trusted current time as naive UTC."""
        return _EPOCH + timedelta(milliseconds=self.timestamp_ms())

    def is_synced(self) -> bool:
        return (self._wall() * 1000.0 - self.last_sync_ms) < DEFAULT_SYNC_INTERVAL * 1000.0

    def sync_due(self) -> bool:
        if self._last_attempt_mono is None:
            return True
        return self._monotonic() - self._last_attempt_mono >= self.sync_interval

    def sync(self) -> bool:
        """Learn the offset from the authority. Returns True on success."""
        self._last_attempt_mono = self._monotonic()
        try:
            server_ms = self._authority.server_time_ms()
        except TransientNetworkFailure:
            self.sync_interval = min(MAX_SYNC_INTERVAL, max(DEFAULT_SYNC_INTERVAL, self.sync_interval * 2))
            logger.warning("Time sync failed; next attempt in %.0f s", self.sync_interval)
            self._check_drift()
            return False

        local_ms = self._wall() * 1000.0
        self.offset_ms = server_ms - local_ms
        self.last_sync_ms = local_ms
        self.sync_interval = DEFAULT_SYNC_INTERVAL
        self._anchor_ms = float(server_ms)
        self._anchor_mono = self._monotonic()
        self._state.save_clock(self.offset_ms, self.last_sync_ms)
        logger.debug("Time synced, offset %.0f ms", self.offset_ms)
        return True

    def maybe_sync(self) -> bool:
        if not self.sync_due():
            return False
        return self.sync()

    def _check_drift(self) -> None:
        expected_ms = self._anchor_ms + (self._monotonic() - self._anchor_mono) * 1000.0
        drift_s = abs(self.timestamp_ms() - expected_ms) / 1000.0
        if drift_s > MAX_DRIFT_SECONDS:
            logger.warning("Possible clock manipulation detected (drift %.0f s); using monotonic time", drift_s)
            self.offset_ms = expected_ms - self._wall() * 1000.0
            self._state.save_clock(self.offset_ms, self.last_sync_ms)

    def on_connectivity(self, event: str) -> None:
        if event == "online":
            self.sync()
