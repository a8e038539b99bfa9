# Overview: Connectivity observer that fans out online/offline transitions to subscribers.

from __future__ import annotations

import logging
import threading
from typing import Callable

from ..errors import TransientNetworkFailure


logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"


class ConnectivityObserver:
    """
    Single source of truth for "is the authority reachable".

    Subscribers (queue drainer, clock sync, license re-check) receive
    ONLINE/OFFLINE only on transitions, in subscription order. A failing
    subscriber is logged and does not stop the others.

    Heartbeat callbacks run on every successful check() that finds the
    device already online, so periodic work (stalled drains, clock sync)
    keeps going without a transition. The host app calls check() on a timer.
    """

    def __init__(self, initially_online: bool = False, ping: Callable[[], object] | None = None):
        self._online = bool(initially_online)
        self._ping = ping
        self._subscribers: list[Callable[[str], None]] = []
        self._heartbeats: list[Callable[[], object]] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a transition callback. Returns an unsubscribe function."""
        return self._register(self._subscribers, callback)

    def on_heartbeat(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Register a steady-online callback. Returns an unsubscribe function."""
        return self._register(self._heartbeats, callback)

    def _register(self, registry: list, callback) -> Callable[[], None]:
        with self._lock:
            registry.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in registry:
                    registry.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        with self._lock:
            online = bool(online)
            if online == self._online:
                return
            self._online = online
            subscribers = list(self._subscribers)

        event = ONLINE if online else OFFLINE
        logger.info("Connectivity changed: %s", event)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Connectivity subscriber %r failed on %s", callback, event)

    def check(self) -> bool:
        """Ping the authority (when a ping is configured) and update state."""
        if self._ping is None:
            return self._online
        try:
            self._ping()
        except TransientNetworkFailure:
            self.set_online(False)
            return self._online

        if not self._online:
            self.set_online(True)
            return self._online

        with self._lock:
            heartbeats = list(self._heartbeats)
        for callback in heartbeats:
            try:
                callback()
            except Exception:
                logger.exception("Heartbeat callback %r failed", callback)
        return self._online
