"""Monitor state record and the lock-guarded store shared by all loops."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

LOG = logging.getLogger(__name__)

StateListener = Callable[["MonitorState | None"], None]


@dataclass(frozen=True)
class MonitorState:
    """Health and token status of the single monitor target."""

    port: int
    is_monitoring: bool = True
    is_healthy: bool | None = None
    last_checked: datetime | None = None
    monitor_token: str | None = None
    token_required: bool = False
    token_status_message: str | None = None
    health_status_message: str | None = None

    @classmethod
    def new(cls, port: int) -> "MonitorState":
        """Fresh target: monitoring enabled, health unknown."""
        return cls(port=port)

    def with_health(
        self,
        is_healthy: bool,
        checked_at: datetime,
        health_status_message: str | None = None,
    ) -> "MonitorState":
        return replace(
            self,
            is_healthy=is_healthy,
            last_checked=checked_at,
            health_status_message=health_status_message,
        )

    def with_token(self, token: str) -> "MonitorState":
        return replace(self, monitor_token=token, token_required=False, token_status_message=None)

    def with_token_missing(self, message: str) -> "MonitorState":
        return replace(self, monitor_token=None, token_required=True, token_status_message=message)

    def with_monitoring(self, enabled: bool) -> "MonitorState":
        return replace(self, is_monitoring=enabled)


class MonitorStateStore:
    """Single point of truth for the monitor target.

    Every read and write takes the same lock. The lock is a plain
    `threading.Lock` and is only held inside synchronous critical sections,
    never across an await. Listeners run after the lock is released.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: MonitorState | None = None
        self._listeners: list[StateListener] = []

    def get(self) -> MonitorState | None:
        with self._lock:
            return self._state

    def set(self, state: MonitorState | None) -> None:
        """Replace the current state wholesale (None discards it)."""
        with self._lock:
            self._state = state
        self._notify(state)

    def clear(self) -> None:
        self.set(None)

    def mutate(self, fn: Callable[[MonitorState], MonitorState]) -> MonitorState | None:
        """Apply a pure transformation to the current state; no-op when unset."""
        with self._lock:
            current = self._state
            if current is None:
                return None
            updated = fn(current)
            self._state = updated
        if updated is not current:
            self._notify(updated)
        return updated

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, state: MonitorState | None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                LOG.exception("monitor state listener failed")
