"""User-visible log and status feed.

The presentation layer reads `status` and `entries()` or subscribes; every
line is mirrored into the `gatewaywarden` logger tree.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

LOG = logging.getLogger("gatewaywarden.events")


@dataclass(frozen=True)
class EventEntry:
    timestamp: datetime
    kind: str
    text: str


EventListener = Callable[[EventEntry], None]


class EventFeed:
    """Bounded in-memory feed of log lines plus the current status string."""

    def __init__(self, max_entries: int = 2000) -> None:
        self._lock = threading.Lock()
        self._entries: deque[EventEntry] = deque(maxlen=max_entries)
        self._listeners: list[EventListener] = []
        self._status = ""

    @property
    def status(self) -> str:
        with self._lock:
            return self._status

    def log(self, text: str, *, level: int = logging.INFO) -> None:
        LOG.log(level, "%s", text)
        self._publish(EventEntry(datetime.now(timezone.utc), "log", text))

    def set_status(self, text: str) -> None:
        with self._lock:
            if text == self._status:
                return
            self._status = text
        self._publish(EventEntry(datetime.now(timezone.utc), "status", text))

    def entries(self, limit: int | None = None, kind: str | None = None) -> list[EventEntry]:
        with self._lock:
            items = [entry for entry in self._entries if kind is None or entry.kind == kind]
        if limit is not None and limit >= 0:
            return items[-limit:] if limit else []
        return items

    def lines(self, limit: int | None = None) -> list[str]:
        return [entry.text for entry in self.entries(limit=limit, kind="log")]

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, entry: EventEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                LOG.exception("event listener failed")
