"""Periodic health loop for the monitor target."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from .cancellation import CancellationToken
from .errors import OperationCancelled
from .events import EventFeed
from .health import ProbeFn
from .state import MonitorState, MonitorStateStore
from .status import build_monitor_status

LOG = logging.getLogger(__name__)

DEFAULT_HEALTH_INTERVAL_SECONDS = 5.0


class HealthMonitorLoop:
    """Probe the store's target while it says `is_monitoring`.

    At most one loop runs at a time. Starting while running is a no-op that
    reports success.
    """

    def __init__(
        self,
        store: MonitorStateStore,
        probe: ProbeFn,
        events: EventFeed,
        *,
        interval_seconds: float = DEFAULT_HEALTH_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._probe = probe
        self._events = events
        self.interval_seconds = interval_seconds
        self._token: CancellationToken | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def start(self, cancel: CancellationToken | None = None) -> bool:
        """Start the loop on the running event loop."""
        if self._running:
            self._events.log("Gateway monitoring already running.")
            return True

        monitor = self._store.get()
        if monitor is None or not monitor.is_monitoring:
            self._events.log("No active monitor port.")
            return False

        token = cancel.child() if cancel is not None else CancellationToken()
        if self._token is not None:
            self._token.cancel()
        self._token = token
        self._running = True
        self._events.set_status("Gateway monitoring started.")
        self._task = asyncio.create_task(self._run(token))
        return True

    def stop(self) -> None:
        """Cancel the loop; it clears its running flag on exit."""
        if self._token is not None:
            self._token.cancel()
            self._token.detach()
        self._token = None
        self._running = False

    async def stop_and_wait(self) -> None:
        task = self._task
        self.stop()
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def check_now(self, cancel: CancellationToken | None = None) -> MonitorState | None:
        """One probe-and-write outside the loop (used right after registering a target)."""
        monitor = self._store.get()
        if monitor is None:
            return None
        try:
            healthy = await self._probe(monitor.port, cancel or CancellationToken())
        except OperationCancelled:
            healthy = False
        return self._record(monitor.port, healthy)

    def _record(self, port: int, healthy: bool) -> MonitorState | None:
        checked_at = datetime.now(timezone.utc)

        def _apply(state: MonitorState) -> MonitorState:
            # The target may have been replaced while probing; leave the new one alone.
            if state.port != port:
                return state
            return state.with_health(healthy, checked_at)

        return self._store.mutate(_apply)

    async def _run(self, token: CancellationToken) -> None:
        previous: bool | None = None
        first = True
        try:
            while not token.is_cancelled:
                monitor = self._store.get()
                if monitor is None or not monitor.is_monitoring:
                    break

                try:
                    healthy = await self._probe(monitor.port, token)
                except OperationCancelled:
                    raise
                except Exception as exc:
                    LOG.warning("health probe raised port=%s error=%s", monitor.port, exc)
                    healthy = False
                self._record(monitor.port, healthy)

                monitor = self._store.get()
                if monitor is None:
                    break
                if first or previous != monitor.is_healthy:
                    state = "healthy" if monitor.is_healthy else "unhealthy"
                    self._events.log(f"Gateway health check: {state} on port {monitor.port}.")
                    previous = monitor.is_healthy
                self._events.set_status(build_monitor_status(monitor))
                first = False

                await token.sleep(self.interval_seconds)
        except OperationCancelled:
            LOG.debug("health monitor loop cancelled")
        finally:
            if self._token is token or self._token is None:
                self._running = False
            token.detach()
