"""Clipboard watch loop that auto-detects a pasted gateway token."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable

from .cancellation import CancellationToken
from .errors import OperationCancelled
from .events import EventFeed
from .process import ProcessRunner
from .state import MonitorStateStore
from .text_rules import extract_token_or_candidate

LOG = logging.getLogger(__name__)

DEFAULT_WATCH_SECONDS = 600.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_CLIPBOARD_COMMAND = ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", "Get-Clipboard"]

ClipboardReader = Callable[[], Awaitable[str | None]]
TokenCallback = Callable[[str], "Awaitable[None] | None"]


class BridgeClipboardReader:
    """Read the host clipboard by running a command through the process adapter."""

    def __init__(self, runner: ProcessRunner, command: list[str] | None = None) -> None:
        argv = list(command or DEFAULT_CLIPBOARD_COMMAND)
        if not argv:
            raise ValueError("clipboard command must not be empty")
        self._runner = runner
        self._argv = argv

    async def __call__(self) -> str | None:
        result = await self._runner.run(self._argv[0], self._argv[1:])
        if result.exit_code != 0:
            raise RuntimeError(f"clipboard command exited with code {result.exit_code}")
        return result.stdout


class ClipboardTokenWatch:
    """Poll clipboard text for a new token for a bounded time."""

    def __init__(
        self,
        store: MonitorStateStore,
        read_clipboard: ClipboardReader,
        on_token: TokenCallback,
        events: EventFeed,
        *,
        duration_seconds: float = DEFAULT_WATCH_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._read_clipboard = read_clipboard
        self._on_token = on_token
        self._events = events
        self.duration_seconds = duration_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._token: CancellationToken | None = None
        self._task: asyncio.Task[str | None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task[str | None] | None:
        return self._task

    def start(self, last_seen: str | None = None) -> bool:
        """(Re)start watching; a previous watch is cancelled first."""
        if self._token is not None:
            self._token.cancel()
        token = CancellationToken()
        self._token = token
        self._task = asyncio.create_task(self._run(token, last_seen))
        self._events.log("Watching clipboard for a gateway token.")
        return True

    def stop(self) -> None:
        if self._token is not None:
            self._token.cancel()
        self._token = None

    async def _read(self) -> str | None:
        try:
            return await self._read_clipboard()
        except OperationCancelled:
            raise
        except Exception as exc:
            LOG.debug("clipboard read failed, retrying: %s", exc)
            return None

    async def _run(self, token: CancellationToken, last_seen: str | None) -> str | None:
        deadline = time.monotonic() + self.duration_seconds
        try:
            while not token.is_cancelled and time.monotonic() < deadline:
                text = await token.run(self._read())
                found = extract_token_or_candidate(text)
                if found and found != last_seen:
                    self._store.mutate(lambda state: state.with_token(found))
                    outcome = self._on_token(found)
                    if inspect.isawaitable(outcome):
                        await outcome
                    self._events.log("Gateway token detected from clipboard.")
                    self._events.set_status("Gateway token loaded from clipboard.")
                    return found
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                await token.sleep(min(self.poll_interval_seconds, remaining))
        except OperationCancelled:
            LOG.debug("clipboard watch cancelled")
            return None
        finally:
            if self._token is token:
                self._token = None
        if not token.is_cancelled:
            self._events.log("Clipboard token watch timed out.")
            self._events.set_status("Clipboard token watch stopped (timed out).")
        return None
