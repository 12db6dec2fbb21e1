"""Watchdog-based reload of the persisted settings file."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .settings import GatewaySettings, SettingsStore


def watchdog_path_matches(path: str | Path | None, watch_name: str) -> bool:
    """Return true when a filesystem event path names the watched file."""
    if not path:
        return False
    return Path(path).name == watch_name


class SettingsReloadWatcher:
    """Watch the settings file and hand external edits to `on_reload`."""

    def __init__(
        self,
        *,
        store: SettingsStore,
        on_reload: Callable[[GatewaySettings], Awaitable[None] | None],
        logger: logging.Logger,
    ) -> None:
        self._store = store
        self._on_reload = on_reload
        self._log = logger
        self._mtime: float | None = self._current_mtime()

    @property
    def path(self) -> Path:
        return self._store.path

    def _current_mtime(self) -> float | None:
        return self.path.stat().st_mtime if self.path.exists() else None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Reload settings when the mtime moved (or force=True)."""
        mtime = self._current_mtime()
        if mtime is None or (not force and mtime == self._mtime):
            return False

        self._log.info("Settings change detected at %s, reloading...", self.path)
        outcome = self._on_reload(self._store.load())
        if outcome is not None:
            await outcome
        self._mtime = mtime
        return True

    async def _watchdog_reload_loop(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        watch_dir = self.path.parent.resolve()
        watch_name = self.path.name
        watch_dir.mkdir(parents=True, exist_ok=True)

        class _SettingsEventHandler(FileSystemEventHandler):
            def _touch(self, path: str | bytes | None) -> None:
                if isinstance(path, bytes):
                    path = path.decode(errors="replace")
                if not watchdog_path_matches(path, watch_name):
                    return
                loop.call_soon_threadsafe(changed.set)

            def on_modified(self, event: FileSystemEvent) -> None:
                if not event.is_directory:
                    self._touch(event.src_path)

            def on_created(self, event: FileSystemEvent) -> None:
                if not event.is_directory:
                    self._touch(event.src_path)

            def on_moved(self, event: FileSystemEvent) -> None:
                if not event.is_directory:
                    self._touch(getattr(event, "dest_path", None))

        observer = Observer()
        observer.schedule(_SettingsEventHandler(), str(watch_dir), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                changed.clear()
                try:
                    await self.reload_if_changed()
                except Exception as exc:
                    self._log.warning("Settings reload failed, keeping current values: %s", exc)
        finally:
            observer.stop()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Run the watchdog loop and restart it after watcher failures."""
        while True:
            try:
                await self._watchdog_reload_loop()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log.warning("watchdog settings watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
