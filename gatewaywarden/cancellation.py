"""Explicit cancellation tokens threaded through every suspending operation.

A token is cancelled once and stays cancelled. Child tokens are derived with
`CancellationToken.child()`; cancelling a parent cancels all of its live
children, while cancelling a child leaves the parent untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .errors import OperationCancelled

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationRegistration:
    """Handle returned by `CancellationToken.register`."""

    def __init__(self, token: "CancellationToken", callback: Callable[[], None]) -> None:
        self._token = token
        self._callback = callback

    def dispose(self) -> None:
        """Detach the callback; no-op when it already ran."""
        self._token._unregister(self._callback)


class CancellationToken:
    """One-shot cancellation signal with synchronous callbacks."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._event: asyncio.Event | None = None
        self._parent_registration: CancellationRegistration | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the token and run registered callbacks in registration order."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOG.exception("cancellation callback failed")

    def register(self, callback: Callable[[], None]) -> CancellationRegistration:
        """Run `callback` on cancellation (immediately when already cancelled)."""
        registration = CancellationRegistration(self, callback)
        if self._cancelled:
            callback()
            return registration
        self._callbacks.append(callback)
        return registration

    def _unregister(self, callback: Callable[[], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    def child(self) -> "CancellationToken":
        """Derive a linked child token."""
        linked = CancellationToken()
        linked._parent_registration = self.register(linked.cancel)
        return linked

    def detach(self) -> None:
        """Unlink a child from its parent so long-lived parents do not accumulate callbacks."""
        if self._parent_registration is not None:
            self._parent_registration.dispose()
            self._parent_registration = None

    def __enter__(self) -> "CancellationToken":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.detach()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("operation cancelled")

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._get_event().wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, raising `OperationCancelled` if cancelled meanwhile."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._get_event().wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise OperationCancelled("operation cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it with `OperationCancelled` on cancellation."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._get_event().wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise OperationCancelled("operation cancelled")
