"""HTTP reachability probing for the gateway."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

import httpx

from .cancellation import CancellationToken
from .errors import OperationCancelled

LOG = logging.getLogger(__name__)

DEFAULT_HEALTH_PATHS: tuple[str, ...] = ("/health", "/healthz", "/api/health", "/")
DEFAULT_PROBE_TIMEOUT_SECONDS = 2.0
DEFAULT_WAIT_ATTEMPTS = 12
DEFAULT_WAIT_INTERVAL_SECONDS = 1.0
# Non-2xx answers that still prove a listener on the port.
REACHABLE_STATUS_CODES = frozenset({301, 302, 401, 404})

ProbeFn = Callable[[int, CancellationToken], Awaitable[bool]]


def is_reachable_status(status_code: int) -> bool:
    return 200 <= status_code < 300 or status_code in REACHABLE_STATUS_CODES


class HealthProber:
    """Probe a fixed ordered list of HTTP paths on 127.0.0.1:<port>."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        paths: tuple[str, ...] = DEFAULT_HEALTH_PATHS,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.host = host
        self.paths = tuple(paths)
        self._timeout = httpx.Timeout(timeout_seconds)
        self._client = client or httpx.AsyncClient(timeout=self._timeout, follow_redirects=False)

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def url_for(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    async def probe_once(self, port: int, cancel: CancellationToken | None = None) -> bool:
        """Return True on the first path answering with a reachable status.

        Connection failures and the per-request timeout move on to the next
        path. Cancellation of `cancel` propagates as `OperationCancelled`.
        """
        token = cancel or CancellationToken()
        for path in self.paths:
            url = self.url_for(port, path)
            try:
                response = await token.run(self._client.get(url, timeout=self._timeout))
            except OperationCancelled:
                raise
            except httpx.TimeoutException:
                LOG.debug("health probe timed out url=%s", url)
                continue
            except httpx.HTTPError as exc:
                LOG.debug("health probe failed url=%s error=%s", url, exc)
                continue
            if is_reachable_status(response.status_code):
                return True
            LOG.debug("health probe status url=%s status=%s", url, response.status_code)
        return False

    async def wait_until_healthy(
        self,
        port: int,
        cancel: CancellationToken | None = None,
        *,
        attempts: int = DEFAULT_WAIT_ATTEMPTS,
        interval_seconds: float = DEFAULT_WAIT_INTERVAL_SECONDS,
    ) -> bool:
        return await wait_until_healthy(
            self.probe_once,
            port,
            cancel,
            attempts=attempts,
            interval_seconds=interval_seconds,
        )


async def wait_until_healthy(
    probe: ProbeFn,
    port: int,
    cancel: CancellationToken | None = None,
    *,
    attempts: int = DEFAULT_WAIT_ATTEMPTS,
    interval_seconds: float = DEFAULT_WAIT_INTERVAL_SECONDS,
) -> bool:
    """Probe up to `attempts` times; False when exhausted or cancelled."""
    token = cancel or CancellationToken()
    try:
        for attempt in range(1, attempts + 1):
            if await probe(port, token):
                LOG.debug("gateway reachable port=%s attempt=%s", port, attempt)
                return True
            if attempt < attempts:
                await token.sleep(interval_seconds)
    except OperationCancelled:
        return False
    return False
