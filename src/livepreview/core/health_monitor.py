"""
Health Monitoring for preview servers

Polls the running server's diagnostics endpoint and infers whether any
browser is connected to the reload channel. The signal is pull-based and
best effort: it can lag behind, or miss, short-lived connection flaps.
"""

import asyncio
import time
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from .schemas import ConnectionStatus, DiagnosticSnapshot
from ..exceptions.base import ProtocolError

logger = structlog.get_logger(__name__)

DIAGNOSTICS_PATH = "/_diagnostics"

StatusCallback = Callable[[ConnectionStatus, Optional[DiagnosticSnapshot]], None]


def diagnostics_url(preview_url: str) -> str:
    """Diagnostics endpoint on the same origin as a preview URL"""
    parts = urlsplit(preview_url)
    return urlunsplit((parts.scheme or "http", parts.netloc, DIAGNOSTICS_PATH, "", ""))


class PreviewHealthMonitor:
    """
    Rate-limited poller for a preview server's diagnostics.

    Results carry the generation of the session they were requested for; a
    result whose generation is no longer current is discarded, so a slow
    poll for a stopped session never touches its successor.
    """

    def __init__(
        self,
        interval: float = 10.0,
        timeout: float = 3.0,
        on_status: Optional[StatusCallback] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.interval = interval
        self.timeout = timeout
        self.on_status = on_status
        self._client = client
        self._owns_client = client is None
        self._clock = clock

        self._url: Optional[str] = None
        self._generation: Optional[int] = None
        self._last_check: Optional[float] = None
        self._last_errors = 0

        self.status = ConnectionStatus.UNKNOWN
        self.last_snapshot: Optional[DiagnosticSnapshot] = None
        self.checks = 0

        self._monitoring_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def target(self) -> Optional[str]:
        return self._url

    def set_target(self, preview_url: str, generation: int):
        """Point the monitor at a (new) session's server"""
        self._url = diagnostics_url(preview_url)
        self._generation = generation
        self._last_check = None
        self._last_errors = 0
        self.status = ConnectionStatus.UNKNOWN
        self.last_snapshot = None
        logger.debug("Health target set", url=self._url, generation=generation)

    def clear(self):
        self._url = None
        self._generation = None
        self._last_check = None
        self.status = ConnectionStatus.UNKNOWN
        self.last_snapshot = None

    async def check(self, force: bool = False) -> ConnectionStatus:
        """
        Poll the diagnostics endpoint unless the last poll is too recent.

        Returns:
            The current connection status
        """
        if self._url is None:
            return self.status

        now = self._clock()
        if not force and self._last_check is not None and now - self._last_check < self.interval:
            return self.status
        self._last_check = now

        url, generation = self._url, self._generation
        snapshot: Optional[DiagnosticSnapshot] = None

        try:
            response = await self.client.get(url)
            response.raise_for_status()
            snapshot = DiagnosticSnapshot.model_validate(response.json())
            status = snapshot.connection_status()
        except httpx.HTTPError as e:
            error = ProtocolError(f"Diagnostics request failed: {e}", url)
            logger.warning(str(error))
            status = ConnectionStatus.ERROR
        except ValueError as e:
            error = ProtocolError(f"Malformed diagnostics response: {e}", url)
            logger.warning(str(error))
            status = ConnectionStatus.ERROR

        if generation != self._generation or url != self._url:
            logger.debug("Discarding stale health result", generation=generation, current=self._generation)
            return self.status

        self.checks += 1
        self.status = status
        self.last_snapshot = snapshot

        if snapshot is not None and snapshot.errors > self._last_errors:
            logger.warning(
                "Preview server reported errors",
                errors=snapshot.errors,
                last_error=snapshot.last_error
            )
            self._last_errors = snapshot.errors

        if self.on_status:
            self.on_status(status, snapshot)

        return status

    async def start(self):
        """Start background polling"""
        if self._running:
            logger.warning("Health monitoring already running")
            return

        self._running = True
        self._monitoring_task = asyncio.create_task(self._monitoring_loop())
        logger.debug("Health monitoring started", interval=self.interval)

    async def stop(self):
        """Stop background polling"""
        self._running = False
        if self._monitoring_task:
            self._monitoring_task.cancel()
            try:
                await self._monitoring_task
            except asyncio.CancelledError:
                pass
            self._monitoring_task = None
        logger.debug("Health monitoring stopped")

    async def aclose(self):
        await self.stop()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _monitoring_loop(self):
        """Main health monitoring loop"""
        while self._running:
            try:
                await self.check()
                # check() is rate-limited; the short tick only picks up new targets quickly
                await asyncio.sleep(min(self.interval, 1.0))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in health monitoring loop: {e}")
                await asyncio.sleep(1)
