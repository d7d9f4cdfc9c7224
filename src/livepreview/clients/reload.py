"""
Client side of the reload protocol

``ReconnectBackoff`` is the state machine the browser script follows when its
WebSocket drops; the generated JavaScript is rendered from the same values.
``ReloadListener`` is the Python counterpart of that script.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import structlog
import websockets
from websockets.exceptions import WebSocketException

from ..exceptions.base import ProtocolError

logger = structlog.get_logger(__name__)

RELOAD_PATH = "/_lr_ws"
RELOAD_MESSAGE = "reload"


@dataclass
class ReconnectBackoff:
    """Exponential reconnect delay with a ceiling"""

    base_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 10.0
    attempt: int = 0
    delay: float = field(init=False)

    def __post_init__(self):
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be below base_delay")
        self.delay = self.base_delay

    def next_delay(self) -> float:
        """Record a failed attempt and return how long to wait before the next one"""
        current = min(self.delay, self.max_delay)
        self.attempt += 1
        self.delay = min(self.delay * self.multiplier, self.max_delay)
        return current

    def reset(self):
        """Connection succeeded"""
        self.attempt = 0
        self.delay = self.base_delay

    def to_js(self) -> dict:
        """Millisecond values for the browser script"""
        return {
            "base_ms": int(self.base_delay * 1000),
            "multiplier": self.multiplier,
            "max_ms": int(self.max_delay * 1000),
        }


def reload_socket_url(preview_url: str) -> str:
    """Map a preview page URL to the reload WebSocket URL on the same host"""
    parts = urlsplit(preview_url)
    if parts.scheme not in ("http", "https", "ws", "wss") or not parts.netloc:
        raise ProtocolError(f"Not a preview server URL: {preview_url}", preview_url)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    return urlunsplit((scheme, parts.netloc, RELOAD_PATH, "", ""))


ReloadCallback = Callable[[], Union[None, Awaitable[None]]]


class ReloadListener:
    """
    Subscribes to a preview server's reload broadcasts

    Reconnects with ``ReconnectBackoff`` until stopped or until
    ``max_attempts`` consecutive failures.
    """

    def __init__(
        self,
        url: str,
        on_reload: ReloadCallback,
        backoff: Optional[ReconnectBackoff] = None,
        max_attempts: Optional[int] = None
    ):
        self.url = reload_socket_url(url)
        self.on_reload = on_reload
        self.backoff = backoff or ReconnectBackoff()
        self.max_attempts = max_attempts
        self.connected = False
        self.reloads = 0
        self._stopped = asyncio.Event()

    async def run(self):
        """Listen until ``stop()`` is called"""
        while not self._stopped.is_set():
            try:
                async with websockets.connect(self.url) as socket:
                    self.connected = True
                    self.backoff.reset()
                    logger.info("Reload channel connected", url=self.url)
                    await self._consume(socket)
            except (OSError, WebSocketException) as e:
                logger.debug("Reload channel unavailable", url=self.url, error=str(e))
            finally:
                self.connected = False

            if self._stopped.is_set():
                break

            delay = self.backoff.next_delay()
            if self.max_attempts is not None and self.backoff.attempt > self.max_attempts:
                raise ProtocolError(
                    f"Could not reach {self.url} after {self.max_attempts} attempts",
                    self.url
                )

            logger.info("Reconnecting to reload channel", delay=delay, attempt=self.backoff.attempt)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _consume(self, socket):
        stop_task = asyncio.ensure_future(self._stopped.wait())
        try:
            while True:
                receive = asyncio.ensure_future(socket.recv())
                done, _ = await asyncio.wait(
                    {receive, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_task in done:
                    receive.cancel()
                    return

                message = receive.result()
                if message == RELOAD_MESSAGE:
                    self.reloads += 1
                    result = self.on_reload()
                    if asyncio.iscoroutine(result):
                        await result
        finally:
            stop_task.cancel()

    def stop(self):
        self._stopped.set()
