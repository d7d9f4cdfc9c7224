"""
Tests for the reconnect backoff and the reload listener
"""

import asyncio

import pytest
import websockets

from livepreview.clients.reload import (
    RELOAD_MESSAGE,
    ReconnectBackoff,
    ReloadListener,
    reload_socket_url,
)
from livepreview.exceptions.base import ProtocolError


class TestReconnectBackoff:
    """Delay growth, ceiling and reset"""

    def test_delays_grow_by_multiplier(self):
        backoff = ReconnectBackoff()

        assert backoff.next_delay() == 1.0
        assert backoff.next_delay() == 1.5
        assert backoff.next_delay() == 2.25
        assert backoff.attempt == 3

    def test_delay_never_exceeds_ceiling(self):
        backoff = ReconnectBackoff(base_delay=1.0, multiplier=1.5, max_delay=10.0)

        delays = [backoff.next_delay() for _ in range(30)]

        assert max(delays) == 10.0
        assert delays[-1] == 10.0
        assert delays == sorted(delays)

    def test_reset_after_success(self):
        backoff = ReconnectBackoff()
        for _ in range(8):
            backoff.next_delay()

        backoff.reset()

        assert backoff.attempt == 0
        assert backoff.next_delay() == 1.0

    @pytest.mark.parametrize("kwargs", [
        {"base_delay": 0},
        {"multiplier": 0.5},
        {"base_delay": 5.0, "max_delay": 1.0},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            ReconnectBackoff(**kwargs)

    def test_js_values(self):
        assert ReconnectBackoff().to_js() == {"base_ms": 1000, "multiplier": 1.5, "max_ms": 10000}


@pytest.mark.parametrize("url, expected", [
    ("http://localhost:8000/", "ws://localhost:8000/_lr_ws"),
    ("http://localhost:8000/pages/about.html?v=3", "ws://localhost:8000/_lr_ws"),
    ("https://preview.example:443/", "wss://preview.example:443/_lr_ws"),
    ("ws://127.0.0.1:9000", "ws://127.0.0.1:9000/_lr_ws"),
])
def test_reload_socket_url(url, expected):
    assert reload_socket_url(url) == expected


@pytest.mark.parametrize("url", ["localhost:8000", "ftp://host/", "http:///index.html"])
def test_reload_socket_url_rejects_non_server_urls(url):
    with pytest.raises(ProtocolError):
        reload_socket_url(url)


class TestReloadListener:
    """Listener against a real websockets server"""

    @pytest.mark.asyncio
    async def test_receives_reload_broadcasts(self):
        connected = asyncio.Event()
        clients = set()

        async def handler(ws, *args):
            clients.add(ws)
            connected.set()
            await ws.wait_closed()

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            reloaded = asyncio.Event()
            listener = ReloadListener(f"http://127.0.0.1:{port}/", reloaded.set)
            task = asyncio.create_task(listener.run())
            try:
                await asyncio.wait_for(connected.wait(), timeout=5.0)
                for ws in clients:
                    await ws.send("ping")
                    await ws.send(RELOAD_MESSAGE)
                await asyncio.wait_for(reloaded.wait(), timeout=5.0)
            finally:
                listener.stop()
                await asyncio.wait_for(task, timeout=5.0)

        assert listener.reloads == 1
        assert listener.connected is False

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, unused_tcp_port):
        backoff = ReconnectBackoff(base_delay=0.01, multiplier=1.5, max_delay=0.02)
        listener = ReloadListener(
            f"http://127.0.0.1:{unused_tcp_port}/",
            lambda: None,
            backoff=backoff,
            max_attempts=2
        )

        with pytest.raises(ProtocolError):
            await asyncio.wait_for(listener.run(), timeout=5.0)

        assert backoff.attempt == 3
