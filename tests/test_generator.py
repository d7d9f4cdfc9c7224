"""
Tests for the generated preview server program
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from livepreview.clients.reload import ReconnectBackoff
from livepreview.dev.generator import (
    contains_server_logic,
    generate_server_source,
    render_client_script,
)

from conftest import load_server_module

SCRIPT_TAG = '<script src="/_lr_script.js"></script>'


class FakeSocket:
    """Just enough of a Starlette WebSocket for the broker"""

    def __init__(self, open=True, fail=False):
        self.client_state = WebSocketState.CONNECTED if open else WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.fail = fail
        self.sent = []

    async def send_text(self, message):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(message)

    async def close(self, code=1000):
        self.client_state = WebSocketState.DISCONNECTED


class TestGeneration:
    """Choosing between a generated program and the user's own server"""

    def test_script_with_server_returns_empty(self, server_script, tmp_path):
        assert contains_server_logic(server_script)
        assert generate_server_source(server_script, tmp_path) == ""

    def test_plain_script_gets_generated_server(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("print('no server here')\n")

        assert not contains_server_logic(script)
        assert "def create_app" in generate_server_source(script, tmp_path)

    def test_html_is_never_treated_as_server(self, project):
        page = project / "index.html"
        page.write_text("<script>app.run(</script>")

        assert not contains_server_logic(page)

    def test_unreadable_script_is_not_a_server(self, tmp_path):
        assert not contains_server_logic(tmp_path / "missing.py")

    def test_source_compiles_with_values_baked_in(self, project):
        source = generate_server_source(project / "index.html", project, port=9123)

        compile(source, "_preview_server.py", "exec")
        assert "DEFAULT_PORT = 9123" in source
        assert repr(str(project.resolve())) in source
        assert "${" not in source

    def test_client_script_constants(self):
        script = render_client_script(ReconnectBackoff(base_delay=2.0, multiplier=2.0, max_delay=8.0))

        assert "var BASE_DELAY = 2000;" in script
        assert "var MULTIPLIER = 2.0;" in script
        assert "var MAX_DELAY = 8000;" in script
        assert "var LIVENESS_INTERVAL = 5000;" in script
        assert "var STALL_TIMEOUT = 30000;" in script
        assert '"/_lr_ws"' in script
        assert 'event.data === "reload"' in script


class TestInjection:
    """The reload tag is added exactly once"""

    def test_before_head_close(self, server_module):
        html = server_module.inject_reload_script("<html><head><title>x</title></head><body></body></html>")

        assert SCRIPT_TAG + "</head>" in html
        assert html.count(SCRIPT_TAG) == 1

    def test_before_body_close_without_head(self, server_module):
        html = server_module.inject_reload_script("<body><p>hi</p></BODY>")

        assert html.endswith(SCRIPT_TAG + "</BODY>")

    def test_appended_to_fragments(self, server_module):
        assert server_module.inject_reload_script("<p>hi</p>") == "<p>hi</p>" + SCRIPT_TAG

    def test_idempotent(self, server_module):
        once = server_module.inject_reload_script("<head></head>")

        assert server_module.inject_reload_script(once) == once


class TestServerRoutes:
    """HTTP surface of the generated app"""

    @pytest.fixture
    def client(self, server_module, project):
        return TestClient(server_module.create_app(project, watch=False))

    def test_html_injected_once_across_requests(self, client):
        first = client.get("/")
        second = client.get("/index.html")

        assert first.status_code == 200
        assert first.text.count(SCRIPT_TAG) == 1
        assert second.text.count(SCRIPT_TAG) == 1
        assert first.headers["cache-control"] == "no-cache, no-store, must-revalidate"

    def test_page_that_already_has_the_tag(self, client, project):
        (project / "tagged.html").write_text(f"<head>{SCRIPT_TAG}</head>")

        assert client.get("/tagged.html").text.count(SCRIPT_TAG) == 1

    def test_nested_page(self, client):
        response = client.get("/pages/deep/about.html")

        assert response.status_code == 200
        assert SCRIPT_TAG in response.text

    def test_static_asset_not_injected(self, client):
        response = client.get("/style.css")

        assert response.status_code == 200
        assert response.text == "body { color: red; }"
        assert SCRIPT_TAG not in response.text

    def test_missing_file(self, client):
        assert client.get("/nope.html").status_code == 404

    def test_client_script(self, client):
        response = client.get("/_lr_script.js")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/javascript")
        assert "location.reload()" in response.text

    def test_reload_path_without_upgrade(self, client):
        assert client.get("/_lr_ws").status_code == 501

    def test_reload_path_without_upgrade_is_not_an_error(self, client):
        client.get("/_lr_ws")
        data = client.get("/_diagnostics").json()

        assert data["errors"] == 0
        assert data["lastError"] is None

    @pytest.mark.parametrize("path,status,expected", [
        ("/_lr_ws", 501, False),
        ("/_lr_ws", 500, True),
        ("/index.html", 501, True),
        ("/index.html", 503, True),
        ("/index.html", 404, False),
    ])
    def test_server_error_classification(self, server_module, path, status, expected):
        assert server_module.is_server_error({"path": path}, status) is expected

    def test_diagnostics_snapshot(self, client):
        client.get("/")
        response = client.get("/_diagnostics")
        data = response.json()

        assert set(data) == {
            "startTime", "connections", "activeConnections", "wsConnections",
            "activeWsConnections", "requests", "errors", "lastError",
        }
        assert data["requests"] == 2
        assert data["activeWsConnections"] == 0
        assert data["lastError"] is None

    def test_websocket_counters(self, client):
        with client.websocket_connect("/_lr_ws"):
            during = client.get("/_diagnostics").json()

        after = client.get("/_diagnostics").json()

        assert during["wsConnections"] == 1
        assert during["activeWsConnections"] == 1
        assert after["wsConnections"] == 1
        assert after["activeWsConnections"] == 0

    def test_lifespan_with_observer(self, server_module, project):
        with TestClient(server_module.create_app(project, watch=True)) as client:
            assert client.get("/").status_code == 200


class TestStaticResolution:
    """Requests never leave the project root"""

    def test_parent_escape_rejected(self, server_module, project):
        (project.parent / "secret.txt").write_text("secret")

        assert server_module.resolve_static(project.resolve(), "../secret.txt") is None

    def test_directory_maps_to_index(self, server_module, project):
        root = project.resolve()

        assert server_module.resolve_static(root, "") == root / "index.html"

    def test_directory_without_index(self, server_module, project):
        assert server_module.resolve_static(project.resolve(), "pages") is None


class TestReloadBroker:
    """Broadcasting the reload signal"""

    @pytest.mark.asyncio
    async def test_broadcast_counts_open_sockets(self, server_module):
        broker = server_module.ReloadBroker(server_module.Diagnostics())
        open_sockets = [FakeSocket() for _ in range(3)]
        closed = FakeSocket(open=False)
        for ws in open_sockets + [closed]:
            broker.add(ws)

        delivered = await broker.broadcast()

        assert delivered == 3
        assert all(ws.sent == ["reload"] for ws in open_sockets)
        assert closed.sent == []
        assert closed not in broker.clients
        assert len(broker.clients) == 3

    @pytest.mark.asyncio
    async def test_failed_send_drops_socket(self, server_module):
        diagnostics = server_module.Diagnostics()
        broker = server_module.ReloadBroker(diagnostics)
        healthy, broken = FakeSocket(), FakeSocket(fail=True)
        broker.add(healthy)
        broker.add(broken)

        assert await broker.broadcast() == 1
        assert broker.clients == {healthy}
        assert diagnostics.errors == 1
        assert "connection reset" in diagnostics.last_error

    @pytest.mark.asyncio
    async def test_close_all(self, server_module):
        broker = server_module.ReloadBroker(server_module.Diagnostics())
        sockets = [FakeSocket() for _ in range(2)]
        for ws in sockets:
            broker.add(ws)

        await broker.close_all()

        assert broker.clients == set()
        assert all(ws.client_state == WebSocketState.DISCONNECTED for ws in sockets)

    @pytest.mark.asyncio
    async def test_change_notifier_debounces(self, server_module, capsys):
        broker = server_module.ReloadBroker(server_module.Diagnostics())
        ws = FakeSocket()
        broker.add(ws)
        notifier = server_module.ChangeNotifier(broker, asyncio.get_running_loop(), delay=0.02)

        for name in ("a.html", "b.css", "c.js"):
            notifier.schedule(name)
        await asyncio.sleep(0.15)

        assert ws.sent == ["reload"]
        events = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert events == [{
            "clients": 1, "path": "c.js", "message": "Notified 1 clients", "event": "reload"
        }]


class TestProjectEvents:
    """Which changes make the server broadcast"""

    @pytest.fixture
    def handler(self, server_module, project):
        return server_module.ProjectEventHandler(project.resolve(), notifier=None)

    @pytest.mark.parametrize("relative, expected", [
        ("index.html", True),
        ("css/site.css", True),
        ("js/app.mjs", True),
        ("server.py", False),
        ("node_modules/x/index.js", False),
        (".git/index.html", False),
        ("notes.md", False),
    ])
    def test_relevant(self, handler, project, relative, expected):
        assert handler.relevant(project.resolve() / relative) is expected

    def test_outside_root(self, handler, tmp_path):
        assert not handler.relevant(tmp_path / "elsewhere" / "index.html")


@pytest.mark.parametrize("value, expected", [
    ("9000", 9000),
    (None, 8000),
    ("not-a-port", 8000),
    ("70000", 8000),
    ("0", 8000),
])
def test_read_port(server_module, value, expected):
    assert server_module.read_port(value) == expected
