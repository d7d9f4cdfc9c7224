"""
Preview server source generator

Produces the standalone program the supervisor runs for a static project:
a FastAPI app under uvicorn that serves the project root, injects the reload
client into HTML pages, broadcasts ``reload`` over ``/_lr_ws`` whenever its own
watchdog observer sees a change, and publishes counters on ``/_diagnostics``.
"""

import logging
from pathlib import Path
from string import Template
from typing import Optional, Union

from ..clients.reload import ReconnectBackoff
from ..core.resolver import PREVIEWABLE_EXTENSIONS, SCRIPT_EXTENSIONS
from ..dev.watcher import DEFAULT_IGNORE_PATTERNS

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8000
SERVER_FILENAME = "_preview_server.py"

PORT_ENV = "PREVIEW_PORT"
PREVIEW_FLAG_ENV = "LIVE_PREVIEW"
FILE_ENV = "PREVIEW_FILE"

SERVER_MARKERS = (
    "serve(",
    "uvicorn.run(",
    "HTTPServer(",
    "serve_forever(",
    "app.run(",
    "web.run_app(",
)

RELOAD_DEBOUNCE_SECONDS = 0.1
LIVENESS_INTERVAL_MS = 5000
STALL_TIMEOUT_MS = 30000


CLIENT_TEMPLATE = Template(r'''// Live Preview reload client
(function () {
  "use strict";

  var BASE_DELAY = ${base_ms};
  var MULTIPLIER = ${multiplier};
  var MAX_DELAY = ${max_ms};
  var LIVENESS_INTERVAL = ${liveness_ms};
  var STALL_TIMEOUT = ${stall_ms};
  var RELOAD_PATH = "/_lr_ws";

  var backoff = { attempt: 0, delay: BASE_DELAY };
  var socket = null;
  var timer = null;
  var lastActivity = Date.now();

  function nextDelay() {
    var current = Math.min(backoff.delay, MAX_DELAY);
    backoff.attempt += 1;
    backoff.delay = Math.min(backoff.delay * MULTIPLIER, MAX_DELAY);
    return current;
  }

  function resetBackoff() {
    backoff.attempt = 0;
    backoff.delay = BASE_DELAY;
  }

  function scheduleReconnect() {
    if (timer !== null) {
      return;
    }
    var delay = nextDelay();
    console.log("[Live Preview] Reconnecting in " + delay + "ms (attempt " + backoff.attempt + ")");
    timer = setTimeout(function () {
      timer = null;
      connect();
    }, delay);
  }

  function connect() {
    var protocol = location.protocol === "https:" ? "wss:" : "ws:";
    var ws;
    try {
      ws = new WebSocket(protocol + "//" + location.host + RELOAD_PATH);
    } catch (err) {
      scheduleReconnect();
      return;
    }
    socket = ws;
    lastActivity = Date.now();

    ws.onopen = function () {
      lastActivity = Date.now();
      resetBackoff();
      console.log("[Live Preview] Connected");
    };

    ws.onmessage = function (event) {
      lastActivity = Date.now();
      if (event.data === "reload") {
        console.log("[Live Preview] Reloading page...");
        location.reload();
      }
    };

    ws.onclose = function () {
      if (ws !== socket) {
        return;
      }
      socket = null;
      console.log("[Live Preview] Connection closed, attempting to reconnect...");
      scheduleReconnect();
    };

    ws.onerror = function () {
      if (ws === socket && ws.readyState !== WebSocket.CLOSED) {
        ws.close();
      }
    };
  }

  setInterval(function () {
    if (timer !== null) {
      return;
    }
    if (socket === null || socket.readyState === WebSocket.CLOSED || socket.readyState === WebSocket.CLOSING) {
      socket = null;
      scheduleReconnect();
      return;
    }
    if (socket.readyState === WebSocket.CONNECTING && Date.now() - lastActivity > STALL_TIMEOUT) {
      var stalled = socket;
      socket = null;
      stalled.close();
      scheduleReconnect();
    }
  }, LIVENESS_INTERVAL);

  connect();
})();
''')


SERVER_TEMPLATE = Template(r'''"""
Live Preview server (generated)

Serves the project root with live reload. Stop with SIGTERM or Ctrl+C.
"""

import asyncio
import json
import logging
import os
import socket
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.websockets import WebSocketState
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

PROJECT_ROOT = Path(${project_root}).resolve()
TARGET_FILE = ${target_file}
DEFAULT_PORT = ${default_port}
PORT_ENV = ${port_env}
RELOAD_DEBOUNCE = ${reload_debounce}
WATCH_SUFFIXES = ${watch_suffixes}
IGNORED_NAMES = ${ignored_names}

SCRIPT_TAG = '<script src="/_lr_script.js"></script>'
RELOAD_PATH = "/_lr_ws"
RELOAD_MESSAGE = "reload"
CLIENT_SCRIPT = ${client_script}
NO_CACHE = {"cache-control": "no-cache, no-store, must-revalidate"}

logger = logging.getLogger("livepreview.server")


def emit(event, **fields):
    """Report a lifecycle event to the supervising host as one JSON line"""
    fields["event"] = event
    sys.stdout.write(json.dumps(fields) + "\n")
    sys.stdout.flush()


def read_port(value, default=DEFAULT_PORT):
    try:
        port = int(value)
    except (TypeError, ValueError):
        return default
    return port if 0 < port < 65536 else default


def inject_reload_script(html):
    """Add the reload client tag once, before </head> when there is one"""
    if SCRIPT_TAG in html:
        return html
    lowered = html.lower()
    for marker in ("</head>", "</body>"):
        index = lowered.find(marker)
        if index != -1:
            return html[:index] + SCRIPT_TAG + html[index:]
    return html + SCRIPT_TAG


class Diagnostics:
    """Counters exposed on /_diagnostics"""

    def __init__(self):
        self.start_time = datetime.now(timezone.utc).isoformat()
        self.connections = 0
        self.active_connections = 0
        self.ws_connections = 0
        self.active_ws_connections = 0
        self.requests = 0
        self.errors = 0
        self.last_error = None

    def record_error(self, message):
        self.errors += 1
        self.last_error = message
        logger.error(message)

    def snapshot(self):
        return {
            "startTime": self.start_time,
            "connections": self.connections,
            "activeConnections": self.active_connections,
            "wsConnections": self.ws_connections,
            "activeWsConnections": self.active_ws_connections,
            "requests": self.requests,
            "errors": self.errors,
            "lastError": self.last_error,
        }


def is_server_error(scope, status):
    # a plain GET on the reload socket answers 501 on purpose
    if status == 501 and scope["path"] == RELOAD_PATH:
        return False
    return status >= 500


class DiagnosticsMiddleware:
    """Counts every HTTP and WebSocket connection and every server error"""

    def __init__(self, app, diagnostics):
        self.app = app
        self.diagnostics = diagnostics

    async def __call__(self, scope, receive, send):
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        stats = self.diagnostics
        stats.connections += 1
        stats.active_connections += 1
        if scope["type"] == "http":
            stats.requests += 1

        async def send_wrapper(message):
            if message["type"] == "http.response.start" and is_server_error(scope, message["status"]):
                stats.record_error("HTTP %d for %s" % (message["status"], scope["path"]))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            stats.record_error("%s: %s" % (type(exc).__name__, exc))
            raise
        finally:
            stats.active_connections -= 1


def is_open(ws):
    return ws.client_state == WebSocketState.CONNECTED and ws.application_state == WebSocketState.CONNECTED


class ReloadBroker:
    """Tracks reload clients and broadcasts the reload signal"""

    def __init__(self, diagnostics):
        self.clients = set()
        self.diagnostics = diagnostics

    def add(self, ws):
        self.clients.add(ws)

    def discard(self, ws):
        self.clients.discard(ws)

    async def broadcast(self, message=RELOAD_MESSAGE):
        delivered = 0
        for ws in list(self.clients):
            if not is_open(ws):
                self.clients.discard(ws)
                continue
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as exc:
                self.clients.discard(ws)
                self.diagnostics.record_error("Failed to send reload: %s" % exc)
        return delivered

    async def close_all(self):
        for ws in list(self.clients):
            if is_open(ws):
                try:
                    await ws.close(code=1001)
                except Exception as exc:
                    logger.debug("Error closing reload client: %s", exc)
        self.clients.clear()


class ChangeNotifier:
    """Debounces watchdog events into one broadcast"""

    def __init__(self, broker, loop, delay=RELOAD_DEBOUNCE):
        self.broker = broker
        self.loop = loop
        self.delay = delay
        self.pending = None
        self.handle = None

    def schedule(self, path):
        self.pending = path
        if self.handle is not None:
            self.handle.cancel()
        self.handle = self.loop.call_later(self.delay, self._fire)

    def cancel(self):
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None

    def _fire(self):
        self.handle = None
        path, self.pending = self.pending, None
        self.loop.create_task(self._broadcast(path))

    async def _broadcast(self, path):
        count = await self.broker.broadcast()
        emit("reload", clients=count, path=path, message="Notified %d clients" % count)


class ProjectEventHandler(FileSystemEventHandler):
    def __init__(self, root, notifier):
        super().__init__()
        self.root = root
        self.notifier = notifier

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in ("created", "modified", "moved"):
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if self.relevant(Path(path)):
            self.notifier.loop.call_soon_threadsafe(self.notifier.schedule, str(path))

    def relevant(self, path):
        if path.suffix.lower() not in WATCH_SUFFIXES:
            return False
        try:
            parts = path.relative_to(self.root).parts
        except ValueError:
            return False
        return not any(part in IGNORED_NAMES or part.startswith(".") for part in parts)


def resolve_static(root, path):
    """Map a URL path to a file under root, or None"""
    candidate = (root / path).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    if candidate.is_dir():
        candidate = candidate / "index.html"
    if not candidate.is_file():
        return None
    return candidate


def create_app(root=PROJECT_ROOT, watch=True):
    root = Path(root).resolve()
    diagnostics = Diagnostics()
    broker = ReloadBroker(diagnostics)

    @asynccontextmanager
    async def lifespan(app):
        observer = None
        notifier = ChangeNotifier(broker, asyncio.get_running_loop())
        if watch:
            observer = Observer()
            observer.schedule(ProjectEventHandler(root, notifier), str(root), recursive=True)
            observer.start()
        try:
            yield
        finally:
            notifier.cancel()
            await broker.close_all()
            if observer is not None:
                observer.stop()
                observer.join()

    app = FastAPI(
        title="Live Preview",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_middleware(DiagnosticsMiddleware, diagnostics=diagnostics)
    app.state.diagnostics = diagnostics
    app.state.broker = broker
    app.state.root = root

    @app.get("/_diagnostics")
    async def diagnostics_endpoint():
        return JSONResponse(diagnostics.snapshot(), headers=NO_CACHE)

    @app.get("/_lr_script.js")
    async def reload_script():
        return Response(CLIENT_SCRIPT, media_type="application/javascript", headers=NO_CACHE)

    @app.get(RELOAD_PATH)
    async def reload_socket_http():
        return PlainTextResponse("WebSocket upgrade required", status_code=501)

    @app.websocket(RELOAD_PATH)
    async def reload_socket(ws: WebSocket):
        await ws.accept()
        broker.add(ws)
        diagnostics.ws_connections += 1
        diagnostics.active_ws_connections += 1
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            diagnostics.record_error("WebSocket error: %s" % exc)
        finally:
            broker.discard(ws)
            diagnostics.active_ws_connections -= 1

    @app.get("/{path:path}")
    async def static_file(path: str):
        file = resolve_static(root, path)
        if file is None:
            return PlainTextResponse("Not Found", status_code=404, headers=NO_CACHE)
        if file.suffix.lower() in (".html", ".htm"):
            html = file.read_text(encoding="utf-8", errors="replace")
            return HTMLResponse(inject_reload_script(html), headers=NO_CACHE)
        return FileResponse(file, headers=NO_CACHE)

    return app


def bind_socket(port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if sys.platform != "win32":
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind(("127.0.0.1", port))
    except OSError:
        sock.close()
        raise
    return sock


async def serve(port):
    try:
        sock = bind_socket(port)
    except OSError as exc:
        emit("error", kind="bind", port=port,
             message="Port %d is already in use or not permitted: %s" % (port, exc))
        return 1

    app = create_app(PROJECT_ROOT)
    config = uvicorn.Config(app, log_level="warning", access_log=False, lifespan="on")
    server = uvicorn.Server(config)

    print("Starting Live Preview server...", flush=True)
    print("Serving files from: %s" % PROJECT_ROOT, flush=True)

    task = asyncio.create_task(server.serve(sockets=[sock]))
    while not server.started and not task.done():
        await asyncio.sleep(0.05)

    if server.started:
        url = "http://localhost:%d/" % port
        print("Server running at: %s" % url, flush=True)
        emit("listening", port=port, url=url, message="Server running at: %s" % url)

    await task
    if not server.started:
        emit("error", kind="startup", port=port, message="Server failed to start")
        return 1

    emit("shutdown", message="Server stopped")
    return 0


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    port = read_port(os.environ.get(PORT_ENV))
    sys.exit(asyncio.run(serve(port)))


if __name__ == "__main__":
    main()
''')


def contains_server_logic(file_path: Union[str, Path]) -> bool:
    """Check whether a script already starts its own server"""
    path = Path(file_path)
    if path.suffix.lower() not in SCRIPT_EXTENSIONS:
        return False

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Cannot read {path} to detect server code: {e}")
        return False

    return any(marker in text for marker in SERVER_MARKERS)


def render_client_script(backoff: Optional[ReconnectBackoff] = None) -> str:
    """Render the browser reload client"""
    values = (backoff or ReconnectBackoff()).to_js()
    return CLIENT_TEMPLATE.substitute(
        base_ms=values["base_ms"],
        multiplier=values["multiplier"],
        max_ms=values["max_ms"],
        liveness_ms=LIVENESS_INTERVAL_MS,
        stall_ms=STALL_TIMEOUT_MS,
    )


def generate_server_source(
    file_path: Union[str, Path],
    project_root: Union[str, Path],
    port: int = DEFAULT_PORT,
    backoff: Optional[ReconnectBackoff] = None
) -> str:
    """
    Generate the preview server program for a file

    Args:
        file_path: File the session was started for
        project_root: Directory to serve
        port: Port used when ``PREVIEW_PORT`` is absent or invalid
        backoff: Reconnect settings rendered into the client script

    Returns:
        Program source, or an empty string when ``file_path`` is a script
        that runs its own server and should be executed directly
    """
    if contains_server_logic(file_path):
        logger.info(f"{Path(file_path).name} starts its own server; running it directly")
        return ""

    watch_suffixes = tuple(sorted(set(PREVIEWABLE_EXTENSIONS) - set(SCRIPT_EXTENSIONS)))
    ignored_names = tuple(sorted(p for p in DEFAULT_IGNORE_PATTERNS if "*" not in p))

    return SERVER_TEMPLATE.substitute(
        project_root=repr(str(Path(project_root).resolve())),
        target_file=repr(str(Path(file_path).resolve())),
        default_port=int(port),
        port_env=repr(PORT_ENV),
        reload_debounce=repr(RELOAD_DEBOUNCE_SECONDS),
        watch_suffixes=repr(watch_suffixes),
        ignored_names=repr(ignored_names),
        client_script=repr(render_client_script(backoff)),
    )
