"""
Shared fixtures for Live Preview tests
"""

import types
from pathlib import Path

import pytest

from livepreview.core.config import ConfigManager, PreviewConfig
from livepreview.dev.generator import generate_server_source

INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
  <title>Sample</title>
</head>
<body>
  <h1>Hello</h1>
</body>
</html>
"""


@pytest.fixture
def project(tmp_path):
    """A small static site with a package.json marker at its root"""
    root = tmp_path / "site"
    (root / "pages" / "deep").mkdir(parents=True)
    (root / "package.json").write_text("{}", encoding="utf-8")
    (root / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    (root / "style.css").write_text("body { color: red; }", encoding="utf-8")
    (root / "pages" / "deep" / "about.html").write_text(INDEX_HTML, encoding="utf-8")
    return root


@pytest.fixture
def server_script(tmp_path):
    """A user script that starts its own server"""
    script = tmp_path / "app.py"
    script.write_text(
        "import os\n"
        "from http.server import HTTPServer, SimpleHTTPRequestHandler\n"
        "port = int(os.environ['PREVIEW_PORT'])\n"
        "server = HTTPServer(('127.0.0.1', port), SimpleHTTPRequestHandler)\n"
        "print('Server running on port %d' % port)\n"
        "server.serve_forever()\n",
        encoding="utf-8"
    )
    return script


def load_server_module(file_path: Path, project_root: Path, port: int = 8000) -> types.ModuleType:
    """Execute a generated server program as a module without running main()"""
    source = generate_server_source(file_path, project_root, port)
    module = types.ModuleType("generated_preview_server")
    exec(compile(source, "_preview_server.py", "exec"), module.__dict__)
    return module


@pytest.fixture
def server_module(project):
    return load_server_module(project / "index.html", project)


@pytest.fixture
def config(unused_tcp_port):
    """Supervisor settings on a free port, host-side watching off"""
    return PreviewConfig.from_env(
        port=unused_tcp_port,
        startup_timeout=15.0,
        stop_grace_period=0.5,
        health_check_interval=10,
        auto_reload=False,
    )


@pytest.fixture(autouse=True)
def reset_global_config():
    yield
    ConfigManager.reset_config()
