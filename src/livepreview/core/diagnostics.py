"""
System checks for Live Preview

Answers the usual "why doesn't the preview start" questions: is the
interpreter runnable, is the port free, can the project directory be written,
does the directory look like something worth previewing.
"""

import asyncio
import errno
import logging
import os
import socket
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
PROBE_FILE_PREFIX = ".livepreview-probe-"
WEB_EXTENSIONS = (".html", ".htm", ".js", ".mjs", ".ts", ".py")
RUNTIME_CHECK_TIMEOUT = 10.0

# Windows reports a busy port as WSAEADDRINUSE
ADDRESS_IN_USE_ERRNOS = {errno.EADDRINUSE, 10048}


@dataclass
class SystemCheckReport:
    """Result of a full system check"""
    runtime: str
    runtime_installed: bool
    port: int
    port_in_use: bool
    file_system_access: bool
    project_path: Optional[str] = None
    project_structure: Optional[str] = None
    runtime_version: Optional[str] = None
    checked_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        """True when nothing prevents a preview session from starting"""
        return (
            self.runtime_installed
            and not self.port_in_use
            and self.file_system_access
            and self.project_structure != "invalid"
        )

    @property
    def problems(self) -> List[str]:
        problems = []
        if not self.runtime_installed:
            problems.append(f"Python runtime not runnable: {self.runtime}")
        if self.port_in_use:
            problems.append(f"Port {self.port} is already in use")
        if not self.file_system_access:
            problems.append("Project directory is not writable")
        if self.project_structure == "invalid":
            problems.append(f"Project path is missing or empty: {self.project_path}")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        return data


async def runtime_version(runtime: str = sys.executable) -> Optional[str]:
    """
    Run ``<runtime> --version``.

    Returns:
        The version banner, or None when the runtime cannot be executed
    """
    try:
        process = await asyncio.create_subprocess_exec(
            runtime, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT
        )
    except OSError as e:
        logger.error(f"Python runtime not found or not executable: {runtime} ({e})")
        return None

    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout=RUNTIME_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"Python runtime did not answer --version: {runtime}")
        return None

    if process.returncode != 0:
        logger.error(f"{runtime} --version exited with {process.returncode}")
        return None

    return output.decode("utf-8", errors="replace").strip()


async def check_runtime_installed(runtime: str = sys.executable) -> bool:
    """Check that the interpreter used for preview servers can be executed"""
    version = await runtime_version(runtime)
    if version:
        logger.debug(f"Runtime available: {version}")
    return version is not None


def is_port_in_use(port: int, host: str = LOOPBACK_HOST) -> bool:
    """
    Check if ``port`` is taken by trying to bind it.

    Errors other than "address in use" are logged and reported as free, so a
    restrictive environment does not block a start that may still succeed.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if sys.platform != "win32":
        # lingering TIME_WAIT sockets from a previous session are not "in use"
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        if e.errno in ADDRESS_IN_USE_ERRNOS:
            logger.warning(f"Port {port} is already in use")
            return True
        logger.error(f"Error checking port {port}: {e}")
        return False
    finally:
        sock.close()

    logger.debug(f"Port {port} is available")
    return False


def check_file_system_access(path: Optional[Union[str, Path]] = None) -> bool:
    """Write, read back and delete a probe file in ``path`` (default: temp dir)"""
    directory = Path(path) if path else Path(tempfile.gettempdir())
    probe = directory / f"{PROBE_FILE_PREFIX}{uuid.uuid4().hex[:8]}"
    content = "livepreview probe"

    try:
        probe.write_text(content, encoding="utf-8")
        matches = probe.read_text(encoding="utf-8") == content
    except OSError as e:
        logger.error(f"File system access check failed at {directory}: {e}")
        return False
    finally:
        try:
            probe.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove probe file {probe}: {e}")

    if not matches:
        logger.warning("File system access check failed - content mismatch")
    return matches


def analyze_project_structure(path: Union[str, Path]) -> str:
    """
    Classify a project directory.

    Returns:
        ``"valid"`` when it holds web content, ``"invalid"`` when it is
        missing or empty, ``"unknown"`` otherwise
    """
    root = Path(path)

    try:
        if not root.is_dir():
            logger.error(f"Project path does not exist: {root}")
            return "invalid"

        names = os.listdir(root)
    except OSError as e:
        logger.error(f"Error analyzing project structure: {e}")
        return "unknown"

    if not names:
        logger.warning(f"Project directory is empty: {root}")
        return "invalid"

    if any(name.lower().endswith(WEB_EXTENSIONS) for name in names):
        logger.debug(f"Project structure appears valid ({len(names)} entries)")
        return "valid"

    logger.warning(f"Project structure may not be suitable for web content: {root}")
    return "unknown"


async def run_system_check(
    project_path: Optional[Union[str, Path]] = None,
    port: int = 8000,
    runtime: str = sys.executable
) -> SystemCheckReport:
    """Run every check and collect the results"""
    logger.info("Running system diagnostic check")

    version = await runtime_version(runtime)
    report = SystemCheckReport(
        runtime=runtime,
        runtime_installed=version is not None,
        runtime_version=version,
        port=port,
        port_in_use=is_port_in_use(port),
        file_system_access=check_file_system_access(project_path),
    )

    if project_path is not None:
        report.project_path = str(project_path)
        report.project_structure = analyze_project_structure(project_path)

    return report
