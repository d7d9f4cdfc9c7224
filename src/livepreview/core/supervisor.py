"""
Preview session supervision

The supervisor owns at most one preview session: it resolves the project
root, generates and writes the server program, spawns it, reads its output,
watches the project for host-side refreshes and polls the server's health.
Stopping reverses all of it.
"""

import asyncio
import os
import re
import shutil
import signal
import sys
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union
from urllib.parse import quote

import structlog
from pydantic import ValidationError

from .config import PreviewConfig, get_config
from .diagnostics import LOOPBACK_HOST, check_runtime_installed, is_port_in_use
from .health_monitor import PreviewHealthMonitor
from .lifecycle import LifecycleTracker
from .resolver import HTML_EXTENSIONS, resolve_root
from .schemas import ConnectionStatus, DiagnosticSnapshot, ServerEvent, SessionState
from ..dev.generator import (
    FILE_ENV,
    PORT_ENV,
    PREVIEW_FLAG_ENV,
    SERVER_FILENAME,
    generate_server_source,
)
from ..dev.temp import TempResourceManager, session_directory
from ..dev.watcher import FileChange, FileWatcher
from ..utils.logging import session_context
from ..exceptions.base import (
    GenerationError,
    LivePreviewError,
    ProcessExitError,
    SpawnError,
)

logger = structlog.get_logger(__name__)

OutputCallback = Callable[[str], None]
StatusCallback = Callable[[ConnectionStatus], None]
UrlCallback = Callable[[str], None]

# Plain-text readiness line printed by user-authored servers
RUNNING_PATTERN = re.compile(r"server running", re.IGNORECASE)
ADDRESS_IN_USE_PATTERN = re.compile(
    r"address already in use|eaddrinuse|errno 98\b|errno 48\b|10048", re.IGNORECASE
)
STDERR_TAIL_LINES = 20
READER_DRAIN_TIMEOUT = 1.0


@dataclass
class PermissionSet:
    """
    What a preview server process is allowed to touch.

    There is no capability sandbox for a Python child process, so the set is
    enforced by construction: the child gets only the allow-listed
    environment, runs with the project root as its working directory and
    ignores ``PYTHON*`` variables; the generated server binds ``host`` on a
    single port and refuses paths outside ``read_root``.
    """
    port: int
    read_root: Path
    target_file: Path
    host: str = LOOPBACK_HOST

    def as_env(self) -> Dict[str, str]:
        env = {
            PORT_ENV: str(self.port),
            PREVIEW_FLAG_ENV: "1",
            FILE_ENV: str(self.target_file),
        }
        # the Windows interpreter cannot initialise without SYSTEMROOT
        if sys.platform == "win32" and "SYSTEMROOT" in os.environ:
            env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
        return env


@dataclass
class PreviewSession:
    """State of one preview session"""
    session_id: str
    file_path: Path
    project_root: Path
    port: int
    generation: int
    temp: TempResourceManager = field(default_factory=TempResourceManager)
    process: Optional[asyncio.subprocess.Process] = None
    command: List[str] = field(default_factory=list)
    server_path: Optional[Path] = None
    generated: bool = False
    state: SessionState = SessionState.IDLE
    connection_status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_snapshot: Optional[DiagnosticSnapshot] = None
    preview_url: Optional[str] = None
    refresh_count: int = 0
    error: Optional[str] = None
    error_detail: Optional[str] = None
    exit_code: Optional[int] = None
    port_conflict: bool = False
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    watcher: Optional[FileWatcher] = None
    tasks: List["asyncio.Task[Any]"] = field(default_factory=list)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    awaiting_ready: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None


class PreviewSupervisor:
    """
    Runs preview sessions for a host UI.

    The host calls ``start``/``stop``/``refresh`` and receives output lines,
    connection status changes and preview URLs through the callbacks.
    """

    def __init__(
        self,
        config: Optional[PreviewConfig] = None,
        on_output_line: Optional[OutputCallback] = None,
        on_connection_status: Optional[StatusCallback] = None,
        on_preview_url: Optional[UrlCallback] = None,
        health_monitor: Optional[PreviewHealthMonitor] = None
    ):
        self.config = config or get_config()
        self.on_output_line = on_output_line
        self.on_connection_status = on_connection_status
        self.on_preview_url = on_preview_url

        self.health_monitor = health_monitor or PreviewHealthMonitor(
            interval=self.config.health_check_interval,
            timeout=self.config.health_check_timeout
        )
        self.health_monitor.on_status = self._on_health_status

        self.session: Optional[PreviewSession] = None
        self.last_session: Optional[PreviewSession] = None
        self.lifecycle: Optional[LifecycleTracker] = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        session = self.session or self.last_session
        return session.state if session else SessionState.IDLE

    @property
    def is_running(self) -> bool:
        return self.session is not None and self.session.state == SessionState.RUNNING

    async def start(self, file_path: Union[str, Path]) -> PreviewSession:
        """
        Start a preview session for ``file_path``, replacing any current one.

        Returns:
            The new session, ``running`` or (if the server never reported
            readiness in time) still ``starting``; ``idle`` when ``stop`` was
            called before the server became ready

        Raises:
            GenerationError: If the server program cannot be written
            SpawnError: If the server cannot be started or exits during start-up
        """
        async with self._lock:
            if self.session is not None:
                logger.info("Stopping previous preview session", session_id=self.session.session_id)
                await self._stop_session(self.session)
            return await self._start_session(Path(os.path.abspath(str(file_path))))

    async def stop(self):
        """Stop the current session, if any, aborting a start still in progress"""
        session = self.session
        if session is not None and session.state == SessionState.STARTING:
            # start() holds the lock while it waits for readiness
            session.stop_requested.set()
        async with self._lock:
            if self.session is not None:
                await self._stop_session(self.session)

    async def shutdown(self):
        """Stop everything before the host exits"""
        await self.stop()
        await self.health_monitor.aclose()

    def refresh(self, notify: bool = False) -> bool:
        """
        Re-emit the preview URL with a cache-busting query.

        Returns:
            False when there is no session to refresh
        """
        session = self.session
        if session is None or session.preview_url is None:
            return False

        session.refresh_count += 1
        if notify:
            self._output("Refreshing Live Preview...")

        separator = "&" if "?" in session.preview_url else "?"
        self._emit_url(f"{session.preview_url}{separator}v={session.refresh_count}")
        return True

    def preview_url_for(self, session: PreviewSession) -> str:
        """Preview URL: the server root, plus the file path for HTML targets"""
        url = f"http://{self.config.host}:{session.port}/"
        if session.file_path.suffix.lower() in HTML_EXTENSIONS:
            try:
                relative = session.file_path.relative_to(session.project_root)
            except ValueError:
                return url
            url += quote(relative.as_posix())
        return url

    # Session start

    async def _start_session(self, file_path: Path) -> PreviewSession:
        self._generation += 1
        config = self.config
        session = PreviewSession(
            session_id=uuid.uuid4().hex[:12],
            file_path=file_path,
            project_root=file_path.parent,
            port=config.port,
            generation=self._generation,
            state=SessionState.STARTING
        )
        self.session = session
        self.lifecycle = LifecycleTracker(f"Preview {file_path.name}")

        # the session's reader, exit and health tasks inherit this context
        with session_context(session.session_id, generation=session.generation):
            return await self._launch(session)

    async def _launch(self, session: PreviewSession) -> PreviewSession:
        config = self.config
        file_path = session.file_path
        tracker = self.lifecycle
        logger.info("Starting preview session", file=str(file_path), port=session.port)

        try:
            tracker.begin_step("resolve_root", "Resolve project root")
            session.project_root = resolve_root(file_path, max_depth=config.max_root_depth)
            tracker.complete_step("resolve_root", str(session.project_root))

            tracker.begin_step("check_runtime", "Check Python runtime")
            runtime = shutil.which(config.runtime) or config.runtime
            if not await check_runtime_installed(runtime):
                raise SpawnError(
                    f"Python runtime not found or not executable: {config.runtime}",
                    [config.runtime],
                    session.port
                )
            tracker.complete_step("check_runtime", runtime)

            tracker.begin_step("check_port", f"Check port {session.port}")
            if is_port_in_use(session.port):
                raise SpawnError(f"Port {session.port} is already in use", port=session.port)
            tracker.complete_step("check_port")

            tracker.begin_step("generate_server", "Generate preview server")
            source = generate_server_source(file_path, session.project_root, session.port)
            if source:
                session.server_path = session.temp.create_resource(
                    session_directory(session.session_id), SERVER_FILENAME, source
                )
                session.generated = True
                tracker.complete_step("generate_server", str(session.server_path))
            else:
                session.server_path = file_path
                tracker.skip_step("generate_server", "file runs its own server")

            tracker.begin_step("spawn", "Spawn preview server")
            await self._spawn(session, runtime)
            tracker.complete_step("spawn", f"pid {session.pid}")

            if config.auto_reload:
                tracker.begin_step("watch", "Watch project files")
                self._start_watcher(session)
                tracker.complete_step("watch", f"debounce {config.debounce_ms}ms")
            else:
                tracker.skip_step("watch", "auto reload disabled")

            await self.health_monitor.start()

            tracker.begin_step("wait_ready", "Wait for server")
            await self._wait_until_ready(session)
            if session.stop_requested.is_set():
                tracker.skip_step("wait_ready", "stopped during start-up")
                await self._stop_session(session)
            elif session.state == SessionState.RUNNING:
                tracker.complete_step("wait_ready", session.preview_url)
            else:
                tracker.complete_step("wait_ready", "no readiness signal yet")

        except LivePreviewError as e:
            tracker.fail_step(error=e, details=session.error_detail)
            tracker.finish(success=False)
            await self._fail(session, e)
            raise

        tracker.finish(success=True)
        return session

    async def _spawn(self, session: PreviewSession, runtime: str):
        permissions = PermissionSet(
            port=session.port,
            read_root=session.project_root,
            target_file=session.file_path
        )
        session.command = [runtime, "-u", "-E", "-X", "utf8", str(session.server_path)]

        kwargs: Dict[str, Any] = {}
        if sys.platform != "win32":
            # own process group so the whole tree can be signalled on stop
            kwargs["start_new_session"] = True

        try:
            session.process = await asyncio.create_subprocess_exec(
                *session.command,
                cwd=str(session.project_root),
                env=permissions.as_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Python runtime not found: {runtime}", session.command, session.port, e)
        except PermissionError as e:
            raise SpawnError(f"Permission denied running {runtime}", session.command, session.port, e)
        except OSError as e:
            raise SpawnError(
                f"Failed to start preview server: {e.strerror or e}",
                session.command,
                session.port,
                e
            )

        logger.info("Preview server spawned", session_id=session.session_id, pid=session.pid)

        process = session.process
        session.tasks.extend([
            asyncio.create_task(self._read_stdout(session, process.stdout)),
            asyncio.create_task(self._read_stderr(session, process.stderr)),
            asyncio.create_task(self._watch_exit(session)),
        ])

    async def _wait_until_ready(self, session: PreviewSession):
        session.awaiting_ready = True
        ready = asyncio.ensure_future(session.ready.wait())
        exited = asyncio.ensure_future(session.exited.wait())
        stop_requested = asyncio.ensure_future(session.stop_requested.wait())
        waiters = {ready, exited, stop_requested}
        try:
            await asyncio.wait(
                waiters,
                timeout=self.config.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
            session.awaiting_ready = False

        if session.stop_requested.is_set():
            logger.info("Preview session stopped during start-up", session_id=session.session_id)
            return

        if session.exited.is_set():
            readers = [t for t in session.tasks[:2] if not t.done()]
            if readers:
                await asyncio.wait(readers, timeout=READER_DRAIN_TIMEOUT)
            raise SpawnError(self._exit_message(session), session.command, session.port)

        if not session.ready.is_set():
            message = (
                f"Server did not report readiness within {self.config.startup_timeout:g}s; "
                "it may still be starting"
            )
            logger.warning(message, session_id=session.session_id)
            self._output(f"WARNING: {message}")

    def _exit_message(self, session: PreviewSession) -> str:
        stderr = "\n".join(session.stderr_tail)
        if session.port_conflict or ADDRESS_IN_USE_PATTERN.search(stderr):
            session.port_conflict = True
            return f"Port {session.port} is already in use"

        message = f"Preview server exited with code {session.exit_code} before it was ready"
        detail = session.error_detail or (session.stderr_tail[-1] if session.stderr_tail else None)
        return f"{message}: {detail}" if detail else message

    def _start_watcher(self, session: PreviewSession):
        watcher = FileWatcher(
            [str(session.project_root)],
            lambda changes: self._on_files_changed(session, changes),
            debounce_ms=self.config.debounce_ms
        )
        try:
            watcher.start()
        except OSError as e:
            # the server still reloads browsers through its own observer
            logger.warning("Host file watcher unavailable", session_id=session.session_id, error=str(e))
            watcher.stop()
            return
        session.watcher = watcher

    async def _fail(self, session: PreviewSession, error: LivePreviewError):
        session.error = error.message
        if session.error_detail is None:
            original = getattr(error, "original_error", None)
            session.error_detail = str(original) if original else error.message

        if isinstance(error, GenerationError):
            logger.error("Preview server generation failed", session_id=session.session_id, error=str(error))
        else:
            logger.error("Preview session failed to start", session_id=session.session_id, error=str(error))
        self._output(f"ERROR: {error.message}")

        await self._stop_session(session, final_state=SessionState.FAILED)

    # Process output

    async def _read_stdout(self, session: PreviewSession, stream: asyncio.StreamReader):
        async for line in self._lines(stream):
            self._handle_stdout(session, line)

    async def _read_stderr(self, session: PreviewSession, stream: asyncio.StreamReader):
        async for line in self._lines(stream):
            session.stderr_tail.append(line)
            if self.session is session:
                self._output(f"ERROR: {line}")

    async def _lines(self, stream: asyncio.StreamReader):
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning("Dropped overlong output line from preview server")
                continue
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def _handle_stdout(self, session: PreviewSession, line: str):
        if self.session is not session:
            return

        event = self._parse_event(line)
        if event is None:
            if line:
                self._output(line)
            if not session.generated and RUNNING_PATTERN.search(line):
                self._mark_running(session)
            return

        if event.event == "listening":
            self._mark_running(session)
        elif event.event == "reload":
            self._output(f"Live reload: notified {event.clients or 0} clients")
        elif event.event == "error":
            session.error_detail = event.message
            if event.kind == "bind":
                session.port_conflict = True
            self._output(f"ERROR: {event.message}")
        elif event.event == "shutdown":
            self._output(event.message or "Server stopped")
        else:
            logger.debug("Unknown server event", server_event=event.event)

    @staticmethod
    def _parse_event(line: str) -> Optional[ServerEvent]:
        if not line.startswith("{"):
            return None
        try:
            return ServerEvent.model_validate_json(line)
        except ValidationError:
            return None

    def _mark_running(self, session: PreviewSession):
        if session.state != SessionState.STARTING:
            return

        session.state = SessionState.RUNNING
        session.preview_url = self.preview_url_for(session)
        logger.info("Preview server running", session_id=session.session_id, url=session.preview_url)

        self.health_monitor.set_target(session.preview_url, session.generation)
        self._emit_url(session.preview_url)
        session.ready.set()

    async def _watch_exit(self, session: PreviewSession):
        code = await session.process.wait()
        session.exit_code = code
        session.exited.set()

        if session.awaiting_ready or session.state == SessionState.STOPPING:
            return

        if code < 0:
            # killed by a signal from outside: a stop, not a crash
            logger.info("Preview server terminated by signal", session_id=session.session_id, signal=-code)
            self._output(f"Preview server stopped by signal {-code}")
            final_state = SessionState.IDLE
        elif code != 0:
            error = ProcessExitError(f"Preview server exited with code {code}", code)
            logger.error(str(error), session_id=session.session_id)
            session.error = error.message
            session.error_detail = session.error_detail or (
                session.stderr_tail[-1] if session.stderr_tail else error.message
            )
            self._output(f"ERROR: {error.message}")
            final_state = SessionState.FAILED
        else:
            logger.info("Preview server exited", session_id=session.session_id)
            self._output("Preview server stopped")
            final_state = SessionState.IDLE

        async with self._lock:
            if self.session is session:
                await self._stop_session(session, final_state=final_state)

    # Host-side reactions

    def _on_files_changed(self, session: PreviewSession, changes: List[FileChange]):
        if self.session is not session:
            return
        logger.debug("Project files changed", session_id=session.session_id, changes=len(changes))
        self.refresh(notify=False)

    def _on_health_status(self, status: ConnectionStatus, snapshot: Optional[DiagnosticSnapshot]):
        session = self.session
        if session is None:
            return

        if snapshot is not None:
            session.last_snapshot = snapshot
        if status != session.connection_status:
            session.connection_status = status
            self._emit_status(status)

    # Session stop

    async def _stop_session(
        self,
        session: PreviewSession,
        final_state: SessionState = SessionState.IDLE
    ):
        if session.stopped.is_set():
            return

        log = logger.bind(session_id=session.session_id)
        session.state = SessionState.STOPPING

        if session.watcher is not None:
            session.watcher.stop()
            session.watcher = None

        await self.health_monitor.stop()
        self.health_monitor.clear()

        if session.process is not None:
            await self._terminate(session.process)

        current = asyncio.current_task()
        tasks = [t for t in session.tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        session.tasks.clear()

        removed = session.temp.cleanup()
        log.debug("Temporary resources removed", count=removed)

        session.state = final_state
        session.connection_status = ConnectionStatus.UNKNOWN
        if self.session is session:
            self.session = None
        self.last_session = session

        self._emit_status(ConnectionStatus.UNKNOWN)
        session.stopped.set()
        log.info("Preview session stopped", state=final_state.value)

    async def _terminate(self, process: asyncio.subprocess.Process):
        if process.returncode is not None:
            return

        try:
            self._send_signal(process, kill=False)
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.stop_grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning("Preview server ignored SIGTERM; killing", pid=process.pid)

        try:
            self._send_signal(process, kill=True)
        except ProcessLookupError:
            return
        await process.wait()

    @staticmethod
    def _send_signal(process: asyncio.subprocess.Process, kill: bool):
        if sys.platform == "win32":
            if kill:
                process.kill()
            else:
                process.terminate()
            return
        os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)

    # Host callbacks

    def _output(self, line: str):
        if self.on_output_line:
            self.on_output_line(line)

    def _emit_status(self, status: ConnectionStatus):
        if self.on_connection_status:
            self.on_connection_status(status)

    def _emit_url(self, url: str):
        if self.on_preview_url:
            self.on_preview_url(url)
