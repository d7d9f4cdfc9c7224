"""
File Watcher for Live Preview

Monitors a project directory and triggers a debounced refresh.
"""

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

logger = logging.getLogger(__name__)

DEFAULT_FILE_PATTERNS = ["*.html", "*.htm", "*.css", "*.js", "*.mjs", "*.py"]
DEFAULT_IGNORE_PATTERNS = [
    "*.pyc", "__pycache__", ".git", ".venv", "venv", "node_modules",
    ".pytest_cache", "*.log", ".DS_Store", "*.swp", "*~"
]


class ChangeType(str, Enum):
    """Types of file system changes that trigger a refresh"""
    CREATED = "create"
    MODIFIED = "modify"


@dataclass
class FileChange:
    """Represents a file system change"""
    path: str
    change_type: ChangeType
    timestamp: float


ChangeCallback = Callable[[List[FileChange]], Union[None, Awaitable[None]]]


class FileWatcher:
    """
    File system watcher with debouncing and filtering

    Features:
    - Recursive directory monitoring through watchdog
    - One debounce timer, re-armed by every accepted event
    - File type filtering
    - Sync or async callbacks, invoked once per burst
    """

    def __init__(
        self,
        paths: List[Union[str, Path]],
        callback: ChangeCallback,
        debounce_ms: int = 500,
        file_patterns: Optional[List[str]] = None,
        ignore_patterns: Optional[List[str]] = None,
        recursive: bool = True,
        use_polling: bool = False
    ):
        """
        Initialize file watcher

        Args:
            paths: Paths to watch
            callback: Called with the coalesced changes after the quiet period
            debounce_ms: Debounce time in milliseconds
            file_patterns: File patterns to watch (e.g., ['*.html', '*.css'])
            ignore_patterns: Patterns to ignore (e.g., ['node_modules', '.git'])
            recursive: Watch subdirectories recursively
            use_polling: Use watchdog's polling observer (network drives, containers)
        """
        self.paths = [Path(p).resolve() for p in paths]
        self.callback = callback
        self.debounce_ms = debounce_ms
        self.recursive = recursive
        self.use_polling = use_polling

        self.file_patterns = DEFAULT_FILE_PATTERNS if file_patterns is None else file_patterns
        self.ignore_patterns = DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns

        # State tracking
        self.observer = None
        self.is_running = False
        self._change_queue: Dict[str, FileChange] = {}
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.stats = {
            "events_received": 0,
            "events_processed": 0,
            "events_debounced": 0,
            "events_filtered": 0,
            "triggers": 0
        }

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Start watching for file changes; must run on (or be given) the owning loop"""

        if self.is_running:
            return

        self._loop = loop or asyncio.get_running_loop()

        logger.info(f"👁️ Starting file watcher for {len(self.paths)} paths")

        self.observer = PollingObserver() if self.use_polling else Observer()
        handler = _PreviewEventHandler(self)

        for path in self.paths:
            if path.exists():
                self.observer.schedule(handler, str(path), recursive=self.recursive)
                logger.debug(f"Watching: {path}")

        self.observer.start()
        self.is_running = True

    def stop(self):
        """Stop watching and drop any pending refresh"""

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        self._change_queue.clear()

        if not self.is_running:
            return

        logger.info("🛑 Stopping file watcher")

        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None

        self.is_running = False

    def _on_watchdog_event(self, file_path: str, change_type: ChangeType):
        """Called on the observer thread"""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_event, file_path, change_type)

    def _handle_event(self, file_path: str, change_type: ChangeType):
        """Handle a file system event on the event loop"""

        self.stats["events_received"] += 1

        if not self._should_watch_file(Path(file_path)):
            self.stats["events_filtered"] += 1
            return

        self._change_queue[file_path] = FileChange(
            path=file_path,
            change_type=change_type,
            timestamp=time.time()
        )

        # Restart debounce timer
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self.stats["events_debounced"] += 1

        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self._debounce_handle = loop.call_later(
            self.debounce_ms / 1000.0,
            self._process_changes
        )

    def _process_changes(self):
        """Fire the callback once for everything queued during the quiet period"""

        self._debounce_handle = None

        if not self._change_queue:
            return

        changes = list(self._change_queue.values())
        self._change_queue.clear()
        self.stats["events_processed"] += len(changes)
        self.stats["triggers"] += 1

        logger.debug(f"Processing {len(changes)} file changes")

        try:
            result = self.callback(changes)
            if asyncio.iscoroutine(result):
                task = self._loop.create_task(result)
                task.add_done_callback(self._log_callback_failure)
        except Exception as e:
            logger.error(f"Error in file change callback: {e}")

    @staticmethod
    def _log_callback_failure(task: "asyncio.Task[Any]"):
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error in file change callback: {task.exception()}")

    def _should_watch_file(self, file_path: Path) -> bool:
        """Check if a file should be watched"""

        for part in self._relative_parts(file_path):
            for pattern in self.ignore_patterns:
                if fnmatch.fnmatch(part, pattern):
                    return False

        if not self.file_patterns:
            return True

        return any(fnmatch.fnmatch(file_path.name, pattern) for pattern in self.file_patterns)

    def _relative_parts(self, file_path: Path):
        """Path components below the watched root, so ancestors never match ignores"""
        for root in self.paths:
            try:
                return file_path.relative_to(root).parts
            except ValueError:
                continue
        return (file_path.name,)

    def get_stats(self) -> Dict[str, Any]:
        """Get watcher statistics"""

        return {
            **self.stats,
            "is_running": self.is_running,
            "paths_watched": len(self.paths),
            "queue_size": len(self._change_queue),
            "backend": "polling" if self.use_polling else "watchdog"
        }


class _PreviewEventHandler(FileSystemEventHandler):
    """Forwards content changes to the owning watcher"""

    def __init__(self, watcher: FileWatcher):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher._on_watchdog_event(str(event.src_path), ChangeType.CREATED)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher._on_watchdog_event(str(event.src_path), ChangeType.MODIFIED)

    def on_moved(self, event: FileSystemEvent):
        # Editors that save atomically rename a temp file over the target
        if not event.is_directory:
            self.watcher._on_watchdog_event(str(event.dest_path), ChangeType.MODIFIED)
