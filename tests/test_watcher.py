"""
Tests for the debounced file watcher
"""

import asyncio
import threading

import pytest

from livepreview.dev.watcher import ChangeType, FileChange, FileWatcher


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve()


class TestDebounce:
    """Bursts of events collapse into one trigger"""

    @pytest.mark.asyncio
    async def test_burst_fires_once(self, root):
        calls = []
        watcher = FileWatcher([root], calls.append, debounce_ms=50)
        watcher._loop = asyncio.get_running_loop()

        for i in range(10):
            watcher._handle_event(str(root / f"page{i}.html"), ChangeType.MODIFIED)
            await asyncio.sleep(0.005)

        await asyncio.sleep(0.2)

        assert len(calls) == 1
        assert len(calls[0]) == 10
        assert all(isinstance(change, FileChange) for change in calls[0])
        assert watcher.get_stats()["triggers"] == 1
        assert watcher.get_stats()["events_debounced"] == 9

    @pytest.mark.asyncio
    async def test_repeated_saves_of_one_file_coalesce(self, root):
        calls = []
        watcher = FileWatcher([root], calls.append, debounce_ms=30)
        watcher._loop = asyncio.get_running_loop()

        watcher._handle_event(str(root / "index.html"), ChangeType.CREATED)
        watcher._handle_event(str(root / "index.html"), ChangeType.MODIFIED)
        await asyncio.sleep(0.15)

        assert len(calls) == 1
        assert [c.change_type for c in calls[0]] == [ChangeType.MODIFIED]

    @pytest.mark.asyncio
    async def test_separate_bursts_fire_separately(self, root):
        calls = []
        watcher = FileWatcher([root], calls.append, debounce_ms=30)
        watcher._loop = asyncio.get_running_loop()

        watcher._handle_event(str(root / "a.css"), ChangeType.MODIFIED)
        await asyncio.sleep(0.15)
        watcher._handle_event(str(root / "b.css"), ChangeType.MODIFIED)
        await asyncio.sleep(0.15)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_async_callback(self, root):
        received = asyncio.Event()

        async def on_change(changes):
            received.set()

        watcher = FileWatcher([root], on_change, debounce_ms=10)
        watcher._loop = asyncio.get_running_loop()
        watcher._handle_event(str(root / "app.js"), ChangeType.MODIFIED)

        await asyncio.wait_for(received.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_trigger(self, root):
        calls = []
        watcher = FileWatcher([root], calls.append, debounce_ms=50)
        watcher._loop = asyncio.get_running_loop()

        watcher._handle_event(str(root / "index.html"), ChangeType.MODIFIED)
        watcher.stop()
        await asyncio.sleep(0.15)

        assert calls == []
        assert watcher.get_stats()["queue_size"] == 0

    @pytest.mark.asyncio
    async def test_events_from_observer_thread(self, root):
        calls = []
        watcher = FileWatcher([root], calls.append, debounce_ms=30)
        watcher._loop = asyncio.get_running_loop()

        threads = [
            threading.Thread(
                target=watcher._on_watchdog_event,
                args=(str(root / f"f{i}.html"), ChangeType.MODIFIED)
            )
            for i in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        await asyncio.sleep(0.2)

        assert len(calls) == 1
        assert len(calls[0]) == 5


class TestFiltering:
    """Which paths count as content changes"""

    @pytest.fixture
    def watcher(self, root):
        return FileWatcher([root], lambda changes: None)

    @pytest.mark.parametrize("relative", [
        "index.html",
        "css/site.css",
        "js/app.mjs",
        "server.py",
    ])
    def test_previewable_files_are_watched(self, watcher, root, relative):
        assert watcher._should_watch_file(root / relative)

    @pytest.mark.parametrize("relative", [
        "node_modules/lib/index.js",
        ".git/index.html",
        "__pycache__/server.py",
        ".venv/lib/site.py",
        "notes.md",
        "build.log",
    ])
    def test_ignored_files(self, watcher, root, relative):
        assert not watcher._should_watch_file(root / relative)

    def test_ancestors_of_root_do_not_match_ignores(self, tmp_path):
        root = (tmp_path / "node_modules" / "site").resolve()
        watcher = FileWatcher([root], lambda changes: None)

        assert watcher._should_watch_file(root / "index.html")

    @pytest.mark.asyncio
    async def test_filtered_event_does_not_arm_timer(self, watcher, root):
        watcher._loop = asyncio.get_running_loop()

        watcher._handle_event(str(root / "README.md"), ChangeType.MODIFIED)

        assert watcher._debounce_handle is None
        assert watcher.get_stats()["events_filtered"] == 1


@pytest.mark.asyncio
async def test_observer_reports_real_changes(root):
    triggered = asyncio.Event()
    changes = []

    def on_change(batch):
        changes.extend(batch)
        triggered.set()

    watcher = FileWatcher([root], on_change, debounce_ms=50)
    watcher.start()
    try:
        await asyncio.sleep(0.2)
        (root / "index.html").write_text("<p>changed</p>", encoding="utf-8")
        await asyncio.wait_for(triggered.wait(), timeout=5.0)
    finally:
        watcher.stop()

    assert any(change.path.endswith("index.html") for change in changes)
    assert not watcher.is_running
