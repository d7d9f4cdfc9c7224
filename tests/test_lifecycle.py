"""
Tests for session lifecycle tracking
"""

import pytest

from livepreview.core.lifecycle import LifecycleTracker, StepStatus


class StepClock:
    """Advances 10ms on every reading"""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 0.01
        return self.now


@pytest.fixture
def tracker():
    return LifecycleTracker("Preview index.html", clock=StepClock())


class TestLifecycleTracker:

    def test_steps_are_recorded_in_order(self, tracker):
        tracker.begin_step("resolve_root", "Resolve project root")
        tracker.complete_step("resolve_root", "/site")
        tracker.begin_step("spawn", "Spawn preview server")
        tracker.complete_step()

        root = tracker.get_step("root")
        assert root.children == ["resolve_root", "spawn"]
        assert tracker.get_step("resolve_root").status == StepStatus.SUCCESS
        assert tracker.get_step("resolve_root").details == "/site"
        assert tracker.get_step("spawn").status == StepStatus.SUCCESS
        assert tracker.get_step("spawn").duration == pytest.approx(0.01)

    def test_nested_steps(self, tracker):
        tracker.begin_step("start", "Start")
        tracker.begin_step("generate", "Generate")

        assert tracker.get_step("generate").parent == "start"
        tracker.complete_step("generate")
        assert tracker.current_step_id == "start"

    def test_failure(self, tracker):
        tracker.begin_step("check_port", "Check port 8000")
        tracker.fail_step(error=RuntimeError("Port 8000 is already in use"))
        tracker.finish(success=False)

        step = tracker.get_step("check_port")
        assert step.status == StepStatus.FAILURE
        assert step.error == "Port 8000 is already in use"
        assert tracker.failed_steps() == [step]
        assert tracker.get_step("root").status == StepStatus.FAILURE

    def test_skip_unstarted_step(self, tracker):
        tracker.skip_step("watch", "auto reload disabled")

        step = tracker.get_step("watch")
        assert step.status == StepStatus.SKIPPED
        assert step.details == "auto reload disabled"

    def test_unknown_step_is_ignored(self, tracker):
        tracker.complete_step("never-started")

        assert tracker.get_step("never-started") is None

    def test_report(self, tracker):
        tracker.begin_step("resolve_root", "Resolve project root")
        tracker.complete_step("resolve_root", "/site")
        tracker.begin_step("spawn", "Spawn preview server")
        tracker.fail_step("spawn", "Python runtime not found", details="python9")

        report = tracker.generate_report()

        assert report.startswith("# Live Preview Lifecycle Report")
        assert "- 🔄 Preview index.html" in report
        assert "  - ✅ Resolve project root (10ms): /site" in report
        assert "  - ❌ Spawn preview server (10ms)" in report
        assert "## Failures" in report
        assert "- **Spawn preview server**: Python runtime not found" in report
        assert "  - python9" in report
