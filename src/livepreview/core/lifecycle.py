"""
Lifecycle tracking for preview session start-up

Records each step of a start attempt (resolving the root, checking the
runtime, generating the server, spawning it, ...) with its status and timing,
and renders a markdown report for troubleshooting.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

ROOT_STEP = "root"


class StepStatus(str, Enum):
    """Lifecycle step status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


STATUS_ICONS = {
    StepStatus.PENDING: "⏳",
    StepStatus.RUNNING: "🔄",
    StepStatus.SUCCESS: "✅",
    StepStatus.FAILURE: "❌",
    StepStatus.SKIPPED: "⏭️",
}


@dataclass
class LifecycleStep:
    """A step in the session lifecycle"""
    id: str
    name: str
    description: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    error: Optional[str] = None
    details: Optional[str] = None
    parent: Optional[str] = None
    children: List[str] = field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time


class LifecycleTracker:
    """Tracks the steps of one preview session"""

    def __init__(self, name: str = "Preview Session", clock=time.monotonic):
        self._clock = clock
        self.start_time = clock()
        self.steps: Dict[str, LifecycleStep] = {
            ROOT_STEP: LifecycleStep(
                id=ROOT_STEP,
                name=name,
                description="Tracks the entire session lifecycle",
                status=StepStatus.RUNNING,
                start_time=self.start_time
            )
        }
        self.current_step_id: Optional[str] = ROOT_STEP

    def begin_step(
        self,
        step_id: str,
        name: str,
        description: str = "",
        parent_id: Optional[str] = None
    ) -> str:
        """Start a step under ``parent_id`` (default: the current step)"""
        parent_id = parent_id or self.current_step_id or ROOT_STEP
        if parent_id not in self.steps:
            parent_id = ROOT_STEP

        self.steps[step_id] = LifecycleStep(
            id=step_id,
            name=name,
            description=description,
            status=StepStatus.RUNNING,
            start_time=self._clock(),
            parent=parent_id
        )
        if step_id not in self.steps[parent_id].children:
            self.steps[parent_id].children.append(step_id)

        self.current_step_id = step_id
        logger.debug("Lifecycle step started", step=step_id)
        return step_id

    def _finish(self, step_id: Optional[str], status: StepStatus) -> Optional[LifecycleStep]:
        step_id = step_id or self.current_step_id
        step = self.steps.get(step_id) if step_id else None
        if step is None:
            logger.warning("Unknown lifecycle step", step=step_id)
            return None

        step.status = status
        step.end_time = self._clock()
        if step.start_time is None:
            step.start_time = step.end_time

        if self.current_step_id == step.id:
            self.current_step_id = step.parent or ROOT_STEP
        return step

    def complete_step(self, step_id: Optional[str] = None, details: Optional[str] = None):
        step = self._finish(step_id, StepStatus.SUCCESS)
        if step and details:
            step.details = details

    def fail_step(
        self,
        step_id: Optional[str] = None,
        error: Union[Exception, str, None] = None,
        details: Optional[str] = None
    ):
        step = self._finish(step_id, StepStatus.FAILURE)
        if step is None:
            return
        step.error = str(error) if error is not None else None
        step.details = details
        logger.debug("Lifecycle step failed", step=step.id, error=step.error)

    def skip_step(self, step_id: str, reason: str, name: Optional[str] = None):
        if step_id not in self.steps:
            self.begin_step(step_id, name or step_id, reason)
        step = self._finish(step_id, StepStatus.SKIPPED)
        if step:
            step.details = reason

    def finish(self, success: bool = True):
        """Close the root step"""
        root = self.steps[ROOT_STEP]
        root.status = StepStatus.SUCCESS if success else StepStatus.FAILURE
        root.end_time = self._clock()
        self.current_step_id = None

    def get_step(self, step_id: str) -> Optional[LifecycleStep]:
        return self.steps.get(step_id)

    def failed_steps(self) -> List[LifecycleStep]:
        return [s for s in self.steps.values() if s.status == StepStatus.FAILURE]

    def generate_report(self) -> str:
        """Markdown report of all steps"""
        total = self._clock() - self.start_time
        failed = self.failed_steps()

        lines = [
            "# Live Preview Lifecycle Report",
            "",
            f"Total duration: {total * 1000:.0f}ms",
            f"Steps: {len(self.steps) - 1}, failures: {len(failed)}",
            "",
            "## Steps",
            "",
        ]
        lines.extend(self._step_tree(ROOT_STEP, 0))

        if failed:
            lines.extend(["", "## Failures", ""])
            for step in failed:
                lines.append(f"- **{step.name}**: {step.error or 'unknown error'}")
                if step.details:
                    lines.append(f"  - {step.details}")

        return "\n".join(lines) + "\n"

    def _step_tree(self, step_id: str, level: int) -> List[str]:
        step = self.steps[step_id]
        duration = f" ({step.duration * 1000:.0f}ms)" if step.duration is not None else ""
        line = f"{'  ' * level}- {STATUS_ICONS[step.status]} {step.name}{duration}"
        if step.details and step.status != StepStatus.FAILURE:
            line += f": {step.details}"

        lines = [line]
        for child in step.children:
            lines.extend(self._step_tree(child, level + 1))
        return lines
