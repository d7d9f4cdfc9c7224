"""
Core Live Preview components
"""

from .config import PreviewConfig
from .resolver import resolve_root
from .schemas import SessionState, ConnectionStatus, DiagnosticSnapshot, ServerEvent
from .health_monitor import PreviewHealthMonitor
from .lifecycle import LifecycleTracker
from .supervisor import PreviewSupervisor, PreviewSession, PermissionSet

__all__ = [
    "PreviewConfig",
    "resolve_root",
    "SessionState",
    "ConnectionStatus",
    "DiagnosticSnapshot",
    "ServerEvent",
    "PreviewHealthMonitor",
    "LifecycleTracker",
    "PreviewSupervisor",
    "PreviewSession",
    "PermissionSet",
]
