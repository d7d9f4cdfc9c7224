"""
Live Preview - static site preview with automatic browser reload

Generates and supervises a small preview server for a project directory,
pushes ``reload`` to connected browsers when files change and reports the
server's health back to the host.
"""

from .core.config import PreviewConfig
from .core.supervisor import PreviewSupervisor, PreviewSession, PermissionSet
from .core.schemas import SessionState, ConnectionStatus, DiagnosticSnapshot
from .core.resolver import resolve_root
from .dev.generator import generate_server_source
from .clients.reload import ReloadListener
from .exceptions.base import LivePreviewError, SpawnError, GenerationError

__version__ = "0.1.0"
__author__ = "Live Preview Contributors"

__all__ = [
    # Session orchestration
    "PreviewSupervisor",
    "PreviewSession",
    "PermissionSet",
    "PreviewConfig",

    # State
    "SessionState",
    "ConnectionStatus",
    "DiagnosticSnapshot",

    # Building blocks
    "resolve_root",
    "generate_server_source",
    "ReloadListener",

    # Exceptions
    "LivePreviewError",
    "SpawnError",
    "GenerationError",

    # Version info
    "__version__",
    "__author__",
]
