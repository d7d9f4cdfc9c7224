"""
Live Preview Exceptions
"""

from .base import (
    LivePreviewError,
    ResolutionError,
    GenerationError,
    SpawnError,
    ProcessExitError,
    ProtocolError,
    CleanupError,
    ConfigurationError,
)

__all__ = [
    "LivePreviewError",
    "ResolutionError",
    "GenerationError",
    "SpawnError",
    "ProcessExitError",
    "ProtocolError",
    "CleanupError",
    "ConfigurationError",
]
