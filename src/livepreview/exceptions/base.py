"""
Base exceptions for Live Preview
"""

from typing import Optional, Dict, Any


class LivePreviewError(Exception):
    """Base exception for all Live Preview errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ResolutionError(LivePreviewError):
    """Raised (and absorbed) when the project root cannot be determined"""

    def __init__(
        self,
        message: str = "Could not resolve project root",
        file_path: Optional[str] = None
    ):
        super().__init__(message, "RESOLUTION_FAILED")
        self.file_path = file_path


class GenerationError(LivePreviewError):
    """Raised when the preview server source cannot be produced or written"""

    def __init__(
        self,
        message: str = "Server generation failed",
        file_path: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, "GENERATION_FAILED")
        self.file_path = file_path
        self.original_error = original_error


class SpawnError(LivePreviewError):
    """Raised when the preview server process cannot be started"""

    def __init__(
        self,
        message: str = "Failed to start preview server",
        command: Optional[list] = None,
        port: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, "SPAWN_FAILED")
        self.command = command
        self.port = port
        self.original_error = original_error


class ProcessExitError(LivePreviewError):
    """Raised when the preview server exits abnormally"""

    def __init__(
        self,
        message: str = "Preview server exited unexpectedly",
        exit_code: Optional[int] = None
    ):
        super().__init__(message, "PROCESS_EXITED")
        self.exit_code = exit_code


class ProtocolError(LivePreviewError):
    """Raised when the reload or diagnostics protocol misbehaves"""

    def __init__(
        self,
        message: str = "Protocol error",
        url: Optional[str] = None
    ):
        super().__init__(message, "PROTOCOL_ERROR")
        self.url = url


class CleanupError(LivePreviewError):
    """Raised (and absorbed) when a temporary resource cannot be deleted"""

    def __init__(
        self,
        message: str = "Cleanup failed",
        path: Optional[str] = None
    ):
        super().__init__(message, "CLEANUP_FAILED")
        self.path = path


class ConfigurationError(LivePreviewError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None
    ):
        super().__init__(message, "CONFIGURATION_ERROR")
        self.config_key = config_key
