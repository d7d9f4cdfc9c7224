"""
Live Preview utilities
"""

from .logging import setup_logging, session_context, get_logger

__all__ = ["setup_logging", "session_context", "get_logger"]
