"""
Live Preview development tools

Server program generation, file watching and temporary file handling.
"""

from .generator import generate_server_source, render_client_script
from .temp import TempResourceManager
from .watcher import FileWatcher

__all__ = ['generate_server_source', 'render_client_script', 'TempResourceManager', 'FileWatcher']
