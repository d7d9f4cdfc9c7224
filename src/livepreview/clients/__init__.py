"""
Live Preview protocol clients
"""

from .reload import ReconnectBackoff, ReloadListener, reload_socket_url

__all__ = ["ReconnectBackoff", "ReloadListener", "reload_socket_url"]
