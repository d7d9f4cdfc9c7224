"""Live Preview Command Line Interface

Runs preview sessions, checks the local environment and inspects servers.
"""

from .main import main

__all__ = ['main']
