"""HTTP API for ralph.

Provides REST endpoints to drive sessions and a WebSocket feed of their activity.
"""

from .main import create_app, run_server

__all__ = ["create_app", "run_server"]
