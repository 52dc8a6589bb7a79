"""
HTTP and WebSocket surface for the drone relay.

Usage:
    python -m drone_relay --http-port 3000 --stream-port 3001
"""

from .server import APIServer, StreamServer, create_app, create_stream_app
from .controller import APIController

__all__ = ["APIServer", "StreamServer", "APIController", "create_app", "create_stream_app"]
