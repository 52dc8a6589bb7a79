"""
API route modules.

- drone: device commands and the shutdown trigger
- media: photo capture and MP4 recording
- telemetry: SSE telemetry stream, snapshot and bridge status
"""

from .drone import setup_drone_routes
from .media import setup_media_routes
from .telemetry import setup_telemetry_routes


def setup_all_routes(app, controller):
    """Register all API routes with the application."""
    setup_drone_routes(app, controller)
    setup_media_routes(app, controller)
    setup_telemetry_routes(app, controller)
