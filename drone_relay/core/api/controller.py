"""
API Controller - Thin wrapper around DroneBridge for the HTTP routes.

Routes call these coroutines and turn the returned dicts into JSON. Errors
are raised as ``BridgeError`` subclasses and mapped to status codes by
the error middleware.
"""

from typing import Any, Dict, Optional

import asyncio

from drone_relay.core.asyncio_utils import create_logged_task
from drone_relay.core.bridge import DroneBridge
from drone_relay.core.logging_utils import get_module_logger


logger = get_module_logger("APIController")


class APIController:

    def __init__(self, bridge: DroneBridge):
        self.bridge = bridge
        self._shutdown_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Device
    # =========================================================================

    async def drone_command(self, command: str) -> Dict[str, Any]:
        logger.info("Drone command requested: %s", command)
        return await self.bridge.handle_command(command)

    def request_shutdown(self) -> Dict[str, Any]:
        """Schedule the shutdown sequence and return before it runs."""
        logger.info("Shutdown requested via API")
        if self._shutdown_task is None:
            self._shutdown_task = create_logged_task(
                self.bridge.request_shutdown("API"),
                logger=logger,
                context="api-shutdown",
            )
        return {"status": "ok", "message": "Shutdown initiated"}

    # =========================================================================
    # Media
    # =========================================================================

    async def capture_photo(self) -> Dict[str, Any]:
        return await self.bridge.capture_photo()

    async def start_recording(self) -> Dict[str, Any]:
        return await self.bridge.start_recording()

    async def stop_recording(self) -> Dict[str, Any]:
        return await self.bridge.stop_recording()

    # =========================================================================
    # Telemetry / status
    # =========================================================================

    def get_drone_state(self) -> Dict[str, Any]:
        return self.bridge.telemetry_snapshot()

    def get_status(self) -> Dict[str, Any]:
        return self.bridge.status()

    def subscribe_telemetry(self, push) -> int:
        subscriber_id = self.bridge.registry.add_telemetry_subscriber(push)
        logger.info(
            "SSE client %d connected (%d total)",
            subscriber_id,
            self.bridge.registry.telemetry_subscriber_count,
        )
        return subscriber_id

    def unsubscribe_telemetry(self, subscriber_id: int) -> None:
        self.bridge.registry.remove_telemetry_subscriber(subscriber_id)
        logger.info(
            "SSE client %d disconnected (%d remaining)",
            subscriber_id,
            self.bridge.registry.telemetry_subscriber_count,
        )
