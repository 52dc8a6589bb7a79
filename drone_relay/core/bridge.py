"""
Drone Bridge - Composes the device link, telemetry, video pipeline and
subscriber registry around one shared ``BridgeState``.

The HTTP layer talks only to this object (through ``APIController``). It
owns the special handling of the ``command`` and ``streamon`` device
commands and the ordered shutdown sequence. Every other command, including
``streamoff``, is forwarded verbatim and recorded as the last command.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from .bridge_config import BridgeConfig
from .device_link import DeviceLink, TelemetryMonitor
from .errors import ProtocolTimeout, TransportError
from .logging_utils import get_module_logger
from .paths import MediaPaths
from .shutdown_coordinator import ShutdownCoordinator
from .state import BridgeState
from .subscribers import SubscriberRegistry
from .telemetry import TelemetryStore
from .video_pipeline import (
    STREAM_INTENT,
    FixedDelayRestartPolicy,
    ProcessFactory,
    VideoPipelineSupervisor,
)


logger = get_module_logger("DroneBridge")

CONNECT_COMMAND = "command"
STREAM_ON_COMMAND = STREAM_INTENT
OK_REPLY = "ok"


def _optional_timeout(seconds: float) -> Optional[float]:
    """Config uses 0 (or less) for "no bound"."""
    return seconds if seconds > 0 else None


class DroneBridge:

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        spawn: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> None:
        self.config = config or BridgeConfig()
        cfg = self.config

        self.state = BridgeState()
        self.registry = SubscriberRegistry(send_timeout=_optional_timeout(cfg.delivery_timeout))
        self.store = TelemetryStore(self.state.device, on_update=self.registry.broadcast_telemetry)
        self.media = MediaPaths(cfg.data_dir)

        self.link = DeviceLink(
            self.store,
            cfg.drone_host,
            cfg.drone_port,
            bind_host=cfg.bind_host,
            bind_port=cfg.bind_port,
            supersede_after=_optional_timeout(cfg.command_supersede_after),
        )
        self.monitor = TelemetryMonitor(
            self.link,
            self.state.device,
            interval=cfg.monitor_interval,
            commands=cfg.monitor_commands,
        )
        self.supervisor = VideoPipelineSupervisor(
            self.state,
            self.registry,
            self.media,
            video_port=cfg.video_port,
            ffmpeg_bin=cfg.ffmpeg_bin,
            still_fps=cfg.still_fps,
            restart_policy=FixedDelayRestartPolicy(cfg.restart_delay, cfg.max_restart_attempts),
            terminate_timeout=cfg.terminate_timeout,
            write_timeout=_optional_timeout(cfg.delivery_timeout),
            spawn=spawn,
        )

        self.coordinator = ShutdownCoordinator(default_timeout=cfg.shutdown_step_timeout)
        self._close_subscriber_transport: Optional[Callable[[], Awaitable[None]]] = None
        self._register_shutdown_steps()

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        await asyncio.to_thread(self.media.ensure)
        await self.link.open()

    def attach_subscriber_transport(self, close: Callable[[], Awaitable[None]]) -> None:
        """Register the coroutine that stops accepting and drains stream subscribers."""
        self._close_subscriber_transport = close

    async def request_shutdown(self, source: str = "unknown") -> bool:
        return await self.coordinator.initiate_shutdown(source)

    async def wait_for_shutdown(self) -> None:
        await self.coordinator.wait_for_shutdown()

    # ------------------------------------------------------------------
    # Device commands

    async def handle_command(self, command: str) -> Dict[str, Any]:
        if command == CONNECT_COMMAND:
            return await self._connect()
        if command == STREAM_ON_COMMAND:
            return await self._stream_on()

        response = await self.link.send_command(command)
        # Every acknowledged command becomes the last intended one, which
        # also ends auto-restart of the transcoder.
        self.state.device.last_command = command
        return {"status": "ok", "response": response}

    async def _connect(self) -> Dict[str, Any]:
        try:
            response = await self.link.send_command(CONNECT_COMMAND)
        except TransportError as e:
            logger.error("Connect handshake failed: %s", e)
            return {"status": "failed", "response": str(e)}

        if response != OK_REPLY:
            logger.warning("Drone refused SDK mode: %s", response)
            return {"status": "failed", "response": response}

        self.state.device.connected = True
        self.monitor.arm()
        logger.info("Drone connected")
        return {"status": "connected", "response": response}

    async def _stream_on(self) -> Dict[str, Any]:
        response = await self.link.send_command(STREAM_ON_COMMAND)
        if response != OK_REPLY:
            logger.warning("Drone refused streamon: %s", response)
            return {"status": "failed", "response": response}

        # Intent first, so a failed launch is retried by the supervisor.
        self.state.device.last_command = STREAM_ON_COMMAND
        await self.supervisor.start_stream()
        return {"status": "ok", "response": response}

    # ------------------------------------------------------------------
    # Media

    async def capture_photo(self) -> Dict[str, Any]:
        return await self.supervisor.capture_snapshot()

    async def start_recording(self) -> Dict[str, Any]:
        path = await self.supervisor.start_recording()
        return {
            "status": "ok",
            "message": "Recording started successfully",
            "fileName": path.name,
        }

    async def stop_recording(self) -> Dict[str, Any]:
        file_name = await self.supervisor.stop_recording()
        return {"status": "ok", "message": "Recording stopped", "fileName": file_name}

    # ------------------------------------------------------------------
    # Read-only views

    def telemetry_snapshot(self) -> Dict[str, Any]:
        return self.store.snapshot()

    def status(self) -> Dict[str, Any]:
        device = self.state.device
        return {
            "connected": device.connected,
            "lastCommand": device.last_command,
            "monitoring": self.monitor.armed,
            "streamActive": self.state.stream.active,
            "recordingActive": self.state.recording.active,
            "recordingFile": self.state.recording.file_name,
            "streamClients": self.registry.stream_client_count,
            "telemetrySubscribers": self.registry.telemetry_subscriber_count,
            "shuttingDown": self.coordinator.is_shutting_down or self.coordinator.is_complete,
        }

    # ------------------------------------------------------------------
    # Shutdown

    def _register_shutdown_steps(self) -> None:
        register = self.coordinator.register_step
        register("disarm telemetry monitor", self._stop_monitor)
        register("close stream subscriber transport", self._close_stream_transport)
        register("send safety command", self._send_safety_command)
        register("close device link", self._close_link)
        register("release resources", self._cleanup)

    async def _stop_monitor(self) -> None:
        self.monitor.shutdown()

    async def _close_stream_transport(self) -> None:
        if self._close_subscriber_transport is None:
            return
        logger.info("Closing WebSocket server...")
        await self._close_subscriber_transport()

    async def _send_safety_command(self) -> None:
        if not self.state.device.connected:
            return
        command = self.config.safety_command
        logger.info("Sending '%s' to drone...", command)
        try:
            response = await self.link.send_safety_command(command, self.config.safety_timeout)
        except (ProtocolTimeout, TransportError) as e:
            logger.warning("Safety command not acknowledged: %s", e)
            return
        logger.info("Drone acknowledged '%s': %s", command, response)

    async def _close_link(self) -> None:
        await self.link.close()

    async def _cleanup(self) -> None:
        self.monitor.disarm()
        await self.supervisor.shutdown()
        await self.registry.close_stream_clients()
        self.registry.clear_telemetry_subscribers()
        self.state.device.connected = False
        logger.info("Cleanup completed")


__all__ = ["DroneBridge", "CONNECT_COMMAND", "STREAM_ON_COMMAND"]
