"""Typed settings for the bridge, loaded from ``config.txt``."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Tuple

from .config_manager import ConfigManager, get_config_manager
from .paths import DEFAULT_DATA_DIR


@dataclass(frozen=True)
class BridgeConfig:
    # Device
    drone_host: str = "192.168.10.1"
    drone_port: int = 8889
    video_port: int = 11111
    bind_host: str = "0.0.0.0"
    bind_port: int = 0
    command_supersede_after: float = 5.0

    # HTTP / WebSocket
    http_host: str = "0.0.0.0"
    http_port: int = 3000
    stream_port: int = 3001
    cors_origins: Tuple[str, ...] = ("https://live.d1o1.fun",)
    http_shutdown_timeout: float = 2.0
    sse_heartbeat: float = 15.0
    delivery_timeout: float = 5.0

    # Telemetry monitor
    monitor_interval: float = 10.0
    monitor_commands: Tuple[str, ...] = ("battery?", "time?")

    # Video pipeline
    ffmpeg_bin: str = "ffmpeg"
    still_fps: int = 2
    restart_delay: float = 1.0
    max_restart_attempts: int = 0
    terminate_timeout: float = 2.0

    # Shutdown
    safety_command: str = "emergency"
    safety_timeout: float = 2.0
    shutdown_step_timeout: float = 5.0

    data_dir: Path = field(default=DEFAULT_DATA_DIR)
    log_level: str = "info"

    @classmethod
    def from_mapping(cls, values: Dict[str, str], manager: ConfigManager = None) -> "BridgeConfig":
        cm = manager or get_config_manager()
        d = cls()
        return cls(
            drone_host=cm.get_str(values, "drone_host", d.drone_host),
            drone_port=cm.get_port(values, "drone_port", d.drone_port),
            video_port=cm.get_port(values, "video_port", d.video_port),
            bind_host=cm.get_str(values, "bind_host", d.bind_host),
            bind_port=cm.get_port(values, "bind_port", d.bind_port, allow_ephemeral=True),
            command_supersede_after=cm.get_float(values, "command_supersede_after", d.command_supersede_after),
            http_host=cm.get_str(values, "http_host", d.http_host),
            http_port=cm.get_port(values, "http_port", d.http_port),
            stream_port=cm.get_port(values, "stream_port", d.stream_port),
            cors_origins=tuple(cm.get_list(values, "cors_origins", d.cors_origins)),
            http_shutdown_timeout=cm.get_float(values, "http_shutdown_timeout", d.http_shutdown_timeout),
            sse_heartbeat=cm.get_float(values, "sse_heartbeat", d.sse_heartbeat),
            delivery_timeout=cm.get_float(values, "delivery_timeout", d.delivery_timeout),
            monitor_interval=cm.get_float(values, "monitor_interval", d.monitor_interval),
            monitor_commands=tuple(cm.get_list(values, "monitor_commands", d.monitor_commands)),
            ffmpeg_bin=cm.get_str(values, "ffmpeg_bin", d.ffmpeg_bin),
            still_fps=cm.get_int(values, "still_fps", d.still_fps),
            restart_delay=cm.get_float(values, "restart_delay", d.restart_delay),
            max_restart_attempts=cm.get_int(values, "max_restart_attempts", d.max_restart_attempts),
            terminate_timeout=cm.get_float(values, "terminate_timeout", d.terminate_timeout),
            safety_command=cm.get_str(values, "safety_command", d.safety_command),
            safety_timeout=cm.get_float(values, "safety_timeout", d.safety_timeout),
            shutdown_step_timeout=cm.get_float(values, "shutdown_step_timeout", d.shutdown_step_timeout),
            data_dir=Path(cm.get_str(values, "data_dir", str(d.data_dir))).expanduser(),
            log_level=cm.get_str(values, "log_level", d.log_level),
        )

    @classmethod
    def load(cls, config_path: Path) -> "BridgeConfig":
        cm = get_config_manager()
        return cls.from_mapping(cm.read_config(config_path), cm)

    @classmethod
    async def load_async(cls, config_path: Path) -> "BridgeConfig":
        cm = get_config_manager()
        return cls.from_mapping(await cm.read_config_async(config_path), cm)

    def with_overrides(self, **overrides: Any) -> "BridgeConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


__all__ = ["BridgeConfig"]
