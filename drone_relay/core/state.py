"""
Bridge State - The single context object shared by all bridge components.

Every piece of mutable process-wide state lives here instead of in module
globals. Components receive the ``BridgeState`` they operate on and mutate
only the section they own:

- ``device``     DeviceLink, TelemetryMonitor, TelemetryStore
- ``stream``     VideoPipelineSupervisor
- ``recording``  VideoPipelineSupervisor
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class TelemetrySnapshot:
    """Last known device readings. ``last_update`` is epoch milliseconds."""
    battery: Optional[int] = None
    speed: Optional[str] = None
    time: Optional[str] = None
    last_update: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "battery": self.battery,
            "speed": self.speed,
            "time": self.time,
            "lastUpdate": self.last_update,
        }


@dataclass
class DeviceSession:
    connected: bool = False
    last_command: str = ""
    telemetry: TelemetrySnapshot = field(default_factory=TelemetrySnapshot)
    # Exists iff a connect handshake succeeded and shutdown has not begun.
    monitoring_handle: Optional[asyncio.Task] = None


@dataclass
class StreamPipelineState:
    process: Optional[asyncio.subprocess.Process] = None
    active: bool = False

    def clear(self) -> None:
        self.process = None
        self.active = False


@dataclass
class RecordingPipelineState:
    process: Optional[asyncio.subprocess.Process] = None
    active: bool = False
    file_path: Optional[Path] = None

    @property
    def file_name(self) -> Optional[str]:
        return self.file_path.name if self.file_path else None

    def clear(self) -> None:
        self.process = None
        self.active = False
        self.file_path = None


@dataclass
class BridgeState:
    device: DeviceSession = field(default_factory=DeviceSession)
    stream: StreamPipelineState = field(default_factory=StreamPipelineState)
    recording: RecordingPipelineState = field(default_factory=RecordingPipelineState)


__all__ = [
    "TelemetrySnapshot",
    "DeviceSession",
    "StreamPipelineState",
    "RecordingPipelineState",
    "BridgeState",
]
