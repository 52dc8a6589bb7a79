from .bridge import DroneBridge
from .bridge_config import BridgeConfig
from .config_manager import ConfigManager, get_config_manager
from .device_link import DeviceLink, TelemetryMonitor
from .errors import (
    BridgeError,
    DeliveryError,
    InvalidStateError,
    ProcessError,
    ProtocolTimeout,
    ShutdownStepError,
    TransportError,
)
from .shutdown_coordinator import ShutdownCoordinator, ShutdownState
from .state import BridgeState
from .subscribers import SubscriberRegistry
from .telemetry import DatagramKind, TelemetryStore, classify_datagram
from .video_pipeline import FixedDelayRestartPolicy, VideoPipelineSupervisor

__all__ = [
    'DroneBridge',
    'BridgeConfig',
    'ConfigManager',
    'get_config_manager',
    'DeviceLink',
    'TelemetryMonitor',
    'BridgeError',
    'DeliveryError',
    'InvalidStateError',
    'ProcessError',
    'ProtocolTimeout',
    'ShutdownStepError',
    'TransportError',
    'ShutdownCoordinator',
    'ShutdownState',
    'BridgeState',
    'SubscriberRegistry',
    'DatagramKind',
    'TelemetryStore',
    'classify_datagram',
    'FixedDelayRestartPolicy',
    'VideoPipelineSupervisor',
]
