"""Exception types raised by the bridge components."""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all drone relay errors."""


class TransportError(BridgeError):
    """A datagram could not be sent to the device, or the link is closed."""


class ProtocolTimeout(BridgeError):
    """The device did not acknowledge a command within the allowed time."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"No reply to '{command}' within {timeout:.1f}s")
        self.command = command
        self.timeout = timeout


class ProcessError(BridgeError):
    """An external subprocess failed to launch, crashed, or exited non-zero."""

    def __init__(self, name: str, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(f"{name}: {message}")
        self.name = name
        self.returncode = returncode


class DeliveryError(BridgeError):
    """Pushing an update to a single subscriber failed."""

    def __init__(self, subscriber_id: object, cause: BaseException) -> None:
        super().__init__(f"Delivery to subscriber {subscriber_id} failed: {cause}")
        self.subscriber_id = subscriber_id
        self.__cause__ = cause


class ShutdownStepError(BridgeError):
    """One step of the shutdown sequence failed or timed out."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"Shutdown step '{step}' failed: {cause!r}")
        self.step = step
        self.__cause__ = cause


class InvalidStateError(BridgeError):
    """A request is not valid in the bridge's current state."""


__all__ = [
    "BridgeError",
    "TransportError",
    "ProtocolTimeout",
    "ProcessError",
    "DeliveryError",
    "ShutdownStepError",
    "InvalidStateError",
]
