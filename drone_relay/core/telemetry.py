"""
Telemetry Store - Classification of inbound datagrams and the last known
device readings.

The device answers on the same socket for commands and telemetry queries,
without any request id, so the payload text alone decides what it is. The
rules are applied in priority order:

1. the whole payload is a number   -> battery
2. contains ``cm/s``               -> speed
3. contains ``s``                  -> flight time
4. anything else                   -> command acknowledgement
"""

from __future__ import annotations

import math
import re
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .logging_utils import get_module_logger
from .state import DeviceSession


logger = get_module_logger("TelemetryStore")

_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


class DatagramKind(Enum):
    BATTERY = "battery"
    SPEED = "speed"
    TIME = "time"
    ACK = "ack"

    @property
    def is_telemetry(self) -> bool:
        return self is not DatagramKind.ACK


def classify_datagram(text: str) -> DatagramKind:
    """Classify an already-trimmed datagram payload."""
    if _NUMBER_RE.fullmatch(text):
        return DatagramKind.BATTERY
    if "cm/s" in text:
        return DatagramKind.SPEED
    if "s" in text:
        return DatagramKind.TIME
    return DatagramKind.ACK


def _now_ms() -> int:
    return int(time.time() * 1000)


class TelemetryStore:
    """Mutable view over ``DeviceSession.telemetry``.

    Only the DeviceLink writes to it. Every write stamps ``lastUpdate``
    and synchronously hands the fresh snapshot to ``on_update``.
    """

    def __init__(
        self,
        session: DeviceSession,
        on_update: Optional[Callable[[Dict[str, Any]], Any]] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._session = session
        self._on_update = on_update
        self._clock = clock

    def set_listener(self, on_update: Optional[Callable[[Dict[str, Any]], Any]]) -> None:
        self._on_update = on_update

    def snapshot(self) -> Dict[str, Any]:
        return self._session.telemetry.to_dict()

    def apply(self, kind: DatagramKind, text: str) -> Dict[str, Any]:
        """Store ``text`` under the field selected by ``kind`` and broadcast."""
        telemetry = self._session.telemetry

        if kind is DatagramKind.BATTERY:
            level = float(text)
            if not math.isfinite(level):
                logger.warning("Ignoring out-of-range battery reading: %s", text)
                return telemetry.to_dict()
            telemetry.battery = int(level)
        elif kind is DatagramKind.SPEED:
            telemetry.speed = text
        elif kind is DatagramKind.TIME:
            telemetry.time = text
        else:
            raise ValueError(f"{kind} is not a telemetry datagram")

        # Wall clock may step backwards; lastUpdate must not.
        now = self._clock()
        if telemetry.last_update is not None and now < telemetry.last_update:
            now = telemetry.last_update
        telemetry.last_update = now

        snapshot = telemetry.to_dict()
        logger.debug("%s updated: %s", kind.value, text)

        if self._on_update is not None:
            try:
                self._on_update(snapshot)
            except Exception as e:
                logger.error("Telemetry listener failed: %s", e)

        return snapshot


__all__ = ["DatagramKind", "TelemetryStore", "classify_datagram"]
