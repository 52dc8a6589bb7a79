"""
Device Link - Command and telemetry channel to the drone.

The drone speaks plain text over UDP and never tags replies, so the only
way to pair a reply with a command is arrival order. DeviceLink therefore
lets at most one command wait for a reply at any time: callers queue on a
FIFO lock, and the next non-telemetry datagram resolves the command that
currently holds it. A command left without any reply for
``supersede_after`` seconds is failed as soon as another command is
queued behind it, so one lost datagram only costs its own request.

Telemetry datagrams (battery, speed, flight time) are routed into the
TelemetryStore, which broadcasts them to SSE subscribers immediately.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .asyncio_utils import create_logged_task
from .errors import ProtocolTimeout, TransportError
from .logging_utils import get_module_logger
from .state import DeviceSession
from .telemetry import DatagramKind, TelemetryStore, classify_datagram


logger = get_module_logger("DeviceLink")


@dataclass
class PendingCommand:
    command: str
    future: "asyncio.Future[str]"
    sent_at: float = 0.0

    @property
    def is_query(self) -> bool:
        return self.command.endswith("?")


class DeviceLink(asyncio.DatagramProtocol):
    """Owns the UDP socket to the device.

    ``send_command`` sends one command and returns the device's reply,
    trimmed. Without a ``timeout`` it waits until a reply arrives or a
    later command supersedes it.
    """

    def __init__(
        self,
        store: TelemetryStore,
        host: str,
        port: int,
        *,
        bind_host: str = "0.0.0.0",
        bind_port: int = 0,
        supersede_after: Optional[float] = 5.0,
    ) -> None:
        self.store = store
        self.address: Tuple[str, int] = (host, port)
        self.bind_address: Tuple[str, int] = (bind_host, bind_port)
        self.supersede_after = supersede_after

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._pending: Optional[PendingCommand] = None
        self._command_lock = asyncio.Lock()
        self._closing = False
        self._closed = asyncio.Event()

    async def open(self) -> None:
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=self.bind_address)
        logger.info(
            "UDP link ready on %s:%d -> %s:%d",
            *self._transport.get_extra_info("sockname")[:2],
            *self.address,
        )

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    @property
    def has_pending_command(self) -> bool:
        return self._pending is not None

    # ------------------------------------------------------------------
    # asyncio.DatagramProtocol

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        self._closed.clear()

    def datagram_received(self, data: bytes, addr) -> None:
        try:
            text = data.decode("utf-8", errors="replace").strip()
            kind = classify_datagram(text)

            if kind.is_telemetry:
                self.store.apply(kind, text)
                # Query commands (battery?, speed?, ...) are answered with a
                # telemetry-shaped payload; hand it to the waiting caller too.
                if self._pending is not None and self._pending.is_query:
                    self._resolve(text)
            else:
                self._resolve(text)

            logger.info("Drone response: %s", text)
        except Exception as e:
            logger.error("Error processing drone response: %s", e, exc_info=True)

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP socket error: %s", exc)
        self._fail_pending(TransportError(str(exc)))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._transport = None
        self._fail_pending(TransportError("Device link closed"))
        self._closed.set()
        if exc is not None:
            logger.warning("UDP link lost: %s", exc)

    # ------------------------------------------------------------------
    # Sending

    def send_datagram(self, text: str) -> None:
        """Send ``text`` without waiting for any reply."""
        transport = self._transport
        if transport is None or transport.is_closing():
            raise TransportError(f"Cannot send '{text}': device link is not open")
        try:
            transport.sendto(text.encode("utf-8"), self.address)
        except OSError as e:
            raise TransportError(f"Failed to send '{text}': {e}") from e

    async def send_command(self, text: str, timeout: Optional[float] = None) -> str:
        """Send ``text`` and return the next acknowledgement from the device."""
        if self._closing:
            raise TransportError(f"Cannot send '{text}': device link is closing")

        await self._wait_for_turn(text)
        try:
            if self._closing:
                raise TransportError(f"Cannot send '{text}': device link is closing")
            return await self._exchange(text, timeout)
        finally:
            self._command_lock.release()

    async def _wait_for_turn(self, text: str) -> None:
        """Acquire the command lock in FIFO order.

        While waiting, a pending command that has gone ``supersede_after``
        seconds without a reply is failed so a lost datagram cannot block
        every later command.
        """
        turn = asyncio.ensure_future(self._command_lock.acquire())
        try:
            while not turn.done():
                wait = self.supersede_after
                pending = self._pending
                if wait is not None and pending is not None and not self._closing:
                    wait = pending.sent_at + self.supersede_after - asyncio.get_running_loop().time()
                    if wait <= 0:
                        logger.warning(
                            "No reply to '%s' after %.1fs, superseded by '%s'",
                            pending.command, self.supersede_after, text,
                        )
                        self._fail_pending(TransportError(f"No reply; superseded by '{text}'"))
                        wait = self.supersede_after
                await asyncio.wait({turn}, timeout=wait)
        except asyncio.CancelledError:
            if turn.done() and not turn.cancelled():
                self._command_lock.release()
            else:
                turn.cancel()
            raise

    async def send_safety_command(self, text: str, timeout: float) -> str:
        """Send ``text`` ahead of anything queued and stop accepting commands.

        A command still waiting for its reply is failed so the safety
        command's acknowledgement cannot be mistaken for it.
        """
        self._closing = True
        self._fail_pending(TransportError(f"Pre-empted by '{text}'"))
        return await self._exchange(text, timeout)

    async def _exchange(self, text: str, timeout: Optional[float]) -> str:
        loop = asyncio.get_running_loop()
        pending = PendingCommand(text, loop.create_future(), loop.time())
        self._pending = pending
        try:
            self.send_datagram(text)
            logger.debug("Sent command: %s", text)
            if timeout is None:
                return await pending.future
            try:
                return await asyncio.wait_for(pending.future, timeout)
            except asyncio.TimeoutError:
                raise ProtocolTimeout(text, timeout) from None
        finally:
            if self._pending is pending:
                self._pending = None

    def _resolve(self, text: str) -> None:
        pending = self._pending
        if pending is None:
            logger.debug("Unsolicited reply: %s", text)
            return
        self._pending = None
        if not pending.future.done():
            pending.future.set_result(text)

    def _fail_pending(self, error: Exception) -> None:
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.future.done():
            pending.future.set_exception(error)

    # ------------------------------------------------------------------
    # Teardown

    async def close(self) -> None:
        self._closing = True
        self._fail_pending(TransportError("Device link closed"))
        transport = self._transport
        if transport is None:
            return
        logger.info("Closing UDP drone client...")
        transport.close()
        await self._closed.wait()
        logger.info("UDP client closed.")


class TelemetryMonitor:
    """Periodically queries battery and flight time while the drone is connected.

    Replies come back through ``DeviceLink.datagram_received`` like any
    other telemetry. Arming twice is a no-op; once shut down it never arms
    again.
    """

    def __init__(
        self,
        link: DeviceLink,
        session: DeviceSession,
        *,
        interval: float = 10.0,
        commands: Sequence[str] = ("battery?", "time?"),
    ) -> None:
        self.link = link
        self.session = session
        self.interval = interval
        self.commands = tuple(commands)
        self._shut_down = False

    @property
    def armed(self) -> bool:
        handle = self.session.monitoring_handle
        return handle is not None and not handle.done()

    def arm(self) -> bool:
        if self._shut_down or self.armed:
            return False
        self.session.monitoring_handle = create_logged_task(
            self._run(), logger=logger, context="telemetry-monitor"
        )
        logger.info("Telemetry monitor armed (every %.1fs)", self.interval)
        return True

    def disarm(self) -> bool:
        handle = self.session.monitoring_handle
        self.session.monitoring_handle = None
        if handle is None:
            return False
        handle.cancel()
        logger.info("Telemetry monitor disarmed")
        return True

    def shutdown(self) -> None:
        self._shut_down = True
        self.disarm()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.poll()

    def poll(self) -> None:
        for command in self.commands:
            try:
                self.link.send_datagram(command)
            except Exception as e:
                logger.warning("Housekeeping '%s' not sent: %s", command, e)


__all__ = ["DeviceLink", "TelemetryMonitor", "PendingCommand", "DatagramKind"]
