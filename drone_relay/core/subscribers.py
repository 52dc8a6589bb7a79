"""
Subscriber Registry - Fan-out of video chunks and telemetry snapshots.

Two independent kinds of subscriber are tracked:

- Binary-stream subscribers (WebSocket connections). A failed or stalled
  delivery removes and closes that subscriber; the rest of the broadcast
  continues.
- Telemetry-push subscribers (SSE connections), keyed by a monotonically
  assigned id. A failing push is logged but the subscriber stays registered.

Apart from closing a subscriber it had to drop, the registry references
the connections without owning them; the transport layer opens and
closes them.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Dict, List, Optional, Protocol

from aiohttp import WSCloseCode

from .asyncio_utils import create_logged_task
from .errors import DeliveryError
from .logging_utils import get_module_logger


logger = get_module_logger("SubscriberRegistry")

TelemetryPush = Callable[[Dict[str, Any]], None]


class BinarySubscriber(Protocol):
    """The subset of ``aiohttp.web.WebSocketResponse`` the registry relies on."""

    @property
    def closed(self) -> bool: ...

    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, *, code: int = ..., message: bytes = ...) -> bool: ...


class SubscriberRegistry:

    def __init__(self, send_timeout: Optional[float] = 5.0) -> None:
        self.send_timeout = send_timeout
        self._stream_clients: Dict[BinarySubscriber, int] = {}
        self._client_ids = itertools.count(1)
        self._telemetry_subscribers: Dict[int, TelemetryPush] = {}
        self._telemetry_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Binary-stream subscribers

    def add_stream_client(self, client: BinarySubscriber) -> int:
        client_id = self._stream_clients.get(client)
        if client_id is None:
            client_id = next(self._client_ids)
            self._stream_clients[client] = client_id
        return client_id

    def remove_stream_client(self, client: BinarySubscriber) -> bool:
        return self._stream_clients.pop(client, None) is not None

    def stream_client_id(self, client: BinarySubscriber) -> Optional[int]:
        return self._stream_clients.get(client)

    def open_stream_clients(self) -> List[BinarySubscriber]:
        return [client for client in self._stream_clients if not client.closed]

    @property
    def stream_client_count(self) -> int:
        return len(self._stream_clients)

    async def broadcast_chunk(self, chunk: bytes) -> int:
        """Send ``chunk`` to every open subscriber; return how many received it.

        A subscriber that does not accept the chunk within ``send_timeout``
        counts as a failed delivery, so one stalled client delays a
        broadcast at most once.
        """
        targets = self.open_stream_clients()
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._send(client, chunk) for client in targets),
            return_exceptions=True,
        )

        delivered = 0
        for client, result in zip(targets, results):
            if isinstance(result, BaseException):
                error = DeliveryError(self._stream_clients.get(client, "?"), result)
                logger.error("%s", error)
                self._drop(client)
            else:
                delivered += 1
        return delivered

    async def _send(self, client: BinarySubscriber, chunk: bytes) -> None:
        if self.send_timeout is None:
            await client.send_bytes(chunk)
            return
        try:
            await asyncio.wait_for(client.send_bytes(chunk), self.send_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"send blocked for more than {self.send_timeout:.1f}s") from None

    def _drop(self, client: BinarySubscriber) -> None:
        if not self.remove_stream_client(client) or client.closed:
            return
        create_logged_task(self._close_dropped(client), logger=logger, context="drop-stream-client")

    async def _close_dropped(self, client: BinarySubscriber) -> None:
        # The transport may be wedged, so closing gets the same bound as a send.
        try:
            await asyncio.wait_for(
                client.close(code=WSCloseCode.POLICY_VIOLATION, message=b"Delivery failed"),
                self.send_timeout,
            )
        except (asyncio.TimeoutError, ConnectionError) as e:
            logger.warning("Could not close dropped stream client: %r", e)

    async def close_stream_clients(
        self,
        code: int = WSCloseCode.GOING_AWAY,
        message: bytes = b"Server shutdown",
    ) -> int:
        """Close every registered stream connection and forget it."""
        clients = list(self._stream_clients.items())
        self._stream_clients.clear()

        closed = 0
        for client, client_id in clients:
            try:
                await client.close(code=code, message=message)
                closed += 1
            except Exception as e:
                logger.error("Error closing stream client %d: %s", client_id, e)
        return closed

    # ------------------------------------------------------------------
    # Telemetry-push subscribers

    def add_telemetry_subscriber(self, push: TelemetryPush) -> int:
        subscriber_id = next(self._telemetry_ids)
        self._telemetry_subscribers[subscriber_id] = push
        return subscriber_id

    def remove_telemetry_subscriber(self, subscriber_id: int) -> bool:
        return self._telemetry_subscribers.pop(subscriber_id, None) is not None

    @property
    def telemetry_subscriber_count(self) -> int:
        return len(self._telemetry_subscribers)

    def broadcast_telemetry(self, snapshot: Dict[str, Any]) -> int:
        """Invoke every push function synchronously; failures never unregister."""
        delivered = 0
        for subscriber_id, push in list(self._telemetry_subscribers.items()):
            try:
                push(snapshot)
                delivered += 1
            except Exception as e:
                logger.error("%s", DeliveryError(subscriber_id, e))
        return delivered

    def clear_telemetry_subscribers(self) -> None:
        self._telemetry_subscribers.clear()


__all__ = ["SubscriberRegistry", "BinarySubscriber", "TelemetryPush"]
