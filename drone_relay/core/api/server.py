"""
API Server - aiohttp servers for the drone relay.

Two listeners share the event loop:

- ``APIServer`` serves the JSON/SSE HTTP surface (default port 3000).
- ``StreamServer`` accepts WebSocket subscribers for the live MPEG-TS
  stream (default port 3001).
"""

from typing import Iterable, Optional

from aiohttp import WSMsgType, web

from drone_relay.core.logging_utils import get_module_logger
from drone_relay.core.subscribers import SubscriberRegistry

from .controller import APIController
from .middleware import (
    create_cors_middleware,
    error_handling_middleware,
    request_logging_middleware,
)
from .routes import setup_all_routes
from .routes.telemetry import DEFAULT_HEARTBEAT


logger = get_module_logger("APIServer")


class _BaseServer:

    def __init__(self, host: str, port: int, shutdown_timeout: float = 2.0):
        self.host = host
        self.port = port
        self.shutdown_timeout = shutdown_timeout

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

    def _create_app(self) -> web.Application:
        raise NotImplementedError

    @property
    def label(self) -> str:
        return type(self).__name__

    async def start(self) -> None:
        """Start the server (non-blocking)."""
        if self._running:
            logger.warning("%s already running", self.label)
            return

        self._app = self._create_app()
        # Long-lived SSE/WebSocket handlers are cancelled after shutdown_timeout.
        self._runner = web.AppRunner(self._app, shutdown_timeout=self.shutdown_timeout)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        self._running = True
        logger.info("%s started on %s", self.label, self.url)

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return
        self._running = False

        logger.info("Stopping %s...", self.label)

        if self._site:
            await self._site.stop()
            self._site = None

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._app = None
        logger.info("%s stopped", self.label)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class APIServer(_BaseServer):
    """HTTP server for device commands, media control and telemetry."""

    def __init__(
        self,
        controller: APIController,
        host: str = "0.0.0.0",
        port: int = 3000,
        cors_origins: Iterable[str] = (),
        shutdown_timeout: float = 2.0,
        sse_heartbeat: float = DEFAULT_HEARTBEAT,
    ):
        super().__init__(host, port, shutdown_timeout)
        self.controller = controller
        self.cors_origins = tuple(cors_origins)
        self.sse_heartbeat = sse_heartbeat

    def _create_app(self) -> web.Application:
        return create_app(self.controller, self.cors_origins, self.sse_heartbeat)


class StreamServer(_BaseServer):
    """WebSocket server that fans the transcoder's output out to subscribers."""

    def __init__(
        self,
        registry: SubscriberRegistry,
        host: str = "0.0.0.0",
        port: int = 3001,
        shutdown_timeout: float = 2.0,
    ):
        super().__init__(host, port, shutdown_timeout)
        self.registry = registry

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def _create_app(self) -> web.Application:
        return create_stream_app(self.registry)


def create_app(
    controller: APIController,
    cors_origins: Iterable[str] = (),
    sse_heartbeat: float = DEFAULT_HEARTBEAT,
) -> web.Application:
    """Create and configure the HTTP application."""
    # cors -> request logging -> error handling
    middlewares = [
        create_cors_middleware(cors_origins),
        request_logging_middleware,
        error_handling_middleware,
    ]
    app = web.Application(middlewares=middlewares)
    app["controller"] = controller
    app["sse_heartbeat"] = sse_heartbeat
    setup_all_routes(app, controller)
    return app


def create_stream_app(registry: SubscriberRegistry) -> web.Application:
    """Create the WebSocket application for the binary video stream."""
    app = web.Application()
    app["registry"] = registry
    app.router.add_get("/", stream_handler)
    app.on_shutdown.append(_close_stream_clients)
    return app


async def stream_handler(request: web.Request) -> web.WebSocketResponse:
    registry: SubscriberRegistry = request.app["registry"]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    client_id = registry.add_stream_client(ws)
    logger.info("New WebSocket client connected (ID: %d, total: %d)", client_id, registry.stream_client_count)

    try:
        # Subscribers only receive; anything they send is ignored.
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.error("WebSocket error for client %d: %s", client_id, ws.exception())
    finally:
        registry.remove_stream_client(ws)
        logger.info("Client %d disconnected (remaining: %d)", client_id, registry.stream_client_count)

    return ws


async def _close_stream_clients(app: web.Application) -> None:
    closed = await app["registry"].close_stream_clients()
    if closed:
        logger.info("Closed %d WebSocket client(s)", closed)
