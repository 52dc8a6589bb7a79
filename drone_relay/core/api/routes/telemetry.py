"""
Telemetry Routes - Server-sent telemetry stream, snapshot and status.
"""

import asyncio
import json
from typing import Any, Dict

from aiohttp import web

from ..controller import APIController

DEFAULT_HEARTBEAT = 15.0
HEARTBEAT_CHUNK = b": keepalive\n\n"


def setup_telemetry_routes(app: web.Application, controller: APIController) -> None:
    """Register telemetry routes."""
    app.router.add_get("/drone-state-stream", state_stream_handler)
    app.router.add_get("/drone-state", state_handler)
    app.router.add_get("/status", status_handler)


def encode_event(snapshot: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(snapshot)}\n\n".encode("utf-8")


async def state_stream_handler(request: web.Request) -> web.StreamResponse:
    """GET /drone-state-stream - One SSE event now, then one per telemetry update.

    A comment line is written when no update arrived for ``sse_heartbeat``
    seconds, so a client that went away is noticed and unsubscribed.
    """
    controller: APIController = request.app["controller"]
    heartbeat = request.app.get("sse_heartbeat", DEFAULT_HEARTBEAT)

    response = web.StreamResponse()
    response.headers["Content-Type"] = "text/event-stream"
    response.headers["Cache-Control"] = "no-cache"
    response.headers["Connection"] = "keep-alive"
    response.headers["Access-Control-Allow-Origin"] = "*"

    # Telemetry is broadcast synchronously; the queue hands it to this writer.
    # Snapshot and subscription happen together so no update falls between them.
    updates: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    initial = controller.get_drone_state()
    subscriber_id = controller.subscribe_telemetry(updates.put_nowait)

    try:
        await response.prepare(request)
        await response.write(encode_event(initial))
        while True:
            try:
                snapshot = await asyncio.wait_for(updates.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                await response.write(HEARTBEAT_CHUNK)
                continue
            await response.write(encode_event(snapshot))
    except ConnectionResetError:
        pass
    finally:
        controller.unsubscribe_telemetry(subscriber_id)

    return response


async def state_handler(request: web.Request) -> web.Response:
    """GET /drone-state - Current telemetry snapshot."""
    controller: APIController = request.app["controller"]
    return web.json_response(controller.get_drone_state())


async def status_handler(request: web.Request) -> web.Response:
    """GET /status - Bridge status."""
    controller: APIController = request.app["controller"]
    return web.json_response(controller.get_status())
