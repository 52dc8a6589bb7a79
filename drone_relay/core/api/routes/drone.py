"""
Drone Routes - Device commands and shutdown.
"""

from aiohttp import web

from ..controller import APIController


def setup_drone_routes(app: web.Application, controller: APIController) -> None:
    """Register drone routes."""
    # The literal route must win over the {command} pattern.
    app.router.add_post("/drone/shutdown", shutdown_handler)
    app.router.add_get("/drone/{command}", command_handler)


async def command_handler(request: web.Request) -> web.Response:
    """GET /drone/{command} - Send a command verbatim and return the reply."""
    controller: APIController = request.app["controller"]
    result = await controller.drone_command(request.match_info["command"])
    return web.json_response(result)


async def shutdown_handler(request: web.Request) -> web.Response:
    """POST /drone/shutdown - Acknowledge, then shut down in the background."""
    controller: APIController = request.app["controller"]
    return web.json_response(controller.request_shutdown())
