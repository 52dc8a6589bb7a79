"""
Media Routes - Photo capture and MP4 recording.
"""

from aiohttp import web

from ..controller import APIController


def setup_media_routes(app: web.Application, controller: APIController) -> None:
    """Register media routes."""
    app.router.add_post("/capture-photo", capture_photo_handler)
    app.router.add_post("/start-recording", start_recording_handler)
    app.router.add_post("/stop-recording", stop_recording_handler)


async def capture_photo_handler(request: web.Request) -> web.Response:
    """POST /capture-photo - Save the current frame as photo_<ms>.jpg."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.capture_photo())


async def start_recording_handler(request: web.Request) -> web.Response:
    """POST /start-recording - Start teeing the live stream into an MP4."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.start_recording())


async def stop_recording_handler(request: web.Request) -> web.Response:
    """POST /stop-recording - Finish the MP4 and return its file name."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.stop_recording())
