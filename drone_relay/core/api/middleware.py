"""
API Middleware - Error translation, request logging and CORS.

Every exception that escapes a handler is turned into a JSON body of the
form ``{"error": "<message>"}``:

- InvalidStateError  -> 400
- TransportError     -> 502
- ProtocolTimeout    -> 504
- anything else      -> 500
"""

import time
from typing import Callable, Iterable

from aiohttp import web

from drone_relay.core.errors import (
    BridgeError,
    InvalidStateError,
    ProtocolTimeout,
    TransportError,
)
from drone_relay.core.logging_utils import get_module_logger


logger = get_module_logger("APIMiddleware")

_STATUS_BY_ERROR = (
    (InvalidStateError, 400),
    (TransportError, 502),
    (ProtocolTimeout, 504),
)


def status_for_error(error: BaseException) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def create_error_response(message: str, status: int = 400) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def request_logging_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    start_time = time.perf_counter()
    response = await handler(request)
    logger.debug(
        "%s %s -> %s (%.1fms)",
        request.method,
        request.path,
        response.status,
        (time.perf_counter() - start_time) * 1000,
    )
    return response


@web.middleware
async def error_handling_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return create_error_response(e.text or e.reason, status=e.status)
    except BridgeError as e:
        status = status_for_error(e)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.path, e)
        return create_error_response(str(e), status=status)
    except Exception as e:
        logger.error("Unexpected error in %s %s: %s", request.method, request.path, e, exc_info=True)
        return create_error_response(str(e) or type(e).__name__, status=500)


def create_cors_middleware(allowed_origins: Iterable[str]):
    """Answer preflight requests and add ``Access-Control-Allow-*`` headers.

    ``*`` in ``allowed_origins`` allows every origin.
    """
    origins = frozenset(allowed_origins)

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)

        origin = request.headers.get("Origin")
        if origin and ("*" in origins or origin in origins) and not response.prepared:
            response.headers.setdefault("Access-Control-Allow-Origin", origin)
            response.headers.setdefault("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
            response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
            response.headers.setdefault("Vary", "Origin")

        return response

    return cors_middleware
