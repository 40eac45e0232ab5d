"""
ASGI adapter

Lifts a framework-free ``RequestHandler`` into a Starlette application so
the bridge endpoint can run under any ASGI server, or be mounted inside an
existing Starlette/FastAPI app.

Usage:
    app = create_asgi_app(protocol.create_request_handler())
    uvicorn.run(app, port=8080)
"""

import logging

from starlette.applications import Starlette
from starlette.requests import ClientDisconnect, Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

from .protocol import BridgeRequest, RequestHandler

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 1024 * 1024

# Method and path checks belong to the handler, so every method is routed
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class BodyTooLargeError(Exception):
    pass


async def _read_body(request: Request, max_body_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_body_bytes:
        raise BodyTooLargeError()

    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_body_bytes:
            raise BodyTooLargeError()
        chunks.append(chunk)
    return b"".join(chunks)


def create_asgi_app(handler: RequestHandler, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> Starlette:
    """
    Wrap ``handler`` as a Starlette application.

    Request bodies larger than ``max_body_bytes`` are answered with 413
    without reaching the handler.
    """

    async def endpoint(request: Request) -> Response:
        try:
            body = await _read_body(request, max_body_bytes)
        except BodyTooLargeError:
            return PlainTextResponse("Request body too large", status_code=413)
        except ClientDisconnect:
            logger.debug(f"Client disconnected before sending body ({request.url.path})")
            return Response(status_code=400)

        response = await handler(BridgeRequest(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            body=body,
        ))
        return Response(content=response.body, status_code=response.status, headers=response.headers)

    return Starlette(routes=[Route("/{path:path}", endpoint, methods=_ALL_METHODS)])
