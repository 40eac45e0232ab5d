"""
HTTP tool bridge protocol

JSON over HTTP POST: the stub sends ``{"input": ...}`` to
``{bridge_url}/{tool}`` with ``Authorization: Bearer <token>``; the endpoint
replies with the serialized ``ToolBridgeResult``.
"""

import json
import logging
from typing import Any

from .exceptions import (
    BadRequestError,
    BridgeError,
    EndpointNotFoundError,
    MethodNotAllowedError,
    NotInitializedError,
    UnauthenticatedError,
)
from .markers import TOOL_CALL_TAG, TOOL_ERROR_TAG, TOOL_RESULT_TAG
from .protocol import (
    BridgeErrorInfo,
    BridgeRequest,
    BridgeResponse,
    RequestHandler,
    ToolBridgeProtocol,
    ToolBridgeResult,
)
from .rate_limiter import RateLimiter
from .token import parse_auth_header
from .tool_registry import is_valid_tool_name

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_PATH = "/api/tool-bridge"
HTTPX_VERSION = ">=0.27"

STATUS_BY_ERROR_CODE = {
    "BAD_REQUEST": 400,
    "UNAUTHENTICATED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "METHOD_NOT_ALLOWED": 405,
    "RATE_LIMITED": 429,
    "EXECUTION_ERROR": 500,
    "NOT_INITIALIZED": 503,
}

_RULE = "# " + "=" * 77

# Shared by both stub flavours; relies on the transport defining _send()
_CALL_TOOL_SOURCE = '''

class ToolCallError(Exception):
    """Raised inside sandboxed code when the bridge rejects a tool call"""

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


def _marker(tag, name, payload):
    print(f"[{tag}:{name}] " + _json.dumps(payload, separators=(",", ":"), default=str), flush=True)


async def _call_tool(name, payload):
    payload = {} if payload is None else payload
    start = _time.monotonic()
    _marker(_CALL_TAG, name, payload)
    try:
        data = await _send(name, payload)
        if not isinstance(data, dict):
            raise ToolCallError("BAD_RESPONSE", "Malformed bridge response")
        if not data.get("success"):
            error = data.get("error") or {}
            raise ToolCallError(
                error.get("code", "UNKNOWN"),
                error.get("message") or "Tool execution failed",
            )
    except Exception as e:
        duration_ms = int((_time.monotonic() - start) * 1000)
        _marker(_ERROR_TAG, name, {
            "durationMs": duration_ms,
            "success": False,
            "error": str(e) or "Unknown error",
        })
        raise
    duration_ms = int((_time.monotonic() - start) * 1000)
    _marker(_RESULT_TAG, name, {"durationMs": duration_ms, "success": True})
    return data.get("result")
'''

_URLLIB_TRANSPORT_SOURCE = '''

def _post(name, payload):
    request = _urllib_request.Request(
        f"{_TOOL_BRIDGE_URL}/{name}",
        data=_json.dumps({"input": payload}, default=str).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {_EXECUTION_TOKEN}",
        },
        method="POST",
    )
    try:
        with _urllib_request.urlopen(request, timeout=_REQUEST_TIMEOUT) as response:
            body = response.read()
    except _urllib_error.HTTPError as e:
        body = e.read()
        try:
            return _json.loads(body.decode("utf-8"))
        except ValueError:
            raise ToolCallError("HTTP_ERROR", f"HTTP {e.code}: {e.reason}") from None
    return _json.loads(body.decode("utf-8"))


async def _send(name, payload):
    return await _asyncio.to_thread(_post, name, payload)
'''

_HTTPX_TRANSPORT_SOURCE = '''

async def _send(name, payload):
    async with _httpx.AsyncClient(timeout=_REQUEST_TIMEOUT) as client:
        response = await client.post(
            f"{_TOOL_BRIDGE_URL}/{name}",
            json={"input": payload},
            headers={"Authorization": f"Bearer {_EXECUTION_TOKEN}"},
        )
    try:
        return response.json()
    except ValueError:
        raise ToolCallError("HTTP_ERROR", f"HTTP {response.status_code}") from None
'''


def _json_response(status: int, payload: dict, headers: dict[str, str] | None = None) -> BridgeResponse:
    response_headers = {"Content-Type": "application/json"}
    response_headers.update(headers or {})
    return BridgeResponse(
        status=status,
        headers=response_headers,
        body=json.dumps(payload, default=str).encode("utf-8"),
    )


def _error_response(error: BridgeError, headers: dict[str, str] | None = None) -> BridgeResponse:
    result = ToolBridgeResult(success=False, error=BridgeErrorInfo.from_exception(error))
    return _json_response(STATUS_BY_ERROR_CODE[error.code], result.to_dict(), headers)


class HTTPToolBridgeProtocol(ToolBridgeProtocol):
    """
    JSON-over-HTTP bridge

    Usage:
        protocol = HTTPToolBridgeProtocol()
        protocol.initialize(bridge_config, registry)
        handler = protocol.create_request_handler()
        app = create_asgi_app(handler)   # serve with any ASGI server
    """

    name = "http"

    def __init__(
        self,
        endpoint_path: str = DEFAULT_ENDPOINT_PATH,
        use_httpx_client: bool = False,
        request_timeout_seconds: float = 30.0,
        rate_limiter: RateLimiter | None = None,
        **kwargs
    ):
        """
        Args:
            endpoint_path: Path prefix the request handler serves
            use_httpx_client: Generate an httpx-based stub instead of urllib
            request_timeout_seconds: Per-call timeout inside the sandbox
        """
        super().__init__(rate_limiter=rate_limiter, **kwargs)
        self.endpoint_path = "/" + endpoint_path.strip("/")
        self.use_httpx_client = use_httpx_client
        self.request_timeout_seconds = request_timeout_seconds

    def sandbox_dependencies(self) -> dict[str, str]:
        return {"httpx": HTTPX_VERSION} if self.use_httpx_client else {}

    def generate_client_stub(self, bridge_url: str, token: str, tool_names: list[str]) -> str:
        """
        Generate the Python source that defines ``tools`` inside the sandbox.

        Each ``tools.<name>(input)`` coroutine prints a call marker, POSTs the
        input to the bridge, then prints a result or error marker before
        returning the result or raising ``ToolCallError``.
        """
        for tool_name in tool_names:
            if not is_valid_tool_name(tool_name):
                raise ValueError(f"Invalid tool name '{tool_name}'")

        flavour = "httpx" if self.use_httpx_client else "urllib"
        lines = [
            _RULE,
            f"# Auto-generated tool bridge client ({flavour})",
            _RULE,
            "import asyncio as _asyncio",
            "import json as _json",
            "import time as _time",
        ]
        if self.use_httpx_client:
            lines.append("import httpx as _httpx")
        else:
            lines.append("import urllib.error as _urllib_error")
            lines.append("import urllib.request as _urllib_request")
        lines += [
            "",
            f"_TOOL_BRIDGE_URL = {bridge_url.rstrip('/')!r}",
            f"_EXECUTION_TOKEN = {token!r}",
            f"_REQUEST_TIMEOUT = {float(self.request_timeout_seconds)!r}",
            f"_CALL_TAG = {TOOL_CALL_TAG!r}",
            f"_RESULT_TAG = {TOOL_RESULT_TAG!r}",
            f"_ERROR_TAG = {TOOL_ERROR_TAG!r}",
        ]

        source = "\n".join(lines)
        source += _HTTPX_TRANSPORT_SOURCE if self.use_httpx_client else _URLLIB_TRANSPORT_SOURCE
        source += _CALL_TOOL_SOURCE

        methods = [
            f"    async def {tool_name}(self, input=None):\n"
            f"        return await _call_tool({tool_name!r}, input)\n"
            for tool_name in tool_names
        ]
        source += "\n\nclass _Tools:\n"
        source += "\n".join(methods) if methods else "    pass\n"
        source += "\n\ntools = _Tools()\n"
        source += _RULE + "\n"
        return source

    def _tool_name_from_path(self, path: str) -> str | None:
        path = path.split("?", 1)[0].rstrip("/")
        prefix = self.endpoint_path.rstrip("/") + "/"
        if not path.startswith(prefix):
            return None
        tool_name = path[len(prefix):]
        return tool_name if is_valid_tool_name(tool_name) else None

    @staticmethod
    def _parse_input(body: bytes) -> tuple[bool, Any]:
        if not body:
            return True, {}
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return False, None
        if not isinstance(payload, dict):
            return False, None
        return True, payload.get("input", {})

    def create_request_handler(self) -> RequestHandler:
        """
        Build the endpoint coroutine.

        The token is checked before anything else in the request is looked
        at; every rejection reason for a bad token yields the same 401.
        """
        async def handle(request: BridgeRequest) -> BridgeResponse:
            if not self.is_initialized:
                return _error_response(NotInitializedError("Tool bridge not initialized"))

            token = parse_auth_header(request.header("authorization"))
            context = self.verify_execution_token(token)
            if context is None:
                return _error_response(UnauthenticatedError())

            if request.method.upper() != "POST":
                return _error_response(MethodNotAllowedError(request.method), headers={"Allow": "POST"})

            tool_name = self._tool_name_from_path(request.path)
            if tool_name is None:
                return _error_response(EndpointNotFoundError(request.path))

            ok, tool_input = self._parse_input(request.body)
            if not ok:
                return _error_response(BadRequestError())

            result = await self.dispatch(tool_name, tool_input, context)
            if result.success:
                return _json_response(200, result.to_dict())

            headers = {}
            if result.error.retry_after_seconds is not None:
                headers["Retry-After"] = str(result.error.retry_after_seconds)
            status = STATUS_BY_ERROR_CODE.get(result.error.code, 500)
            return _json_response(status, result.to_dict(), headers)

        return handle
