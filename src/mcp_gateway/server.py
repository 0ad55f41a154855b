"""Streamable HTTP endpoint for MCP JSON-RPC messages.

Each POST carries one JSON-RPC message. ``initialize`` opens a session
bound to the authenticated principal's email and returns its id in the
``mcp-session-id`` header; every later message must present that id
with the same identity.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, Response

from shared.errors import AuthError
from shared.logging import get_logger
from mcp_gateway import __version__
from mcp_gateway.registry import ToolRegistry, ToolValidationError
from mcp_gateway.sessions import SessionStore

logger = get_logger(__name__)

SESSION_HEADER = "mcp-session-id"
DEFAULT_PROTOCOL_VERSION = "2025-06-18"
SERVER_NAME = "mcp-gateway"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000


def rpc_result(request_id: Any, result: Any, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": request_id, "result": result},
        headers=headers,
    )


def rpc_error(
    request_id: Any,
    code: int,
    message: str,
    status_code: int = status.HTTP_200_OK
) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def create_mcp_router(mcp_path: str) -> APIRouter:
    """Build the router serving the MCP endpoint at ``mcp_path``."""
    router = APIRouter(tags=["MCP"])

    @router.post(mcp_path)
    async def handle_message(request: Request):
        principal = request.state.principal
        sessions: SessionStore = request.app.state.sessions
        registry: ToolRegistry = request.app.state.tools

        try:
            message = await request.json()
        except ValueError:
            return rpc_error(None, PARSE_ERROR, "Parse error", status.HTTP_400_BAD_REQUEST)
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0" or "method" not in message:
            return rpc_error(None, INVALID_REQUEST, "Invalid Request", status.HTTP_400_BAD_REQUEST)

        request_id = message.get("id")
        method = message["method"]
        params = message.get("params") or {}

        if method == "initialize":
            session_id = await sessions.create(principal.email)
            return rpc_result(
                request_id,
                {
                    "protocolVersion": params.get("protocolVersion", DEFAULT_PROTOCOL_VERSION),
                    "capabilities": {"tools": {"listChanged": False}},
                    "serverInfo": {"name": SERVER_NAME, "version": __version__},
                },
                headers={SESSION_HEADER: session_id},
            )

        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return rpc_error(
                request_id,
                SERVER_ERROR,
                "Bad Request: Mcp-Session-Id header is required",
                status.HTTP_400_BAD_REQUEST,
            )
        try:
            await sessions.validate(session_id, principal.email)
        except AuthError as e:
            logger.warning("Session rejected", error=e.error)
            return rpc_error(request_id, SERVER_ERROR, e.description, e.status_code)

        # Notifications get no response body
        if "id" not in message:
            return Response(status_code=status.HTTP_202_ACCEPTED)

        if method == "ping":
            return rpc_result(request_id, {})

        if method == "tools/list":
            return rpc_result(request_id, {"tools": registry.list_tools()})

        if method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments") or {}
            try:
                output = await registry.call(name, arguments, principal)
            except KeyError:
                return rpc_error(request_id, INVALID_PARAMS, f"Unknown tool: {name}")
            except ToolValidationError as e:
                return rpc_result(request_id, {
                    "content": [{"type": "text", "text": f"Invalid arguments: {e}"}],
                    "isError": True,
                })
            result: dict[str, Any] = {
                "content": [{"type": "text", "text": json.dumps(output, default=str)}],
                "isError": False,
            }
            if isinstance(output, dict):
                result["structuredContent"] = output
            return rpc_result(request_id, result)

        return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    async def method_not_allowed():
        return rpc_error(
            None, SERVER_ERROR, "Method not allowed.", status.HTTP_405_METHOD_NOT_ALLOWED
        )

    router.add_api_route(mcp_path, method_not_allowed, methods=["GET", "DELETE"])

    return router
