from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .models import PROFILES, ApiError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000

GUIDANCE = (
    "This is a JSON-RPC 2.0 tool endpoint.\n"
    "POST /mcp with {\"jsonrpc\": \"2.0\", \"id\": 1, \"method\": \"initialize\"} to begin,\n"
    "then call tools/list and tools/call (evaluate_site, get_run, get_latest).\n"
)

TOOLS: list[dict] = [
    {
        "name": "evaluate_site",
        "description": "Run a public-mode agent readiness evaluation for a site origin.",
        "inputSchema": {
            "type": "object",
            "required": ["origin"],
            "properties": {
                "origin": {"type": "string", "format": "uri"},
                "profile": {"type": "string", "enum": list(PROFILES)},
            },
        },
    },
    {
        "name": "get_run",
        "description": "Fetch the status of a run by runId.",
        "inputSchema": {
            "type": "object",
            "required": ["runId"],
            "properties": {"runId": {"type": "string"}},
        },
    },
    {
        "name": "get_latest",
        "description": "Fetch the latest evaluation for a domain.",
        "inputSchema": {
            "type": "object",
            "required": ["domain"],
            "properties": {"domain": {"type": "string"}},
        },
    },
]


def rpc_success(rpc_id, result) -> dict:
    return {"jsonrpc": JSONRPC_VERSION, "id": rpc_id, "result": result}


def rpc_error(rpc_id, code: int, message: str, data=None) -> dict:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": rpc_id, "error": error}


def is_rpc_request(payload) -> bool:
    return (
        isinstance(payload, dict)
        and payload.get("jsonrpc") == JSONRPC_VERSION
        and isinstance(payload.get("method"), str)
    )


def to_tool_content(result) -> dict:
    return {
        "content": [{"type": "text", "text": json.dumps(result, indent=2)}],
        "isError": False,
    }


@dataclass
class ToolServer:
    """Dispatches JSON-RPC requests to the three evaluation tools.

    The callables raise ApiError for anything the caller should see as a
    tool error; the dispatcher turns that into a -32000 response.
    """

    evaluate: Callable[[dict], Awaitable[dict]]
    get_run: Callable[[str], Awaitable[dict]]
    get_latest: Callable[[str], Awaitable[dict]]
    name: str = "agentability"
    version: str = "0.1.0"

    async def handle(self, payload) -> dict | None:
        """Return the response envelope, or None for a notification."""
        if not is_rpc_request(payload):
            return rpc_error(None, INVALID_REQUEST, "Invalid Request")
        if "id" not in payload:
            return None

        rpc_id = payload["id"]
        method = payload["method"]
        params = payload.get("params")

        if method == "initialize":
            return rpc_success(rpc_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "serverInfo": {"name": self.name, "version": self.version},
                "capabilities": {"tools": {}},
            })
        if method in ("initialized", "ping"):
            return rpc_success(rpc_id, {})
        if method == "tools/list":
            return rpc_success(rpc_id, {"tools": TOOLS})
        if method == "tools/call":
            return await self._call_tool(rpc_id, params)
        return rpc_error(rpc_id, METHOD_NOT_FOUND, "Method not found")

    async def _call_tool(self, rpc_id, params) -> dict:
        if not isinstance(params, dict):
            return rpc_error(rpc_id, INVALID_PARAMS, "Invalid params")
        tool = params.get("name")
        if not isinstance(tool, str) or not tool:
            return rpc_error(rpc_id, INVALID_PARAMS, "Invalid params", {"fields": {"name": "Required"}})
        args = params.get("arguments")
        if not isinstance(args, dict):
            args = {}

        try:
            if tool == "evaluate_site":
                result = await self.evaluate(args)
            elif tool == "get_run":
                run_id = args.get("runId")
                if not isinstance(run_id, str) or not run_id:
                    return rpc_error(rpc_id, INVALID_PARAMS, "Invalid params", {"fields": {"runId": "Required"}})
                result = await self.get_run(run_id)
            elif tool == "get_latest":
                domain = args.get("domain")
                if not isinstance(domain, str) or not domain:
                    return rpc_error(rpc_id, INVALID_PARAMS, "Invalid params", {"fields": {"domain": "Required"}})
                result = await self.get_latest(domain)
            else:
                return rpc_error(rpc_id, METHOD_NOT_FOUND, "Method not found")
        except ApiError as e:
            logger.info("tool %s failed code=%s", tool, e.code)
            data = {"code": e.code}
            if e.details is not None:
                data["details"] = e.details
            return rpc_error(rpc_id, SERVER_ERROR, e.message, data)

        return rpc_success(rpc_id, to_tool_content(result))
