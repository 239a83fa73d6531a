"""MCP JSON-RPC protocol handler.

Implements the Model Context Protocol over HTTP. The agent's MCP client
POSTs JSON-RPC requests to a single endpoint and expects JSON-RPC
responses back. Every tool maps onto one orchestrator operation.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any

from syntropy import __version__
from syntropy.core.logging_config import log_mcp_call
from syntropy.core.orchestrator import Orchestrator

logger = logging.getLogger("syntropy.mcp.protocol")

# ── Tool definitions (returned by tools/list) ────────────────────

WORKER_TOOLS = [
    {
        "name": "worker_spawn",
        "description": (
            "Delegate a heavy or long-running job to an isolated worker container. "
            "Only one worker runs at a time; poll worker_status with the returned task id. "
            "Workers cannot rebuild the orchestrator itself (use worker_schedule_rebuild)."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "instruction": {"type": "string", "description": "Detailed instructions for the worker"},
                "context": {"type": "string", "description": "Extra context for the worker"},
                "priority": {
                    "type": "string",
                    "enum": ["low", "normal", "high"],
                    "description": "Advisory priority (recorded only)",
                },
            },
            "required": ["instruction"],
        },
    },
    {
        "name": "worker_status",
        "description": "Check a worker task's status. Completion is detected when this is called.",
        "inputSchema": {
            "type": "object",
            "properties": {"task_id": {"type": "string"}},
            "required": ["task_id"],
        },
    },
    {
        "name": "worker_list",
        "description": "List recent worker tasks, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": ["all", "pending", "running", "completed", "failed", "aborted"],
                },
                "limit": {"type": "integer", "description": "Maximum tasks to return (default 10)"},
            },
        },
    },
    {
        "name": "worker_cleanup",
        "description": (
            "Abort tasks whose worker is gone, drop finished tasks older than the "
            "retention window and delete orphaned output files."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {"retention_days": {"type": "number"}},
        },
    },
    {
        "name": "worker_schedule_rebuild",
        "description": (
            "Schedule a safe self-rebuild: context is saved to the continuity document, "
            "then a privileged worker pulls, rebuilds and restarts the orchestrator "
            "and waits for it to report healthy."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why the rebuild is needed"},
                "git_ref": {"type": "string", "description": "Git ref to check out (default: pull main)"},
            },
            "required": ["reason"],
        },
    },
    {
        "name": "worker_logs",
        "description": "Tail a worker's live log. Use task_id 'live' for the shared log of all runs.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "lines": {"type": "integer", "description": "Lines to return (default 200)"},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "worker_healing",
        "description": "List workers that have been running longer than the healing threshold.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class MCPProtocolHandler:
    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator

    def handle_request(self, body: dict[str, Any]) -> dict[str, Any]:
        """Process a single JSON-RPC request and return a JSON-RPC response."""
        jsonrpc = body.get("jsonrpc", "2.0")
        method = body.get("method", "")
        params = body.get("params") or {}
        req_id = body.get("id")

        logger.info("MCP request: method=%s id=%s", method, req_id)

        try:
            result = self._dispatch(method, params)
        except Exception as exc:  # noqa: BLE001
            logger.error("MCP method %s failed: %s", method, exc)
            log_mcp_call(method=method, error=str(exc))
            return self._error_response(req_id, -32603, str(exc))

        if req_id is None:
            return {}
        return {"jsonrpc": jsonrpc, "id": req_id, "result": result}

    def _dispatch(self, method: str, params: dict[str, Any]) -> Any:
        if method == "initialize":
            return self._handle_initialize(params)
        if method in ("initialized", "notifications/initialized"):
            return {}
        if method == "tools/list":
            return {"tools": WORKER_TOOLS}
        if method == "tools/call":
            return self._handle_tools_call(params)
        if method == "ping":
            return {}
        raise ValueError(f"Unknown method: {method}")

    def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": "2025-03-26",
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": "syntropy", "version": __version__},
        }

    def _handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name", "")
        arguments = params.get("arguments") or {}
        logger.info("MCP tools/call: %s args=%s", name, json.dumps(arguments, default=str)[:200])

        t0 = time.monotonic()
        try:
            result = self._call_tool(name, arguments)
        except Exception as exc:  # noqa: BLE001
            logger.error("Tool %s failed: %s", name, exc)
            log_mcp_call(
                method="tools/call",
                tool_name=name,
                tool_args=arguments,
                error=str(exc),
                duration_ms=(time.monotonic() - t0) * 1000,
            )
            return {
                "content": [{"type": "text", "text": f"Error: {exc}"}],
                "isError": True,
            }

        log_mcp_call(
            method="tools/call",
            tool_name=name,
            tool_args=arguments,
            result=result,
            duration_ms=(time.monotonic() - t0) * 1000,
        )
        return {
            "content": [{"type": "text", "text": json.dumps(result, default=str)}],
            "isError": not result.get("ok", True),
        }

    def _call_tool(self, name: str, args: dict[str, Any]) -> dict[str, Any]:
        if name == "worker_spawn":
            return self._tool_worker_spawn(args)
        if name == "worker_status":
            return self.orchestrator.status(_require(args, "task_id"))
        if name == "worker_list":
            return self.orchestrator.list(args.get("status", "all"), int(args.get("limit", 10)))
        if name == "worker_cleanup":
            days = args.get("retention_days")
            return self.orchestrator.cleanup(float(days) if days is not None else None)
        if name == "worker_schedule_rebuild":
            return self.orchestrator.schedule_self_rebuild(_require(args, "reason"), args.get("git_ref"))
        if name == "worker_logs":
            return self.orchestrator.read_logs(_require(args, "task_id"), int(args.get("lines", 200)))
        if name == "worker_healing":
            return self.orchestrator.healing()
        raise ValueError(f"Unknown tool: {name}")

    def _tool_worker_spawn(self, args: dict[str, Any]) -> dict[str, Any]:
        # "task" is accepted for agents prompted with the older tool schema
        instruction = args.get("instruction") or args.get("task")
        if not instruction:
            raise ValueError("instruction is required")
        return self.orchestrator.spawn(instruction, args.get("context"), args.get("priority", "normal"))

    @staticmethod
    def _error_response(req_id: Any, code: int, message: str) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def _require(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not value:
        raise ValueError(f"{key} is required")
    return str(value)
