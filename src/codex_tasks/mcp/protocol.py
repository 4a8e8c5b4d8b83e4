"""MCP JSON-RPC protocol handler.

Exposes the task operations as MCP tools.  The same handler serves the
stdio transport (``codex-tasks mcp``) and the HTTP endpoint mounted by
the gateway (``POST /mcp``).
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional, TextIO

from codex_tasks import __version__
from codex_tasks.core.errors import TaskError
from codex_tasks.core.logging_config import log_mcp_call
from codex_tasks.core.service import TaskService
from codex_tasks.core.tasks import TaskState

logger = logging.getLogger("codex_tasks.mcp.protocol")

PROTOCOL_VERSION = "2025-03-26"
LOG_LINE_LIMIT = 200

# ── Tool definitions (returned by tools/list) ────────────────────

TASK_TOOLS = [
    {
        "name": "tasks_start",
        "description": "Start a new background Codex task with an initial prompt. Returns the task id once the engine has assigned one.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Initial prompt"},
                "title": {"type": "string", "description": "Optional human label"},
                "working_dir": {"type": "string", "description": "Directory the engine runs in (created if missing)"},
                "repo_url": {
                    "type": "string",
                    "description": "Git repository to clone into working_dir first; working_dir must not exist yet",
                },
                "repo_ref": {"type": "string", "description": "Branch, tag or commit to check out after cloning"},
                "config_overrides": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Engine overrides in key=value form",
                },
            },
            "required": ["prompt"],
        },
    },
    {
        "name": "tasks_send",
        "description": "Send a follow-up prompt to a STOPPED task.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "prompt": {"type": "string"},
            },
            "required": ["task_id", "prompt"],
        },
    },
    {
        "name": "tasks_status",
        "description": "Get a task's metadata: state, timestamps, last prompt and last result.",
        "inputSchema": {
            "type": "object",
            "properties": {"task_id": {"type": "string"}},
            "required": ["task_id"],
        },
    },
    {
        "name": "tasks_log",
        "description": "Read the last lines of a task's JSON-lines event log.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "lines": {"type": "integer", "default": 50, "description": f"At most {LOG_LINE_LIMIT}"},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "tasks_stop",
        "description": "Stop a running task, or every running task with all=true.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "all": {"type": "boolean", "default": False},
            },
        },
    },
    {
        "name": "tasks_list",
        "description": "List tasks, most recently updated first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "states": {
                    "type": "array",
                    "items": {"type": "string", "enum": [s.value for s in TaskState]},
                },
                "include_archived": {"type": "boolean", "default": False},
            },
        },
    },
    {
        "name": "tasks_archive",
        "description": "Archive a STOPPED or DIED task, or every eligible task with all=true.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "all": {"type": "boolean", "default": False},
            },
        },
    },
]


class MCPProtocolHandler:
    """Handles MCP JSON-RPC requests and dispatches tool calls."""

    def __init__(self, service: TaskService) -> None:
        self.service = service

    def handle_request(self, body: dict[str, Any]) -> dict[str, Any]:
        """Process a single JSON-RPC request and return a JSON-RPC response.

        Notifications (no ``id``) produce an empty dict.
        """
        jsonrpc = body.get("jsonrpc", "2.0")
        method = body.get("method", "")
        params = body.get("params") or {}
        req_id = body.get("id")

        logger.info("MCP request: method=%s id=%s", method, req_id)
        try:
            result = self._dispatch(method, params)
        except Exception as exc:  # noqa: BLE001
            logger.error("MCP method %s failed: %s", method, exc)
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
            return {"tools": TASK_TOOLS}
        if method == "tools/call":
            return self._handle_tools_call(params)
        if method == "ping":
            return {}
        raise ValueError(f"Unknown method: {method}")

    def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": "codex-tasks", "version": __version__},
        }

    def _handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name", "")
        arguments = params.get("arguments") or {}
        logger.info("MCP tools/call: %s args=%s", name, json.dumps(arguments)[:200])
        t0 = time.monotonic()
        try:
            result = self._call_tool(name, arguments)
        except (TaskError, ValueError, KeyError) as exc:
            message = exc.describe() if isinstance(exc, TaskError) else f"error: {exc}"
            logger.error("Tool %s failed: %s", name, message)
            log_mcp_call(
                "tools/call",
                tool_name=name,
                tool_args=arguments,
                error=message,
                duration_ms=(time.monotonic() - t0) * 1000,
            )
            return {"content": [{"type": "text", "text": message}], "isError": True}

        log_mcp_call(
            "tools/call",
            tool_name=name,
            tool_args=arguments,
            result=result,
            duration_ms=(time.monotonic() - t0) * 1000,
        )
        return {
            "content": [{"type": "text", "text": json.dumps(result, ensure_ascii=False, default=str)}],
            "isError": False,
        }

    def _call_tool(self, name: str, args: dict[str, Any]) -> Any:
        if name == "tasks_start":
            return self._tool_start(args)
        if name == "tasks_send":
            self.service.send(str(args["task_id"]), str(args["prompt"]))
            return {"task_id": args["task_id"], "status": "sent"}
        if name == "tasks_status":
            return self.service.status(str(args["task_id"])).to_dict()
        if name == "tasks_log":
            return self._tool_log(args)
        if name == "tasks_stop":
            if args.get("all"):
                return {"results": [o.to_dict() for o in self.service.stop_all()]}
            return self.service.stop(str(args["task_id"])).to_dict()
        if name == "tasks_list":
            states = [TaskState.parse(s) for s in args.get("states") or []]
            records = self.service.list(states or None, include_archived=bool(args.get("include_archived")))
            return {"tasks": [r.to_dict() for r in records]}
        if name == "tasks_archive":
            if args.get("all"):
                return {"results": [o.to_dict() for o in self.service.archive_all()]}
            return self.service.archive(str(args["task_id"])).to_dict()
        raise ValueError(f"Unknown tool: {name}")

    def _tool_start(self, args: dict[str, Any]) -> dict[str, Any]:
        overrides = args.get("config_overrides") or []
        if not isinstance(overrides, list):
            raise ValueError("config_overrides must be a list of key=value strings")
        task_id = self.service.start(
            str(args["prompt"]),
            title=args.get("title"),
            working_dir=args.get("working_dir"),
            config_overrides=[str(o) for o in overrides],
            repo_url=args.get("repo_url"),
            repo_ref=args.get("repo_ref"),
        )
        return {"task_id": task_id}

    def _tool_log(self, args: dict[str, Any]) -> dict[str, Any]:
        lines = int(args.get("lines") or 50)
        lines = max(1, min(lines, LOG_LINE_LIMIT))
        raw = list(self.service.log(str(args["task_id"]), lines=lines))
        return {"task_id": args["task_id"], "lines": [line.rstrip("\n") for line in raw]}

    @staticmethod
    def _error_response(req_id: Any, code: int, message: str) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def serve_stdio(handler: MCPProtocolHandler, stdin: TextIO, stdout: TextIO) -> None:
    """Serve newline-delimited JSON-RPC on a pair of text streams until EOF."""
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            body = json.loads(line)
        except ValueError as exc:
            response: Optional[dict[str, Any]] = MCPProtocolHandler._error_response(None, -32700, f"Parse error: {exc}")
        else:
            if not isinstance(body, dict):
                response = MCPProtocolHandler._error_response(None, -32600, "Invalid request")
            else:
                response = handler.handle_request(body)
        if response:
            stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            stdout.flush()
