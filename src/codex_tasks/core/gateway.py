from __future__ import annotations

import json
import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from codex_tasks import __version__
from codex_tasks.core.config import Settings
from codex_tasks.core.logging_config import setup_logging
from codex_tasks.core.service import TaskService
from codex_tasks.mcp.protocol import MCPProtocolHandler
from codex_tasks.mcp.server import get_router

logger = logging.getLogger("codex_tasks.gateway")


def create_app(service: Optional[TaskService] = None) -> FastAPI:
    """Build the HTTP front end: ``/health``, ``POST /mcp`` and ``/tasks``.

    The gateway is stateless; every request goes straight to the task
    store, so any number of gateways and CLIs can share one store.
    """
    if service is None:
        # Ensure .env is loaded before anything reads os.getenv
        load_dotenv(override=False)
        settings = Settings.from_env()
        setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)
        service = TaskService.from_settings(settings)

    mcp_handler = MCPProtocolHandler(service)
    app = FastAPI(title="codex-tasks", version=__version__)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/mcp")
    async def mcp_jsonrpc(request: Request) -> Response:
        """MCP JSON-RPC endpoint (streamable HTTP transport, JSON responses only)."""
        try:
            body = json.loads(await request.body())
        except ValueError as exc:
            return JSONResponse(MCPProtocolHandler._error_response(None, -32700, f"Parse error: {exc}"))
        if not isinstance(body, dict):
            return JSONResponse(MCPProtocolHandler._error_response(None, -32600, "Invalid request"))
        # Tool calls block on the filesystem and on worker handshakes.
        result = await run_in_threadpool(mcp_handler.handle_request, body)
        if not result:
            # Notification: nothing to return.
            return Response(status_code=202)
        return JSONResponse(result)

    app.include_router(get_router(service))
    logger.info("Gateway ready (tasks root %s)", service.store.tasks_dir)
    return app
