from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from syntropy import __version__
from syntropy.core.config import Settings
from syntropy.core.logging_config import setup_logging
from syntropy.core.orchestrator import Orchestrator
from syntropy.mcp.protocol import MCPProtocolHandler

logger = logging.getLogger("syntropy.gateway")


class SpawnRequest(BaseModel):
    instruction: str
    context: Optional[str] = None
    priority: str = "normal"


class RebuildRequest(BaseModel):
    reason: str
    git_ref: Optional[str] = None


def _check_token(request: Request, expected: Optional[str]) -> None:
    if not expected:
        return
    token = request.headers.get("x-mcp-token")
    auth = request.headers.get("authorization", "")
    if not token and auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1]
    if token != expected:
        raise HTTPException(status_code=401, detail="Invalid MCP token")


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    if settings is None:
        # Ensure .env is loaded before anything reads os.getenv
        load_dotenv(override=False)
        settings = Settings.from_env()
        setup_logging(
            log_dir=settings.log_dir,
            log_level=settings.log_level,
            clear_on_launch=settings.clear_logs_on_launch,
        )

    os.makedirs(settings.data_dir, exist_ok=True)
    orchestrator = orchestrator or Orchestrator(settings)
    mcp_handler = MCPProtocolHandler(orchestrator)

    app = FastAPI(title="syntropy", version=__version__)

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict:
        return orchestrator.control_status()

    # ---- worker control (token-protected like /mcp) ----

    @app.post("/control/workers")
    def control_spawn(req: SpawnRequest, request: Request) -> dict:
        _check_token(request, settings.mcp_token)
        return orchestrator.spawn(req.instruction, req.context, req.priority)

    @app.get("/control/workers")
    def control_list(request: Request, status: str = "all", limit: int = 10) -> dict:
        _check_token(request, settings.mcp_token)
        return orchestrator.list(status, limit)

    @app.get("/control/workers/{task_id}")
    def control_worker_status(task_id: str, request: Request) -> dict:
        _check_token(request, settings.mcp_token)
        result = orchestrator.status(task_id)
        if not result.get("ok") and "not found" in result.get("error", ""):
            raise HTTPException(status_code=404, detail=result["error"])
        return result

    @app.post("/control/rebuild")
    def control_rebuild(req: RebuildRequest, request: Request) -> dict:
        _check_token(request, settings.mcp_token)
        return orchestrator.schedule_self_rebuild(req.reason, req.git_ref)

    @app.post("/mcp")
    async def mcp_jsonrpc(request: Request) -> dict:
        """MCP JSON-RPC endpoint for the agent's tool calls."""
        _check_token(request, settings.mcp_token)
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="JSON-RPC body must be an object")
        return mcp_handler.handle_request(body)

    logger.info("Gateway ready (data_dir=%s, mcp auth=%s)", settings.data_dir, bool(settings.mcp_token))
    return app
